"""Transport tests against a real SMTP server, a mocked HTTP relay and a fake sendmail."""

import asyncio
import base64
import socket
import stat
from typing import Any

import aiohttp
import pytest
from aioresponses import aioresponses
from aiosmtpd.controller import Controller
from yarl import URL

from dkim_relay.config import Settings
from dkim_relay.delivery import classify_transport_error
from dkim_relay.errors import ConfigurationError, PermanentDeliveryError, TransportError
from dkim_relay.transport import (
    HTTPRelayTransport,
    OutboundMessage,
    SMTPTransport,
    SendmailTransport,
    build_transport,
)

RAW = b"From: sender@example.com\r\nTo: dest@example.org\r\nSubject: Hi\r\n\r\nbody\r\n"
RELAY_URL = "https://relay.example.net/v1/send"


def get_free_port() -> int:
    """Find a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port = s.getsockname()[1]
    return port


class CapturingHandler:
    """SMTP handler that captures received messages."""

    def __init__(self):
        self.messages: list[dict[str, Any]] = []
        self.data_reply: str | None = None

    async def handle_RCPT(self, server, session, envelope, address, rcpt_options):
        if address.startswith("unknown"):
            return "550 No such user"
        envelope.rcpt_tos.append(address)
        return "250 OK"

    async def handle_DATA(self, server, session, envelope):
        if self.data_reply:
            return self.data_reply
        self.messages.append({"from": envelope.mail_from, "to": list(envelope.rcpt_tos), "data": envelope.content})
        return "250 Message accepted for delivery"


@pytest.fixture
def smtp_handler():
    return CapturingHandler()


@pytest.fixture
def smtp_server(smtp_handler):
    """Start a fake SMTP server on a free port."""
    port = get_free_port()
    controller = Controller(smtp_handler, hostname="127.0.0.1", port=port)
    controller.start()
    yield controller, port
    controller.stop()


def _message(*recipients):
    return OutboundMessage(
        envelope_from="sender@example.com",
        recipients=list(recipients or ["dest@example.org"]),
        raw=RAW,
        message_id="<abc@example.com>",
    )


@pytest.mark.asyncio
async def test_smtp_transport_delivers_and_reuses_connection(smtp_server, smtp_handler):
    _, port = smtp_server
    transport = SMTPTransport("127.0.0.1", port, timeout=5)
    try:
        assert await transport.send(_message("dest@example.org", "other@example.org")) == "<abc@example.com>"
        await transport.send(_message())
        assert len(transport.pool) == 1
    finally:
        await transport.close()

    assert len(smtp_handler.messages) == 2
    first = smtp_handler.messages[0]
    assert first["from"] == "sender@example.com"
    assert first["to"] == ["dest@example.org", "other@example.org"]
    assert b"Subject: Hi" in first["data"]
    assert transport.pool == {}


@pytest.mark.asyncio
async def test_smtp_pool_is_shared_across_tasks(smtp_server, smtp_handler):
    _, port = smtp_server
    transport = SMTPTransport("127.0.0.1", port, timeout=5, max_idle=2)
    try:
        for _ in range(5):
            await asyncio.create_task(transport.send(_message()))
        assert len(transport.pool) == 1

        await asyncio.gather(*(transport.send(_message()) for _ in range(4)))
        assert len(transport.pool) <= 2
    finally:
        await transport.close()
    assert len(smtp_handler.messages) == 9


@pytest.mark.asyncio
async def test_smtp_cleanup_drops_expired_connections(smtp_server):
    _, port = smtp_server
    transport = SMTPTransport("127.0.0.1", port, timeout=5)
    try:
        await transport.send(_message())
        await transport.cleanup()
        assert len(transport.pool) == 1

        transport.ttl = 0
        await asyncio.sleep(0.01)
        await transport.cleanup()
        assert transport.pool == {}
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_smtp_transport_partial_refusal_still_succeeds(smtp_server, smtp_handler):
    _, port = smtp_server
    transport = SMTPTransport("127.0.0.1", port, timeout=5)
    try:
        await transport.send(_message("dest@example.org", "unknown@example.org"))
    finally:
        await transport.close()
    assert smtp_handler.messages[0]["to"] == ["dest@example.org"]


@pytest.mark.asyncio
async def test_smtp_transport_reports_reply_codes(smtp_server, smtp_handler):
    _, port = smtp_server
    transport = SMTPTransport("127.0.0.1", port, timeout=5)
    try:
        with pytest.raises(TransportError) as refused:
            await transport.send(_message("unknown@example.org"))
        assert refused.value.reply_code == 550

        smtp_handler.data_reply = "451 Temporary local problem"
        with pytest.raises(TransportError) as deferred:
            await transport.send(_message())
        assert deferred.value.reply_code == 451
        assert transport.pool == {}
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_smtp_transport_connection_refused():
    transport = SMTPTransport("127.0.0.1", get_free_port(), timeout=2)
    with pytest.raises(Exception) as excinfo:
        await transport.send(_message())
    assert classify_transport_error(excinfo.value)[0] is True


@pytest.mark.asyncio
async def test_http_transport_posts_raw_message():
    transport = HTTPRelayTransport(RELAY_URL, token="relay-token", timeout=5)
    with aioresponses() as m:
        m.post(RELAY_URL, status=200, payload={"id": "relay-42"})
        assert await transport.send(_message()) == "relay-42"

        request = m.requests[("POST", URL(RELAY_URL))][0]
        body = request.kwargs["json"]
        assert body["from"] == "sender@example.com"
        assert body["to"] == ["dest@example.org"]
        assert body["message_id"] == "<abc@example.com>"
        assert base64.b64decode(body["raw"]) == RAW
        assert request.kwargs["headers"]["Authorization"] == "Bearer relay-token"


@pytest.mark.asyncio
async def test_http_transport_falls_back_to_message_id():
    transport = HTTPRelayTransport(RELAY_URL)
    with aioresponses() as m:
        m.post(RELAY_URL, status=202, body="accepted")
        assert await transport.send(_message()) == "<abc@example.com>"


@pytest.mark.asyncio
@pytest.mark.parametrize("status, transient", [(429, True), (503, True), (400, False), (422, False)])
async def test_http_transport_error_classification(status, transient):
    transport = HTTPRelayTransport(RELAY_URL)
    with aioresponses() as m:
        m.post(RELAY_URL, status=status, body="nope")
        with pytest.raises(TransportError) as excinfo:
            await transport.send(_message())
    assert excinfo.value.reply_code == status
    assert excinfo.value.transient is transient


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        aiohttp.ClientConnectionError("Cannot connect to host relay.example.net:443 [Connect call failed]"),
        aiohttp.ServerDisconnectedError(),
    ],
)
async def test_http_transport_unreachable_relay_is_transient(error):
    transport = HTTPRelayTransport(RELAY_URL)
    with aioresponses() as m:
        m.post(RELAY_URL, exception=error)
        with pytest.raises(TransportError) as excinfo:
            await transport.send(_message())
    assert excinfo.value.transient is True
    assert classify_transport_error(excinfo.value) == (True, None)


def _fake_sendmail(tmp_path, exit_code=0):
    script = tmp_path / "sendmail"
    script.write_text(
        "#!/bin/sh\n"
        f'echo "$@" > "{tmp_path}/args"\n'
        f'cat > "{tmp_path}/stdin"\n'
        'echo "sendmail said no" >&2\n'
        f"exit {exit_code}\n"
    )
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return str(script)


@pytest.mark.asyncio
async def test_sendmail_transport_pipes_message(tmp_path):
    transport = SendmailTransport(_fake_sendmail(tmp_path), timeout=5)
    assert await transport.send(_message("dest@example.org", "other@example.org")) == "<abc@example.com>"
    assert (tmp_path / "args").read_text().strip() == "-i -f sender@example.com -- dest@example.org other@example.org"
    assert (tmp_path / "stdin").read_bytes() == RAW


@pytest.mark.asyncio
@pytest.mark.parametrize("exit_code, transient", [(75, True), (67, False)])
async def test_sendmail_transport_exit_codes(tmp_path, exit_code, transient):
    transport = SendmailTransport(_fake_sendmail(tmp_path, exit_code), timeout=5)
    with pytest.raises(TransportError) as excinfo:
        await transport.send(_message())
    assert excinfo.value.transient is transient
    assert "sendmail said no" in str(excinfo.value)


@pytest.mark.asyncio
async def test_sendmail_transport_missing_binary(tmp_path):
    transport = SendmailTransport(str(tmp_path / "missing"))
    with pytest.raises(PermanentDeliveryError):
        await transport.send(_message())


def test_build_transport_selects_variant():
    assert isinstance(build_transport(Settings(master_secret="s")), SMTPTransport)
    assert isinstance(build_transport(Settings(master_secret="s", transport_kind="sendmail")), SendmailTransport)
    http = build_transport(Settings(master_secret="s", transport_kind="http", http_url=RELAY_URL))
    assert isinstance(http, HTTPRelayTransport)
    assert http.url == RELAY_URL

    with pytest.raises(ConfigurationError):
        build_transport(Settings(master_secret="s", transport_kind="http"))
    with pytest.raises(ConfigurationError):
        build_transport(Settings(master_secret="s", transport_kind="carrier-pigeon"))
