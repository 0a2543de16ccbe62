"""Outbound transports that hand signed messages to the next hop.

Every transport implements ``send(message) -> message id``; the variant is
picked once at startup by :func:`build_transport`.
"""

from __future__ import annotations

import asyncio
import base64
import time
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import aiohttp
import aiosmtplib

from .errors import ConfigurationError, PermanentDeliveryError, TransportError
from .logger import get_logger


@dataclass(frozen=True)
class OutboundMessage:
    """A signed message ready for the wire."""

    envelope_from: str
    recipients: Sequence[str]
    raw: bytes
    message_id: str


class Transport:
    """Base class of the delivery transports."""

    name = "base"

    async def send(self, message: OutboundMessage) -> str:
        """Deliver ``message`` and return the identifier the caller sees.

        Failures are raised as exceptions; :class:`TransportError` may carry a
        protocol reply code and an explicit transient flag.
        """
        raise NotImplementedError

    async def cleanup(self) -> None:
        """Drop idle resources that expired or went stale."""

    async def close(self) -> None:
        """Release pooled resources."""


class SMTPTransport(Transport):
    """Relay through an SMTP smarthost, reusing idle connections.

    A connection is checked out of the pool for the duration of one send and
    returned afterwards, so the pool never holds more than ``max_idle``
    entries whatever the number of tasks calling :meth:`send`.
    """

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = False,
        start_tls: Optional[bool] = None,
        timeout: float = 30.0,
        ttl: int = 300,
        max_idle: int = 4,
        logger=None,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = bool(use_tls)
        # implicit TLS and STARTTLS are mutually exclusive
        self.start_tls = False if self.use_tls else start_tls
        self.timeout = float(timeout)
        self.ttl = ttl
        self.max_idle = max(0, int(max_idle))
        self.logger = logger or get_logger()
        self.pool: Dict[int, Tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self) -> aiosmtplib.SMTP:
        smtp = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            use_tls=self.use_tls,
            start_tls=self.start_tls,
            timeout=self.timeout,
        )
        await smtp.connect()
        if self.user and self.password:
            await smtp.login(self.user, self.password)
        return smtp

    @staticmethod
    async def _is_alive(smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection answers NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    async def _get_connection(self) -> aiosmtplib.SMTP:
        while True:
            async with self.lock:
                if not self.pool:
                    break
                _, (smtp, last_used) = self.pool.popitem()
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._quit(smtp)
        return await self._connect()

    async def _release(self, smtp: aiosmtplib.SMTP) -> None:
        async with self.lock:
            if len(self.pool) < self.max_idle:
                self.pool[id(smtp)] = (smtp, time.time())
                return
        await self._quit(smtp)

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError):
            smtp.close()

    async def send(self, message: OutboundMessage) -> str:
        smtp = await self._get_connection()
        try:
            refused, _ = await smtp.sendmail(message.envelope_from, list(message.recipients), message.raw)
        except aiosmtplib.SMTPRecipientsRefused as exc:
            first = exc.recipients[0] if exc.recipients else None
            await self._quit(smtp)
            raise TransportError(
                f"All recipients refused: {first.message if first else exc}",
                code=first.code if first else None,
            ) from exc
        except aiosmtplib.SMTPResponseException as exc:
            await self._quit(smtp)
            raise TransportError(f"{exc.code} {exc.message}", code=exc.code) from exc
        except BaseException:
            smtp.close()
            raise
        if refused:
            self.logger.warning(
                "SMTP relay refused %d of %d recipients for %s",
                len(refused),
                len(message.recipients),
                message.message_id,
            )
        await self._release(smtp)
        return message.message_id

    async def cleanup(self) -> None:
        """Close idle connections that outlived the ttl or stopped answering NOOP."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.values())
            self.pool.clear()

        for smtp, last_used in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                await self._quit(smtp)
                continue
            async with self.lock:
                if len(self.pool) < self.max_idle:
                    self.pool[id(smtp)] = (smtp, last_used)
                    continue
            await self._quit(smtp)

    async def close(self) -> None:
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _ in entries:
            await self._quit(smtp)


class HTTPRelayTransport(Transport):
    """Post the signed message to an HTTP mail API."""

    name = "http"

    def __init__(self, url: str, *, token: Optional[str] = None, timeout: float = 30.0):
        self.url = url
        self.token = token
        self.timeout = float(timeout)

    async def send(self, message: OutboundMessage) -> str:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        body = {
            "from": message.envelope_from,
            "to": list(message.recipients),
            "message_id": message.message_id,
            "raw": base64.b64encode(message.raw).decode("ascii"),
        }
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(self.url, json=body, headers=headers) as resp:
                    if resp.status >= 300:
                        detail = (await resp.text()).strip()[:200]
                        raise TransportError(
                            f"HTTP relay answered {resp.status}: {detail or resp.reason}",
                            code=resp.status,
                            transient=resp.status == 429 or resp.status >= 500,
                        )
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError:
                        data = None
        except aiohttp.ClientConnectionError as exc:
            # connection failures clear once the relay is reachable again
            raise TransportError(f"HTTP relay unreachable: {exc}", transient=True) from exc
        if isinstance(data, dict) and data.get("id"):
            return str(data["id"])
        return message.message_id


class SendmailTransport(Transport):
    """Hand the message to the local mail agent through its sendmail binary."""

    name = "sendmail"

    def __init__(self, path: str = "/usr/sbin/sendmail", *, timeout: float = 30.0):
        self.path = path
        self.timeout = float(timeout)

    async def send(self, message: OutboundMessage) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.path,
                "-i",
                "-f",
                message.envelope_from,
                "--",
                *message.recipients,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise PermanentDeliveryError(f"sendmail binary not found at {self.path}") from exc
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(message.raw), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", "replace").strip()
            # sysexits: EX_TEMPFAIL
            raise TransportError(
                f"sendmail exited with status {proc.returncode}: {detail}",
                transient=proc.returncode == 75,
            )
        return message.message_id


def build_transport(settings, *, logger=None) -> Transport:
    """Instantiate the transport named by ``settings.transport_kind``."""
    kind = settings.transport_kind
    if kind == "smtp":
        if not settings.smtp_host:
            raise ConfigurationError("SMTP transport requires smtp_host")
        return SMTPTransport(
            settings.smtp_host,
            settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            start_tls=settings.smtp_start_tls,
            timeout=settings.transport_timeout,
            logger=logger,
        )
    if kind == "http":
        if not settings.http_url:
            raise ConfigurationError("HTTP transport requires http_url")
        return HTTPRelayTransport(settings.http_url, token=settings.http_token, timeout=settings.transport_timeout)
    if kind == "sendmail":
        return SendmailTransport(settings.sendmail_path, timeout=settings.transport_timeout)
    raise ConfigurationError(f"Unknown transport '{kind}'")
