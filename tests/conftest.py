"""Shared fixtures for the relay tests."""

from __future__ import annotations

from typing import List

import pytest
import pytest_asyncio

from dkim_relay.audit import AuditLog
from dkim_relay.credentials import CredentialStore
from dkim_relay.domains import DomainRegistry
from dkim_relay.persistence import Persistence
from dkim_relay.secret_codec import SecretCodec
from dkim_relay.transport import OutboundMessage, Transport

MASTER_SECRET = "test-master-secret"


class DummyTransport(Transport):
    """Transport recording every message; queued errors are raised first."""

    name = "dummy"

    def __init__(self):
        self.sent: List[OutboundMessage] = []
        self.errors: List[BaseException] = []
        self.closed = False

    async def send(self, message: OutboundMessage) -> str:
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(message)
        return message.message_id

    async def close(self) -> None:
        self.closed = True


@pytest_asyncio.fixture
async def persistence(tmp_path):
    p = Persistence(str(tmp_path / "relay.db"))
    await p.init_db()
    return p


@pytest.fixture
def codec():
    return SecretCodec(MASTER_SECRET)


@pytest.fixture
def registry(persistence, codec):
    return DomainRegistry(persistence, codec)


@pytest.fixture
def credentials(persistence):
    return CredentialStore(persistence, bcrypt_rounds=4)


@pytest.fixture
def audit(persistence):
    return AuditLog(persistence)


@pytest.fixture
def transport():
    return DummyTransport()
