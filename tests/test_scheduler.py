import asyncio
import time
import uuid

import pytest

from dkim_relay.delivery import DeliveryEngine
from dkim_relay.observer import DeliveryObserver
from dkim_relay.scheduler import RetryScheduler
from dkim_relay.transport import Transport


class GatedTransport(Transport):
    """Transport that blocks every send until ``release`` is set."""

    name = "gated"

    def __init__(self):
        self.calls = 0
        self.cleanups = 0
        self.release = asyncio.Event()
        self.release.set()

    async def send(self, message):
        self.calls += 1
        await self.release.wait()
        return message.message_id

    async def cleanup(self):
        self.cleanups += 1


class PendingObserver(DeliveryObserver):
    def __init__(self):
        self.pending = []

    def set_pending(self, value):
        self.pending.append(value)


@pytest.fixture
def gated():
    return GatedTransport()


@pytest.fixture
def engine(registry, codec, gated, audit):
    return DeliveryEngine(registry, codec, gated, audit)


async def _park(audit, domain, *, next_retry_at, retry_count=1):
    attempt_id = str(uuid.uuid4())
    now = int(time.time())
    await audit.record(
        {
            "id": attempt_id,
            "domain_id": domain["id"],
            "from_email": f"sender@{domain['name']}",
            "to_email": "dest@example.org",
            "subject": "Parked",
            "message": {"to": ["dest@example.org"], "text": "body", "message_id": f"<{attempt_id}@{domain['name']}>"},
            "status": "pending_retry",
            "retry_count": retry_count,
            "next_retry_at": next_retry_at,
            "error": "451 try again",
            "error_code": "transient_delivery_error",
            "created_at": now,
            "updated_at": now,
        }
    )
    return attempt_id


@pytest.mark.asyncio
async def test_cycle_retries_due_attempts_only(registry, persistence, engine, audit, gated):
    domain = await registry.create("example.com")
    now = int(time.time())
    due_id = await _park(audit, domain, next_retry_at=now - 5)
    later_id = await _park(audit, domain, next_retry_at=now + 3600)
    observer = PendingObserver()
    scheduler = RetryScheduler(persistence, engine, audit, observer=observer)

    summary = await scheduler.run_cycle(now_ts=now)

    assert summary == {"processed": 1, "sent": 1, "rescheduled": 0, "failed": 0, "skipped": 0}
    assert gated.calls == 1
    assert (await audit.get(due_id))["status"] == "sent"
    assert (await audit.get(later_id))["status"] == "pending_retry"
    assert observer.pending == [1]
    assert gated.cleanups == 1


@pytest.mark.asyncio
async def test_concurrent_cycles_deliver_once(registry, persistence, engine, audit, gated):
    domain = await registry.create("example.com")
    now = int(time.time())
    attempt_id = await _park(audit, domain, next_retry_at=now - 1)
    first = RetryScheduler(persistence, engine, audit)
    second = RetryScheduler(persistence, engine, audit)

    gated.release.clear()
    running = asyncio.create_task(first.run_cycle(now_ts=now))
    for _ in range(500):
        if gated.calls:
            break
        await asyncio.sleep(0.01)
    assert gated.calls == 1

    overlapping = await second.run_cycle(now_ts=now)
    assert overlapping["processed"] == 0

    gated.release.set()
    summary = await running
    assert summary["sent"] == 1
    assert gated.calls == 1
    assert (await audit.get(attempt_id))["status"] == "sent"

    assert (await second.run_cycle(now_ts=now + 10_000))["processed"] == 0


@pytest.mark.asyncio
async def test_lost_claim_race_is_skipped(registry, persistence, engine, audit, gated, monkeypatch):
    domain = await registry.create("example.com")
    now = int(time.time())
    attempt_id = await _park(audit, domain, next_retry_at=now - 1)
    stale_batch = await persistence.fetch_due_attempts(now_ts=now, limit=10)
    assert await persistence.claim_attempt(attempt_id, claim_token="other", now_ts=now, lease_until=now + 600)

    async def fetch_stale(**_kwargs):
        return stale_batch

    monkeypatch.setattr(persistence, "fetch_due_attempts", fetch_stale)
    scheduler = RetryScheduler(persistence, engine, audit)

    summary = await scheduler.run_cycle(now_ts=now)
    assert summary["skipped"] == 1
    assert summary["processed"] == 0
    assert gated.calls == 0


@pytest.mark.asyncio
async def test_deactivated_domain_fails_pending_attempts(registry, persistence, engine, audit, gated):
    domain = await registry.create("example.com")
    now = int(time.time())
    attempt_id = await _park(audit, domain, next_retry_at=now - 1)
    await registry.set_active(domain["id"], False)

    summary = await RetryScheduler(persistence, engine, audit).run_cycle(now_ts=now)

    assert summary["failed"] == 1
    assert gated.calls == 0
    stored = await audit.get(attempt_id)
    assert stored["status"] == "failed"
    assert stored["error_code"] == "domain_inactive"


@pytest.mark.asyncio
async def test_crashing_retry_leaves_attempt_for_lease_expiry(registry, persistence, engine, audit, monkeypatch):
    domain = await registry.create("example.com")
    now = int(time.time())
    attempt_id = await _park(audit, domain, next_retry_at=now - 1)

    async def boom(*_args, **_kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(engine, "retry", boom)
    scheduler = RetryScheduler(persistence, engine, audit, claim_ttl=0)

    summary = await scheduler.run_cycle(now_ts=now)
    assert summary["processed"] == 1
    assert summary["sent"] == 0
    assert (await audit.get(attempt_id))["status"] == "pending_retry"
    # lease is never shorter than the transport timeout plus a margin
    assert scheduler.claim_ttl == 90
    assert await persistence.fetch_due_attempts(now_ts=now + 91, limit=10)


@pytest.mark.asyncio
async def test_loop_runs_on_start_and_wakes_on_demand(registry, persistence, engine, audit, gated):
    domain = await registry.create("example.com")
    scheduler = RetryScheduler(persistence, engine, audit, interval=3600)

    await scheduler.start()
    assert scheduler.running
    await asyncio.sleep(0.1)

    await _park(audit, domain, next_retry_at=int(time.time()) - 1)
    scheduler.run_now()
    for _ in range(200):
        if gated.calls:
            break
        await asyncio.sleep(0.02)
    assert gated.calls == 1

    await scheduler.stop()
    assert not scheduler.running
