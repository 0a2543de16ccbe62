"""Background task that re-drives parked send attempts."""

from __future__ import annotations

import asyncio
import math
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from .audit import STATUS_FAILED, STATUS_PENDING_RETRY, STATUS_SENT, AuditLog
from .delivery import DeliveryEngine
from .logger import get_logger
from .observer import DeliveryObserver
from .persistence import Persistence

DEFAULT_INTERVAL = 60.0
DEFAULT_BATCH_SIZE = 10
DEFAULT_CLAIM_TTL = 300


class RetryScheduler:
    """Periodically retry due attempts, one processor per attempt.

    Before an attempt is re-driven it is claimed with a conditional update;
    only the cycle that wins the claim calls the transport, and its write-back
    is conditioned on the same claim token.
    """

    def __init__(
        self,
        persistence: Persistence,
        engine: DeliveryEngine,
        audit: AuditLog,
        *,
        interval: float = DEFAULT_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        claim_ttl: int = DEFAULT_CLAIM_TTL,
        observer: Optional[DeliveryObserver] = None,
        logger=None,
    ):
        self.persistence = persistence
        self.engine = engine
        self.audit = audit
        self.interval = max(0.05, float(interval))
        self.batch_size = max(1, int(batch_size))
        # a lease must outlive a stuck transport call
        self.claim_ttl = max(int(claim_ttl), int(math.ceil(engine.transport_timeout)) + 60)
        self.observer = observer or engine.observer
        self.logger = logger or get_logger()

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @staticmethod
    def _utc_now_epoch() -> int:
        return int(datetime.now(timezone.utc).timestamp())

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the retry loop."""
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._retry_loop(), name="retry-loop")

    async def stop(self) -> None:
        """Stop the retry loop and wait for the current cycle to finish."""
        self._stop.set()
        self._wake_event.set()
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def run_now(self) -> None:
        """Wake the loop so it runs a cycle without waiting for the interval."""
        self._wake_event.set()

    @property
    def running(self) -> bool:
        return bool(self._task and not self._task.done())

    async def _retry_loop(self) -> None:
        self.logger.debug("Retry loop started (interval=%ss, batch=%d)", self.interval, self.batch_size)
        while not self._stop.is_set():
            try:
                await self.run_cycle()
            except Exception as exc:
                self.logger.exception("Unhandled error in retry loop: %s", exc)
            await self._wait_for_wakeup(self.interval)

    async def _wait_for_wakeup(self, timeout: float) -> None:
        """Pause the loop while allowing external wake-ups via :meth:`run_now`."""
        if self._stop.is_set():
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()

    # --------------------------------------------------------------------- cycle
    async def run_cycle(self, now_ts: Optional[int] = None) -> Dict[str, int]:
        """Process one batch of due attempts and return a summary."""
        now_ts = now_ts if now_ts is not None else self._utc_now_epoch()
        batch = await self.persistence.fetch_due_attempts(now_ts=now_ts, limit=self.batch_size)
        summary = {"processed": 0, "sent": 0, "rescheduled": 0, "failed": 0, "skipped": 0}
        for attempt in batch:
            claim_token = uuid.uuid4().hex
            claimed = await self.persistence.claim_attempt(
                attempt["id"], claim_token=claim_token, now_ts=now_ts, lease_until=now_ts + self.claim_ttl
            )
            if not claimed:
                self.logger.debug("Send attempt %s is held by another cycle", attempt["id"])
                summary["skipped"] += 1
                continue
            summary["processed"] += 1
            try:
                outcome = await self.engine.retry(attempt, claim_token=claim_token)
            except Exception as exc:
                # the lease expires and the attempt becomes due again
                self.logger.exception("Retry of send attempt %s crashed: %s", attempt["id"], exc)
                continue
            if outcome.state == STATUS_SENT:
                summary["sent"] += 1
            elif outcome.state == STATUS_PENDING_RETRY:
                summary["rescheduled"] += 1
            elif outcome.state == STATUS_FAILED:
                summary["failed"] += 1

        if batch:
            self.logger.info(
                "Retry cycle: processed=%d sent=%d rescheduled=%d failed=%d skipped=%d",
                summary["processed"],
                summary["sent"],
                summary["rescheduled"],
                summary["failed"],
                summary["skipped"],
            )
        else:
            self.logger.debug("Retry cycle: nothing due")
        await self.engine.transport.cleanup()
        await self._refresh_pending_gauge()
        return summary

    async def _refresh_pending_gauge(self) -> None:
        try:
            count = await self.audit.pending_count()
        except Exception:
            self.logger.exception("Failed to refresh pending retries gauge")
            return
        self.observer.set_pending(count)
