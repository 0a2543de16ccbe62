"""Audit trail of send attempts and the statistics derived from it."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .persistence import Persistence

STATUS_SENT = "sent"
STATUS_PENDING_RETRY = "pending_retry"
STATUS_FAILED = "failed"
STATUSES = (STATUS_SENT, STATUS_PENDING_RETRY, STATUS_FAILED)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20
DEFAULT_STATS_WINDOW = 24 * 3600


class AuditLog:
    """Record send attempts and answer read queries over them."""

    def __init__(self, persistence: Persistence):
        self.persistence = persistence

    async def record(self, attempt: Dict[str, Any]) -> None:
        """Append a new attempt."""
        await self.persistence.insert_attempt(attempt)

    async def update(self, attempt_id: str, *, claim_token: Optional[str] = None, **state: Any) -> bool:
        """Rewrite an attempt in place; see :meth:`Persistence.update_attempt`."""
        return await self.persistence.update_attempt(attempt_id, claim_token=claim_token, **state)

    async def get(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        return await self.persistence.get_attempt(attempt_id)

    async def list_attempts(
        self,
        *,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        domain_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return one page of attempts, newest first."""
        page = max(1, int(page))
        limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
        if status is not None and status not in STATUSES:
            status = None
        total = await self.persistence.count_attempts(domain_id=domain_id, status=status)
        attempts = await self.persistence.list_attempts(
            limit=limit, offset=(page - 1) * limit, domain_id=domain_id, status=status
        )
        return {
            "attempts": attempts,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)},
        }

    async def pending_count(self) -> int:
        return await self.persistence.count_attempts(status=STATUS_PENDING_RETRY)

    async def stats(self, window_seconds: int = DEFAULT_STATS_WINDOW) -> Dict[str, Any]:
        """Aggregate counts overall and for the last ``window_seconds``."""
        now = int(datetime.now(timezone.utc).timestamp())
        overall = await self.persistence.count_attempts_by_status()
        recent = await self.persistence.count_attempts_by_status(since_ts=now - int(window_seconds))
        total = sum(overall.values())
        sent = overall.get(STATUS_SENT, 0)
        success_rate = (sent / total * 100) if total else 0.0
        return {
            "total": total,
            "sent": sent,
            "failed": overall.get(STATUS_FAILED, 0),
            "pending_retry": overall.get(STATUS_PENDING_RETRY, 0),
            "success_rate": f"{success_rate:.2f}",
            "window": {
                "seconds": int(window_seconds),
                "total": sum(recent.values()),
                **{status: recent.get(status, 0) for status in STATUSES},
            },
        }
