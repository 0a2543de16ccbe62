"""Service facade wiring storage, signing, delivery and retries together."""

from __future__ import annotations

from typing import Any, Dict, Optional

from .audit import DEFAULT_STATS_WINDOW, AuditLog
from .config import Settings
from .credentials import CredentialIdentity, CredentialStore, ttl_from_expiry
from .delivery import DeliveryEngine, DeliveryOutcome
from .domains import DEFAULT_SELECTOR, DomainRegistry
from .errors import ValidationError
from .logger import get_logger
from .persistence import Persistence
from .prometheus import RelayMetrics
from .rate_limit import RateLimiter
from .scheduler import RetryScheduler
from .secret_codec import SecretCodec
from .transport import Transport, build_transport


class RelayService:
    """Own every component of the relay for one process."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[Transport] = None,
        metrics: Optional[RelayMetrics] = None,
        logger=None,
    ):
        self.settings = settings
        self.logger = logger or get_logger()
        self.metrics = metrics or RelayMetrics()
        self.persistence = Persistence(settings.db_path)
        # derived once; never rotated in-process
        self.codec = SecretCodec(settings.master_secret)
        self.transport = transport or build_transport(settings, logger=self.logger)
        self.audit = AuditLog(self.persistence)
        self.domains = DomainRegistry(self.persistence, self.codec, logger=self.logger)
        self.credentials = CredentialStore(
            self.persistence, bcrypt_rounds=settings.bcrypt_rounds, logger=self.logger
        )
        self.rate_limiter = RateLimiter(
            self.persistence, max_sends=settings.rate_limit_max, window_seconds=settings.rate_limit_window
        )
        self.engine = DeliveryEngine(
            self.domains,
            self.codec,
            self.transport,
            self.audit,
            observer=self.metrics,
            max_retries=settings.max_retries,
            retry_delays=settings.retry_delays,
            transport_timeout=settings.transport_timeout,
            log_delivery_activity=settings.log_delivery_activity,
            logger=self.logger,
        )
        self.scheduler = RetryScheduler(
            self.persistence,
            self.engine,
            self.audit,
            interval=settings.retry_interval,
            batch_size=settings.retry_batch_size,
            claim_ttl=settings.retry_claim_ttl,
            observer=self.metrics,
            logger=self.logger,
        )

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create the schema; safe to call more than once."""
        await self.persistence.init_db()

    async def start(self) -> None:
        """Initialise storage and start the retry loop."""
        await self.init()
        await self.scheduler.start()
        self.logger.info("DKIM relay started (transport=%s)", self.transport.name)

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.transport.close()

    # --------------------------------------------------------------------- sends
    async def authenticate(self, raw_key: str) -> CredentialIdentity:
        return await self.credentials.authenticate(raw_key)

    async def send(self, identity: CredentialIdentity, payload: Dict[str, Any]) -> DeliveryOutcome:
        """Send on behalf of an authenticated domain, enforcing its rate limit."""
        await self.rate_limiter.check(identity.domain_id)
        return await self.engine.send(identity.domain_id, payload)

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the administrative commands.

        Relay errors propagate to the caller, which maps them onto its own
        error surface (HTTP status, CLI message).
        """
        payload = payload or {}
        if cmd == "run retries":
            self.scheduler.run_now()
            return {"ok": True}
        if cmd == "runRetryCycle":
            summary = await self.scheduler.run_cycle()
            return {"ok": True, **summary}
        if cmd == "addDomain":
            domain = await self.domains.create(payload.get("name", ""), payload.get("selector") or DEFAULT_SELECTOR)
            return {"ok": True, "domain": domain}
        if cmd == "listDomains":
            result = await self.domains.list(page=payload.get("page", 1), limit=payload.get("limit", 20))
            return {"ok": True, **result}
        if cmd == "getDomain":
            domain = await self.domains.get(self._require(payload, "id"))
            domain["dns_records"] = self.domains.dns_records(domain)
            domain["api_keys"] = await self.credentials.list_for_domain(domain["id"])
            return {"ok": True, "domain": domain}
        if cmd == "updateDomain":
            domain_id = self._require(payload, "id")
            domain = await self.domains.get(domain_id)
            if payload.get("is_active") is not None:
                domain = await self.domains.set_active(domain_id, bool(payload["is_active"]))
            if payload.get("is_verified") is not None:
                domain = await self.domains.set_verified(domain_id, bool(payload["is_verified"]))
            return {"ok": True, "domain": domain}
        if cmd == "deleteDomain":
            await self.domains.delete(self._require(payload, "id"))
            return {"ok": True}
        if cmd == "issueKey":
            record, raw_key = await self.credentials.issue(
                self._require(payload, "domain_id"),
                self._require(payload, "name"),
                ttl_from_expiry(payload.get("expires_in") or "never"),
            )
            return {"ok": True, "api_key": record, "key": raw_key}
        if cmd == "listKeys":
            domain_id = self._require(payload, "domain_id")
            await self.domains.get(domain_id)
            return {"ok": True, "api_keys": await self.credentials.list_for_domain(domain_id)}
        if cmd == "updateKey":
            record = await self.credentials.set_active(self._require(payload, "id"), bool(payload.get("is_active")))
            return {"ok": True, "api_key": record}
        if cmd == "rotateKey":
            credential_id = self._require(payload, "id")
            if payload.get("expires_in"):
                record, raw_key = await self.credentials.rotate(credential_id, ttl_from_expiry(payload["expires_in"]))
            else:
                record, raw_key = await self.credentials.rotate(credential_id)
            return {"ok": True, "api_key": record, "key": raw_key}
        if cmd == "deleteKey":
            await self.credentials.delete(self._require(payload, "id"))
            return {"ok": True}
        if cmd == "listAttempts":
            result = await self.audit.list_attempts(
                page=payload.get("page", 1),
                limit=payload.get("limit", 20),
                domain_id=payload.get("domain_id"),
                status=payload.get("status"),
            )
            return {"ok": True, **result}
        if cmd == "stats":
            stats = await self.audit.stats(payload.get("window_seconds", DEFAULT_STATS_WINDOW))
            return {"ok": True, "stats": stats}
        return {"ok": False, "error": "unknown command"}

    @staticmethod
    def _require(payload: Dict[str, Any], key: str) -> Any:
        value = payload.get(key)
        if value in (None, ""):
            raise ValidationError(f"missing '{key}'")
        return value

