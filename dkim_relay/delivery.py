"""Delivery engine: validate, sign, transmit and classify each send.

A send moves through ``Validating -> Signing -> Transmitting`` and ends in
one of three outcomes:

* ``sent``: the transport accepted the message;
* ``pending_retry``: the transport failed with a transient error and the
  attempt is parked for the retry scheduler;
* ``failed``: terminal, with a machine readable reason code.

Every outcome is written to the audit log exactly once per attempt: first
sends append a record, retries rewrite the same record in place.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.utils import formatdate, make_msgid, parseaddr
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import dkim

from .audit import STATUS_FAILED, STATUS_PENDING_RETRY, STATUS_SENT, AuditLog
from .domains import DomainRegistry
from .errors import (
    DomainInactive,
    DomainNotFound,
    FormatError,
    IntegrityError,
    InvalidMessage,
    KeyDecryptionError,
    NotFoundError,
    PermanentDeliveryError,
    RetriesExhausted,
    SenderDomainMismatch,
    SigningError,
    TransientDeliveryError,
)
from .keys import sign_message
from .logger import get_logger
from .observer import DeliveryObserver
from .secret_codec import SecretCodec
from .transport import OutboundMessage, Transport

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = (60, 300, 900)  # 1min, 5min, 15min

TRANSIENT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"connection refused",
        r"timeout",
        r"timed out",
        r"ECONNRESET",
        r"ETIMEDOUT",
        r"temporary.*failure",
        r"try again",
        r"service unavailable",
        r"too many connections",
        r"rate limit",
    )
]


class FailureReason(str, Enum):
    SENDER_DOMAIN_MISMATCH = SenderDomainMismatch.code
    DOMAIN_NOT_FOUND = DomainNotFound.code
    DOMAIN_INACTIVE = DomainInactive.code
    KEY_DECRYPTION_ERROR = KeyDecryptionError.code
    INVALID_MESSAGE = InvalidMessage.code
    SIGNING_ERROR = SigningError.code
    PERMANENT_DELIVERY_ERROR = PermanentDeliveryError.code
    RETRIES_EXHAUSTED = RetriesExhausted.code


@dataclass
class DeliveryOutcome:
    """Result of a send or retry as seen by the caller."""

    state: str
    attempt_id: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[int] = None

    @property
    def sent(self) -> bool:
        return self.state == STATUS_SENT

    @property
    def will_retry(self) -> bool:
        return self.state == STATUS_PENDING_RETRY


def classify_transport_error(exc: BaseException) -> Tuple[bool, Optional[int]]:
    """
    Classify a transport failure as transient or permanent.

    Returns:
        tuple: (is_transient, reply_code)
            - is_transient: True when retrying later may succeed
            - reply_code: SMTP or HTTP status code when the transport reported one
    """
    reply_code = getattr(exc, "reply_code", None)
    if reply_code is None:
        # aiosmtplib response exceptions carry the SMTP code as ``code``
        candidate = getattr(exc, "code", None)
        reply_code = candidate if isinstance(candidate, int) else None

    transient = getattr(exc, "transient", None)
    if isinstance(transient, bool):
        return transient, reply_code

    # Network and timeout errors are transient
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True, reply_code

    if reply_code:
        if 400 <= reply_code < 500:
            return True, reply_code
        if 500 <= reply_code < 600:
            return False, reply_code

    error_msg = str(exc)
    if any(pattern.search(error_msg) for pattern in TRANSIENT_PATTERNS):
        return True, reply_code
    return False, reply_code


def retry_delay(retry_count: int, delays: Sequence[int] = DEFAULT_RETRY_DELAYS) -> int:
    """
    Return the delay in seconds before the next attempt.

    ``retry_count`` is the number of transient failures recorded so far
    (1 after the first failure); the sequence is clamped to its last value.
    """
    index = max(0, retry_count - 1)
    if index >= len(delays):
        return int(delays[-1])
    return int(delays[index])


def _recipients(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value or []]


def _address_domain(address: str) -> str:
    _, email_addr = parseaddr(address or "")
    return email_addr.rpartition("@")[2].strip().lower()


def _envelope_address(address: str) -> str:
    _, email_addr = parseaddr(address or "")
    return email_addr or address


def _error_text(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or exc.__class__.__name__


class DeliveryEngine:
    """Sign messages with the domain key and hand them to the transport."""

    def __init__(
        self,
        registry: DomainRegistry,
        codec: SecretCodec,
        transport: Transport,
        audit: AuditLog,
        *,
        observer: Optional[DeliveryObserver] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: Sequence[int] = DEFAULT_RETRY_DELAYS,
        transport_timeout: float = 30.0,
        log_delivery_activity: bool = False,
        logger=None,
    ):
        self.registry = registry
        self.codec = codec
        self.transport = transport
        self.audit = audit
        self.observer = observer or DeliveryObserver()
        self.max_retries = max(1, int(max_retries))
        self.retry_delays = tuple(retry_delays) or DEFAULT_RETRY_DELAYS
        self.transport_timeout = float(transport_timeout)
        self.log_delivery_activity = bool(log_delivery_activity)
        self.logger = logger or get_logger()

    @staticmethod
    def _utc_now_epoch() -> int:
        """Return the current UTC timestamp as seconds since epoch."""
        return int(datetime.now(timezone.utc).timestamp())

    # ------------------------------------------------------------------ sends
    async def send(self, domain_id: str, payload: Dict[str, Any]) -> DeliveryOutcome:
        """Run a first delivery attempt for an authenticated domain.

        ``payload`` holds ``from``, ``to`` (string or list), ``subject`` and at
        least one of ``html``/``text``; ``reply_to`` is optional.
        """
        try:
            domain = await self.registry.get(domain_id, include_private=True)
        except NotFoundError:
            return DeliveryOutcome(
                state=STATUS_FAILED, error="Domain not found", error_code=FailureReason.DOMAIN_NOT_FOUND.value
            )

        now = self._utc_now_epoch()
        recipients = _recipients(payload.get("to"))
        attempt: Dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "domain_id": domain["id"],
            "from_email": payload["from"],
            "to_email": ", ".join(recipients),
            "subject": payload["subject"],
            "message": {
                "to": recipients,
                "html": payload.get("html"),
                "text": payload.get("text"),
                "reply_to": payload.get("reply_to"),
                "message_id": make_msgid(domain=domain["name"]),
            },
            "retry_count": 0,
            "created_at": now,
        }

        if _address_domain(payload["from"]) != domain["name"]:
            return await self._record_first(
                attempt,
                domain,
                self._failed(
                    attempt,
                    f"From address must use domain {domain['name']}",
                    FailureReason.SENDER_DOMAIN_MISMATCH,
                ),
            )
        if not domain["is_active"]:
            return await self._record_first(
                attempt, domain, self._failed(attempt, "Domain is not active", FailureReason.DOMAIN_INACTIVE)
            )

        outcome = await self._sign_and_transmit(domain, attempt, retry_count=0)
        return await self._record_first(attempt, domain, outcome)

    async def retry(self, attempt: Dict[str, Any], *, claim_token: Optional[str] = None) -> DeliveryOutcome:
        """Re-run a parked attempt and rewrite its audit record in place.

        The caller must hold the claim identified by ``claim_token``; the
        record is only rewritten while that claim is still held.
        """
        try:
            domain = await self.registry.get(attempt["domain_id"], include_private=True)
        except NotFoundError:
            outcome = self._failed(attempt, "Domain not found", FailureReason.DOMAIN_NOT_FOUND)
            domain = {"name": None}
        else:
            if not domain["is_active"]:
                outcome = self._failed(attempt, "Domain is no longer active", FailureReason.DOMAIN_INACTIVE)
            else:
                outcome = await self._sign_and_transmit(
                    domain, attempt, retry_count=int(attempt.get("retry_count") or 0)
                )

        written = await self.audit.update(
            attempt["id"],
            claim_token=claim_token,
            status=outcome.state,
            retry_count=outcome.retry_count,
            next_retry_at=outcome.next_retry_at,
            error=outcome.error,
            error_code=outcome.error_code,
            message_id=outcome.message_id,
            updated_at=self._utc_now_epoch(),
        )
        if not written:
            self.logger.warning("Lost claim on send attempt %s; outcome %s not recorded", attempt["id"], outcome.state)
        self._notify(domain.get("name"), outcome)
        return outcome

    # --------------------------------------------------------------- internals
    def _failed(self, attempt: Dict[str, Any], error: str, reason: FailureReason) -> DeliveryOutcome:
        return DeliveryOutcome(
            state=STATUS_FAILED,
            attempt_id=attempt["id"],
            error=error,
            error_code=reason.value,
            retry_count=int(attempt.get("retry_count") or 0),
        )

    async def _sign_and_transmit(
        self, domain: Dict[str, Any], attempt: Dict[str, Any], *, retry_count: int
    ) -> DeliveryOutcome:
        # Signing
        try:
            private_key = self.codec.decrypt(domain["encrypted_private_key"])
        except (FormatError, IntegrityError) as exc:
            self.logger.error("Failed to decrypt DKIM key for domain %s: %s", domain["name"], exc)
            return self._failed(attempt, "Failed to decrypt DKIM key", FailureReason.KEY_DECRYPTION_ERROR)

        message_id = attempt["message"].get("message_id") or make_msgid(domain=domain["name"])
        try:
            composed = self._compose(attempt, message_id)
        except ValueError as exc:
            self.logger.error("Cannot build message for send attempt %s: %s", attempt["id"], exc)
            return self._failed(attempt, f"Invalid message: {exc}", FailureReason.INVALID_MESSAGE)
        try:
            raw = sign_message(
                composed,
                domain_name=domain["name"],
                selector=domain["selector"],
                private_key=private_key,
            )
        except (ValueError, dkim.DKIMException) as exc:
            self.logger.error("Failed to sign message for domain %s: %s", domain["name"], exc)
            return self._failed(attempt, f"Failed to sign message: {exc}", FailureReason.SIGNING_ERROR)

        # Transmitting
        outbound = OutboundMessage(
            envelope_from=_envelope_address(attempt["from_email"]),
            recipients=attempt["message"].get("to") or _recipients(attempt["to_email"].split(", ")),
            raw=raw,
            message_id=message_id,
        )
        try:
            async with asyncio.timeout(self.transport_timeout):
                delivered_id = await self.transport.send(outbound)
        except Exception as exc:
            return self._classify(attempt, exc, retry_count)

        return DeliveryOutcome(
            state=STATUS_SENT,
            attempt_id=attempt["id"],
            message_id=delivered_id or message_id,
            retry_count=retry_count,
        )

    def _classify(self, attempt: Dict[str, Any], exc: Exception, retry_count: int) -> DeliveryOutcome:
        is_transient, reply_code = classify_transport_error(exc)
        error_info = _error_text(exc)
        if isinstance(exc, TimeoutError) and error_info == "TimeoutError":
            error_info = f"Transport timeout after {self.transport_timeout:g}s"
        if reply_code and str(reply_code) not in error_info:
            error_info = f"{error_info} ({reply_code})"
        new_count = retry_count + 1

        if is_transient and new_count < self.max_retries:
            delay = retry_delay(new_count, self.retry_delays)
            self.logger.warning(
                "Temporary error for send attempt %s (attempt %d/%d): %s - retrying in %ds",
                attempt["id"],
                new_count,
                self.max_retries,
                error_info,
                delay,
            )
            return DeliveryOutcome(
                state=STATUS_PENDING_RETRY,
                attempt_id=attempt["id"],
                error=error_info,
                error_code=TransientDeliveryError.code,
                retry_count=new_count,
                next_retry_at=self._utc_now_epoch() + delay,
            )

        if is_transient:
            self.logger.error(
                "Send attempt %s failed permanently after %d attempts: %s", attempt["id"], new_count, error_info
            )
            reason = FailureReason.RETRIES_EXHAUSTED
            error_info = f"Max retries ({self.max_retries}) exceeded: {error_info}"
        else:
            self.logger.error("Send attempt %s failed with permanent error: %s", attempt["id"], error_info)
            reason = FailureReason.PERMANENT_DELIVERY_ERROR
        return DeliveryOutcome(
            state=STATUS_FAILED,
            attempt_id=attempt["id"],
            error=error_info,
            error_code=reason.value,
            retry_count=new_count if is_transient else retry_count,
        )

    @staticmethod
    def _compose(attempt: Dict[str, Any], message_id: str) -> bytes:
        content = attempt["message"]
        msg = EmailMessage()
        msg["From"] = attempt["from_email"]
        msg["To"] = ", ".join(content.get("to") or [attempt["to_email"]])
        msg["Subject"] = attempt["subject"]
        if content.get("reply_to"):
            msg["Reply-To"] = content["reply_to"]
        msg["Date"] = formatdate(usegmt=True)
        msg["Message-ID"] = message_id
        text, html = content.get("text"), content.get("html")
        if text:
            msg.set_content(text)
            if html:
                msg.add_alternative(html, subtype="html")
        elif html:
            msg.set_content(html, subtype="html")
        else:
            msg.set_content("")
        return msg.as_bytes(policy=policy.SMTP)

    async def _record_first(
        self, attempt: Dict[str, Any], domain: Dict[str, Any], outcome: DeliveryOutcome
    ) -> DeliveryOutcome:
        now = self._utc_now_epoch()
        await self.audit.record(
            {
                **attempt,
                "status": outcome.state,
                "retry_count": outcome.retry_count,
                "next_retry_at": outcome.next_retry_at,
                "error": outcome.error,
                "error_code": outcome.error_code,
                "message_id": outcome.message_id,
                "updated_at": now,
            }
        )
        self._notify(domain["name"], outcome)
        return outcome

    def _notify(self, domain_name: Optional[str], outcome: DeliveryOutcome) -> None:
        domain_label = domain_name or "unknown"
        if outcome.state == STATUS_SENT:
            self.observer.on_sent(domain_label)
        elif outcome.state == STATUS_PENDING_RETRY:
            self.observer.on_retry_scheduled(domain_label)
        else:
            self.observer.on_failed(domain_label, outcome.error_code or "unknown")
        if not self.log_delivery_activity:
            return
        if outcome.state == STATUS_SENT:
            self.logger.info("Delivery succeeded for attempt %s (domain=%s)", outcome.attempt_id, domain_label)
        elif outcome.state == STATUS_PENDING_RETRY:
            self.logger.info(
                "Delivery deferred for attempt %s (domain=%s) until %s",
                outcome.attempt_id,
                domain_label,
                datetime.fromtimestamp(outcome.next_retry_at or 0, timezone.utc).isoformat().replace("+00:00", "Z"),
            )
        else:
            self.logger.info(
                "Delivery failed for attempt %s (domain=%s): %s", outcome.attempt_id, domain_label, outcome.error
            )
