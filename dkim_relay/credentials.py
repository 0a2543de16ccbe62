"""API key issuance and bearer-token authentication."""

from __future__ import annotations

import asyncio
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import bcrypt

from .errors import CredentialExpired, DomainInactive, InvalidCredential, NotFoundError, ValidationError
from .logger import get_logger
from .persistence import Persistence

KEY_TOKEN = "ms"
KEY_RANDOM_BYTES = 32
PREFIX_LENGTH = 11
DEFAULT_BCRYPT_ROUNDS = 12
KEEP_LIFETIME = object()

EXPIRY_CHOICES: Dict[str, Optional[int]] = {
    "30d": 30 * 86400,
    "90d": 90 * 86400,
    "180d": 180 * 86400,
    "365d": 365 * 86400,
    "never": None,
}


def generate_api_key() -> str:
    """Return a new raw API key: ``ms_`` followed by 64 lowercase hex chars."""
    return f"{KEY_TOKEN}_{secrets.token_hex(KEY_RANDOM_BYTES)}"


def key_prefix(raw_key: str) -> str:
    """Return the plaintext lookup prefix stored next to the hash."""
    return raw_key[:PREFIX_LENGTH]


def ttl_from_expiry(expires_in: Optional[str]) -> Optional[int]:
    """Translate an ``expires_in`` choice (``30d`` ... ``never``) into seconds."""
    if expires_in is None:
        return None
    if expires_in not in EXPIRY_CHOICES:
        raise ValidationError(
            f"Invalid expiry '{expires_in}'", details={"allowed": sorted(EXPIRY_CHOICES)}
        )
    return EXPIRY_CHOICES[expires_in]


@dataclass(frozen=True)
class CredentialIdentity:
    """Who a successfully authenticated bearer token speaks for."""

    domain_id: str
    domain_name: str
    credential_id: str


class CredentialStore:
    """Issue, verify and rotate API keys bound to a domain."""

    def __init__(
        self,
        persistence: Persistence,
        *,
        bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS,
        logger=None,
    ):
        self.persistence = persistence
        self.bcrypt_rounds = int(bcrypt_rounds)
        self.logger = logger or get_logger()

    @staticmethod
    def _utc_now_epoch() -> int:
        return int(datetime.now(timezone.utc).timestamp())

    async def _hash(self, raw_key: str) -> str:
        salt = bcrypt.gensalt(rounds=self.bcrypt_rounds)
        hashed = await asyncio.to_thread(bcrypt.hashpw, raw_key.encode("utf-8"), salt)
        return hashed.decode("ascii")

    @staticmethod
    async def _matches(raw_key: str, key_hash: str) -> bool:
        return await asyncio.to_thread(bcrypt.checkpw, raw_key.encode("utf-8"), key_hash.encode("ascii"))

    @staticmethod
    def _public(record: Dict[str, Any], now_ts: int) -> Dict[str, Any]:
        """Strip the hash and add the computed ``is_expired`` flag."""
        public = {k: v for k, v in record.items() if k != "key_hash"}
        expires_at = record.get("expires_at")
        public["is_expired"] = expires_at is not None and expires_at <= now_ts
        return public

    async def issue(
        self, domain_id: str, name: str, ttl: Optional[int] = None
    ) -> Tuple[Dict[str, Any], str]:
        """Create a credential for ``domain_id``.

        Returns ``(record, raw_key)``; the raw key is not stored anywhere and
        cannot be recovered after this call.
        """
        if await self.persistence.get_domain(domain_id) is None:
            raise NotFoundError("Domain not found")
        raw_key = generate_api_key()
        now = self._utc_now_epoch()
        record = {
            "id": str(uuid.uuid4()),
            "domain_id": domain_id,
            "name": name,
            "key_hash": await self._hash(raw_key),
            "key_prefix": key_prefix(raw_key),
            "is_active": True,
            "expires_at": now + int(ttl) if ttl else None,
            "last_used_at": None,
            "created_at": now,
            "updated_at": now,
        }
        await self.persistence.insert_credential(record)
        self.logger.info("Issued API key %s (%s) for domain %s", record["id"], record["key_prefix"], domain_id)
        return self._public(record, now), raw_key

    async def authenticate(self, raw_key: str) -> CredentialIdentity:
        """Resolve a raw bearer token to the identity of its domain.

        Every active credential sharing the prefix is checked against its
        bcrypt hash; the prefix alone never authenticates.
        """
        if not raw_key or not raw_key.startswith(f"{KEY_TOKEN}_"):
            raise InvalidCredential()
        candidates = await self.persistence.find_active_credentials_by_prefix(key_prefix(raw_key))
        now = self._utc_now_epoch()
        for candidate in candidates:
            if not await self._matches(raw_key, candidate["key_hash"]):
                continue
            expires_at = candidate.get("expires_at")
            if expires_at is not None and expires_at <= now:
                raise CredentialExpired()
            if not candidate.get("domain_is_active"):
                raise DomainInactive()
            try:
                await self.persistence.touch_credential(candidate["id"], now)
            except Exception as exc:
                self.logger.warning("Failed to record last use of API key %s: %s", candidate["id"], exc)
            return CredentialIdentity(
                domain_id=candidate["domain_id"],
                domain_name=candidate["domain_name"],
                credential_id=candidate["id"],
            )
        raise InvalidCredential()

    async def rotate(self, credential_id: str, ttl: Any = KEEP_LIFETIME) -> Tuple[Dict[str, Any], str]:
        """Replace the secret of a credential, keeping its id and name.

        ``ttl`` is the new lifetime in seconds, ``None`` for no expiry. When it
        is omitted the original lifetime (``expires_at - created_at``) is applied
        again from now; a credential that never expired stays so.
        """
        current = await self.persistence.get_credential(credential_id)
        if current is None:
            raise NotFoundError("API key not found")
        now = self._utc_now_epoch()
        if ttl is not KEEP_LIFETIME:
            expires_at: Optional[int] = now + int(ttl) if ttl else None
        elif current.get("expires_at") is not None:
            expires_at = now + (current["expires_at"] - current["created_at"])
        else:
            expires_at = None
        raw_key = generate_api_key()
        key_hash = await self._hash(raw_key)
        replaced = await self.persistence.replace_credential_secret(
            credential_id,
            key_hash=key_hash,
            key_prefix=key_prefix(raw_key),
            expires_at=expires_at,
            updated_at=now,
        )
        if not replaced:
            raise NotFoundError("API key not found")
        self.logger.info("Rotated API key %s", credential_id)
        record = await self.persistence.get_credential(credential_id)
        return self._public(record or {}, now), raw_key

    async def set_active(self, credential_id: str, is_active: bool) -> Dict[str, Any]:
        if not await self.persistence.set_credential_active(credential_id, is_active, self._utc_now_epoch()):
            raise NotFoundError("API key not found")
        record = await self.persistence.get_credential(credential_id)
        return self._public(record or {}, self._utc_now_epoch())

    async def delete(self, credential_id: str) -> None:
        if not await self.persistence.delete_credential(credential_id):
            raise NotFoundError("API key not found")
        self.logger.info("Deleted API key %s", credential_id)

    async def get(self, credential_id: str) -> Dict[str, Any]:
        record = await self.persistence.get_credential(credential_id)
        if record is None:
            raise NotFoundError("API key not found")
        return self._public(record, self._utc_now_epoch())

    async def list_for_domain(self, domain_id: str) -> List[Dict[str, Any]]:
        """Return the credentials of a domain without their hashes."""
        now = self._utc_now_epoch()
        return [self._public(item, now) for item in await self.persistence.list_credentials(domain_id)]
