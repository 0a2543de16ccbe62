"""Tenant domain records and their signing keys."""

from __future__ import annotations

import asyncio
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiosqlite

from .errors import ConflictError, NotFoundError, ValidationError
from .keys import dns_record_set, generate_key_pair
from .logger import get_logger
from .persistence import Persistence
from .secret_codec import SecretCodec

DEFAULT_SELECTOR = "mail"
MAX_DOMAIN_LENGTH = 253
DOMAIN_RE = re.compile(r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$")
SELECTOR_RE = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalise_domain_name(name: str) -> str:
    """Validate a DNS domain name and return it lowercased."""
    value = (name or "").strip()
    if not value or len(value) > MAX_DOMAIN_LENGTH or not DOMAIN_RE.match(value):
        raise ValidationError(f"Invalid domain name '{name}'")
    return value.lower()


class DomainRegistry:
    """Create and administer domains.

    A domain row is only ever written together with its key pair: keys are
    generated and encrypted first, then inserted in a single statement.
    """

    def __init__(self, persistence: Persistence, codec: SecretCodec, *, logger=None):
        self.persistence = persistence
        self.codec = codec
        self.logger = logger or get_logger()

    @staticmethod
    def _utc_now_epoch() -> int:
        return int(datetime.now(timezone.utc).timestamp())

    @staticmethod
    def _public(domain: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in domain.items() if k != "encrypted_private_key"}

    async def create(self, name: str, selector: str = DEFAULT_SELECTOR) -> Dict[str, Any]:
        """Register a domain and return it with the DNS records to publish."""
        domain_name = normalise_domain_name(name)
        selector = (selector or DEFAULT_SELECTOR).strip()
        if not SELECTOR_RE.match(selector):
            raise ValidationError(f"Invalid selector '{selector}'")
        if await self.persistence.get_domain_by_name(domain_name) is not None:
            raise ConflictError("Domain already exists")

        key_pair = await asyncio.to_thread(generate_key_pair)
        now = self._utc_now_epoch()
        domain = {
            "id": str(uuid.uuid4()),
            "name": domain_name,
            "selector": selector,
            "public_key": key_pair.public_key,
            "encrypted_private_key": self.codec.encrypt(key_pair.private_key),
            "is_active": True,
            "is_verified": False,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.persistence.insert_domain(domain)
        except aiosqlite.IntegrityError as exc:
            raise ConflictError("Domain already exists") from exc
        self.logger.info("Registered domain %s (selector=%s)", domain_name, selector)
        result = self._public(domain)
        result["dns_records"] = self.dns_records(result)
        return result

    async def get(self, domain_id: str, *, include_private: bool = False) -> Dict[str, Any]:
        domain = await self.persistence.get_domain(domain_id)
        if domain is None:
            raise NotFoundError("Domain not found")
        return domain if include_private else self._public(domain)

    async def get_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        domain = await self.persistence.get_domain_by_name((name or "").strip().lower())
        return self._public(domain) if domain else None

    async def list(self, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        page = max(1, int(page))
        limit = max(1, min(100, int(limit)))
        total = await self.persistence.count_domains()
        rows = await self.persistence.list_domains(limit=limit, offset=(page - 1) * limit)
        return {
            "domains": [self._public(row) for row in rows],
            "pagination": {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)},
        }

    async def set_active(self, domain_id: str, is_active: bool) -> Dict[str, Any]:
        updated = await self.persistence.update_domain_flags(
            domain_id, updated_at=self._utc_now_epoch(), is_active=is_active
        )
        if not updated:
            raise NotFoundError("Domain not found")
        self.logger.info("Domain %s %s", domain_id, "activated" if is_active else "deactivated")
        return await self.get(domain_id)

    async def set_verified(self, domain_id: str, is_verified: bool = True) -> Dict[str, Any]:
        updated = await self.persistence.update_domain_flags(
            domain_id, updated_at=self._utc_now_epoch(), is_verified=is_verified
        )
        if not updated:
            raise NotFoundError("Domain not found")
        return await self.get(domain_id)

    async def delete(self, domain_id: str) -> None:
        """Delete a domain together with its credentials and send attempts."""
        if not await self.persistence.delete_domain(domain_id):
            raise NotFoundError("Domain not found")
        self.logger.info("Deleted domain %s", domain_id)

    @staticmethod
    def dns_records(domain: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        """Return the DKIM, SPF and DMARC records for a stored domain."""
        return dns_record_set(domain["name"], domain["selector"], domain["public_key"]).to_dict()
