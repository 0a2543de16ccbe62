"""DKIM key lifecycle: key pair generation, DNS advertisement and signing."""

from __future__ import annotations

import base64
from dataclasses import asdict, dataclass
from email import message_from_bytes
from typing import Dict, Sequence

import dkim
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
DKIM_VERSION = "DKIM1"
DKIM_KEY_TYPE = "rsa"
DNS_RECORD_TTL = 3600
SPF_POLICY = "v=spf1 a mx ~all"
DMARC_POLICY = "quarantine"

SIGNED_HEADERS: Sequence[bytes] = (
    b"from",
    b"to",
    b"subject",
    b"date",
    b"message-id",
    b"reply-to",
    b"mime-version",
    b"content-type",
)


@dataclass(frozen=True)
class KeyPair:
    """A signing key pair.

    ``private_key`` is a PKCS#1 PEM string, ``public_key`` the base64 DER
    ``SubjectPublicKeyInfo`` exactly as published in the DKIM record.
    """

    private_key: str
    public_key: str


@dataclass(frozen=True)
class DnsRecord:
    type: str
    host: str
    value: str
    ttl: int = DNS_RECORD_TTL


@dataclass(frozen=True)
class DnsRecordSet:
    signing: DnsRecord
    sender_policy: DnsRecord
    reporting_policy: DnsRecord

    def to_dict(self) -> Dict[str, Dict[str, object]]:
        return {
            "dkim": asdict(self.signing),
            "spf": asdict(self.sender_policy),
            "dmarc": asdict(self.reporting_policy),
        }


def generate_key_pair(key_size: int = KEY_SIZE) -> KeyPair:
    """Generate a fresh RSA signing key pair from the OS CSPRNG."""
    private_key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size)
    pem_private = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    der_public = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return KeyPair(
        private_key=pem_private.decode("ascii"),
        public_key=base64.b64encode(der_public).decode("ascii"),
    )


def public_key_for_dns(public_key: str) -> str:
    """Return the TXT value advertising ``public_key``."""
    return f"v={DKIM_VERSION}; k={DKIM_KEY_TYPE}; p={public_key}"


def dns_record_set(domain_name: str, selector: str, public_key: str) -> DnsRecordSet:
    """Derive the DKIM, SPF and DMARC records a domain must publish.

    Hosts are built from the full domain name, so ``mail.example.com`` yields
    ``<selector>._domainkey.mail.example.com`` and ``_dmarc.mail.example.com``.
    """
    return DnsRecordSet(
        signing=DnsRecord(
            type="TXT",
            host=f"{selector}._domainkey.{domain_name}",
            value=public_key_for_dns(public_key),
        ),
        sender_policy=DnsRecord(type="TXT", host=domain_name, value=SPF_POLICY),
        reporting_policy=DnsRecord(
            type="TXT",
            host=f"_dmarc.{domain_name}",
            value=f"v=DMARC1; p={DMARC_POLICY}; rua=mailto:dmarc@{domain_name}",
        ),
    )


def sign_message(message: bytes, *, domain_name: str, selector: str, private_key: str) -> bytes:
    """Return ``message`` with a ``DKIM-Signature`` header prepended.

    Only the headers of :data:`SIGNED_HEADERS` present in the message are signed.
    """
    present = {name.lower().encode("ascii") for name in message_from_bytes(message).keys()}
    signature = dkim.sign(
        message=message,
        selector=selector.encode("ascii"),
        domain=domain_name.encode("ascii"),
        privkey=private_key.encode("ascii"),
        include_headers=[name for name in SIGNED_HEADERS if name in present],
    )
    return signature + message
