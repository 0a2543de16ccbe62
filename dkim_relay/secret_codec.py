"""Authenticated encryption of secrets stored at rest (DKIM private keys).

Blob format: three colon-separated lowercase hex segments::

    <iv: 16 bytes>:<tag: 16 bytes>:<ciphertext>

The cipher is AES-256-GCM. The AES key is derived from the process master
secret with scrypt (N=2**14, r=8, p=1) and the fixed, non-secret salt
``KDF_SALT``; the master secret itself never reaches the cipher.
"""

from __future__ import annotations

import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import ConfigurationError, FormatError, IntegrityError

KDF_SALT = b"salt"
KDF_N = 2**14
KDF_R = 8
KDF_P = 1
KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
DELIMITER = ":"


@lru_cache(maxsize=8)
def derive_key(master_secret: str) -> bytes:
    """Derive the 256-bit cipher key from ``master_secret``."""
    if not master_secret:
        raise ConfigurationError("Master secret is not configured")
    kdf = Scrypt(salt=KDF_SALT, length=KEY_LENGTH, n=KDF_N, r=KDF_R, p=KDF_P)
    return kdf.derive(master_secret.encode("utf-8"))


def _seal(key: bytes, plaintext: str) -> str:
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    # cryptography appends the tag to the ciphertext
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return DELIMITER.join((iv.hex(), tag.hex(), ciphertext.hex()))


def _open(key: bytes, blob: str) -> str:
    if not isinstance(blob, str):
        raise FormatError("Encrypted blob must be a string")
    parts = blob.split(DELIMITER)
    if len(parts) != 3:
        raise FormatError(f"Encrypted blob must have 3 segments, got {len(parts)}")
    try:
        iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError as exc:
        raise FormatError(f"Encrypted blob is not valid hex: {exc}") from exc
    if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
        raise FormatError("Encrypted blob has an invalid IV or tag length")
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise IntegrityError("Encrypted blob failed integrity check") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FormatError("Decrypted secret is not valid UTF-8") from exc


def encrypt(plaintext: str, master_secret: str) -> str:
    """Encrypt ``plaintext``; every call uses a fresh random IV."""
    return _seal(derive_key(master_secret), plaintext)


def decrypt(blob: str, master_secret: str) -> str:
    """Inverse of :func:`encrypt`.

    Raises :class:`FormatError` for malformed blobs and :class:`IntegrityError`
    when the tag does not verify (tampered blob or wrong master secret).
    """
    return _open(derive_key(master_secret), blob)


class SecretCodec:
    """Codec bound to the process master secret, derived once at startup."""

    def __init__(self, master_secret: str):
        self._key = derive_key(master_secret)

    def encrypt(self, plaintext: str) -> str:
        return _seal(self._key, plaintext)

    def decrypt(self, blob: str) -> str:
        return _open(self._key, blob)
