"""
Maitri - Telephony Privacy Utilities

Two primitives for caller phone numbers:
    - hash_phone_number: salted SHA-256, a stable lookup key that is never reversed
    - PhoneCipher: AES-256-GCM, reversed only to show an alert to a responder

IMPORTANT:
    Raw phone numbers must NEVER be logged, stored in cleartext, or pushed
    over the alert stream. The stream carries mask_phone_number() output only.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from maitri.core.exceptions import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32

# Used when ENCRYPTION_KEY is not provisioned. UNSAFE FOR PRODUCTION.
FALLBACK_KEY = bytes(KEY_LENGTH)

MASKED_PHONE_PLACEHOLDER = "****-****-XXXX"


def hash_phone_number(number: str, salt: str) -> str:
    """
    One-way hash of a phone number used to correlate records from the same caller.

    Deterministic for the same number+salt; the salt must stay stable across
    restarts for hashes to keep matching.

    Returns:
        64-character SHA-256 hex digest of number + salt
    """
    return hashlib.sha256(f"{number}{salt}".encode("utf-8")).hexdigest()


def mask_phone_number(number: Optional[str], show_last_digits: int = 4) -> str:
    """
    Mask a phone number for display on the alert stream.

    Examples:
        +918340570832 → ****-****-0832
        None          → ****-****-XXXX
    """
    if not number:
        return MASKED_PHONE_PLACEHOLDER

    digits = re.sub(r"\D", "", str(number))
    if len(digits) < show_last_digits:
        return MASKED_PHONE_PLACEHOLDER

    return f"****-****-{digits[-show_last_digits:]}"


def load_encryption_key(key_hex: Optional[str]) -> tuple[bytes, bool]:
    """
    Parse ENCRYPTION_KEY.

    Returns:
        (key bytes, is_fallback)

    Raises:
        ConfigurationError: key is set but is not 64 hex characters
    """
    if not key_hex:
        return FALLBACK_KEY, True

    try:
        key = bytes.fromhex(key_hex.strip())
    except ValueError as e:
        raise ConfigurationError("ENCRYPTION_KEY must be hex encoded") from e

    if len(key) != KEY_LENGTH:
        raise ConfigurationError(
            f"ENCRYPTION_KEY must be {KEY_LENGTH} bytes ({KEY_LENGTH * 2} hex characters)",
            details={"length": len(key)},
        )
    return key, False


class PhoneCipher:
    """
    Authenticated encryption for caller phone numbers.

    Serialized form: hex(iv) ":" hex(auth_tag) ":" hex(ciphertext), with a
    fresh random 16-byte IV per value.
    """

    def __init__(self, key: bytes, is_fallback: bool = False):
        if len(key) != KEY_LENGTH:
            raise ConfigurationError(f"Encryption key must be {KEY_LENGTH} bytes")
        self._aesgcm = AESGCM(key)
        self.is_fallback = is_fallback

    @classmethod
    def from_settings(cls, key_hex: Optional[str]) -> "PhoneCipher":
        key, is_fallback = load_encryption_key(key_hex)
        if is_fallback:
            logger.error(
                "ENCRYPTION_KEY is not set - using fallback key. "
                "DO NOT USE IN PRODUCTION. Generate one with: openssl rand -hex 32"
            )
        return cls(key, is_fallback=is_fallback)

    def encrypt(self, phone: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, phone.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """
        Raises:
            DecryptionError: malformed token, wrong key, or tampered data
        """
        parts = token.split(":") if token else []
        if len(parts) != 3:
            raise DecryptionError("Encrypted phone has an invalid format")

        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise DecryptionError("Encrypted phone is not hex encoded") from e

        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise DecryptionError("Encrypted phone has an invalid IV or tag length")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Encrypted phone failed authentication") from e

        return plaintext.decode("utf-8")


class CallerIdentity:
    """
    Hash + cipher pair applied to every caller number on entry.

    Usage:
        identity = CallerIdentity(cipher, salt)
        caller_hash = identity.hash(phone)
        token = identity.encrypt(phone)
    """

    def __init__(self, cipher: PhoneCipher, salt: str):
        self.cipher = cipher
        self._salt = salt

    def hash(self, phone: str) -> str:
        return hash_phone_number(phone, self._salt)

    def encrypt(self, phone: str) -> str:
        return self.cipher.encrypt(phone)

    def decrypt(self, token: str) -> str:
        return self.cipher.decrypt(token)

    def masked(self, token: Optional[str]) -> str:
        """Masked display value for an encrypted phone; placeholder when absent or undecryptable."""
        if not token:
            return MASKED_PHONE_PLACEHOLDER
        try:
            return mask_phone_number(self.cipher.decrypt(token))
        except DecryptionError:
            logger.error("Phone decryption failed - alert will show masked placeholder", exc_info=True)
            return MASKED_PHONE_PLACEHOLDER
