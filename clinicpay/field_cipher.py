"""
Field-level encryption for PHI/PII at rest

AES-256-GCM with a fresh 96-bit nonce per call. Values are stored as a
delimited envelope:

    <nonce hex>:<auth tag hex>:<ciphertext hex>

Hex never contains ':' so the three parts are always unambiguous. Backup and
migration tooling must treat these values as opaque unless it holds the key.
"""

import binascii
import logging
import os
import warnings
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

from .config import FIELD_ENCRYPTION_KEY

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
DELIMITER = ":"


class FieldDecryptionError(Exception):
    """Raised when a stored value cannot be decrypted (malformed or tampered)"""

    pass


class FieldCipher:
    """Authenticated symmetric encryption for individual field values"""

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError(f"Field encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_hex(cls, hex_key: str) -> "FieldCipher":
        try:
            key = bytes.fromhex(hex_key)
        except ValueError as e:
            raise ValueError("FIELD_ENCRYPTION_KEY must be hex encoded") from e
        return cls(key)

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt a value. Empty or None values pass through unchanged."""
        if not plaintext:
            return plaintext

        # os.urandom is safe to call from many threads at once
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return DELIMITER.join([nonce.hex(), tag.hex(), ciphertext.hex()])

    def decrypt(self, envelope: Optional[str]) -> Optional[str]:
        """
        Decrypt an envelope produced by encrypt().

        Raises:
            FieldDecryptionError: if the envelope is malformed or fails authentication
        """
        if not envelope:
            return envelope

        parts = envelope.split(DELIMITER)
        if len(parts) != 3:
            raise FieldDecryptionError("Malformed encrypted value")

        try:
            nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError:
            raise FieldDecryptionError("Malformed encrypted value") from None

        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise FieldDecryptionError("Malformed encrypted value")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise FieldDecryptionError("Encrypted value failed authentication") from None

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise FieldDecryptionError("Decrypted value is not valid UTF-8") from None


def is_encrypted(value: Optional[str]) -> bool:
    """Check whether a value has the shape of an encryption envelope"""
    if not value:
        return False
    parts = value.split(DELIMITER)
    if len(parts) != 3:
        return False
    try:
        nonce, tag = binascii.unhexlify(parts[0]), binascii.unhexlify(parts[1])
        binascii.unhexlify(parts[2])
    except (binascii.Error, ValueError):
        return False
    return len(nonce) == NONCE_SIZE and len(tag) == TAG_SIZE


_field_cipher: Optional[FieldCipher] = None


def get_field_cipher() -> FieldCipher:
    """Process-wide cipher; key material is loaded once"""
    global _field_cipher

    if _field_cipher is None:
        if FIELD_ENCRYPTION_KEY:
            _field_cipher = FieldCipher.from_hex(FIELD_ENCRYPTION_KEY)
            logger.info("🔐 Field encryption key loaded")
        else:
            warnings.warn(
                "FIELD_ENCRYPTION_KEY not set! Using an ephemeral key - encrypted fields "
                "will be unreadable after restart",
                RuntimeWarning,
                stacklevel=2,
            )
            _field_cipher = FieldCipher(AESGCM.generate_key(bit_length=256))
    return _field_cipher


class EncryptedString(TypeDecorator):
    """String column that is transparently encrypted at rest"""

    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return get_field_cipher().encrypt(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return get_field_cipher().decrypt(value)
