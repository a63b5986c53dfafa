"""
Content body encryption.

Bodies of contents flagged ``is_encrypted`` are sealed with AES-256-GCM
before they reach the ``contents`` table. The row id is passed as
associated data, so a ciphertext copied onto another row fails to open.

Stored form: ``v{version}:{nonce}:{ciphertext}:{tag}``, each part urlsafe
base64. The version prefix leaves room for rotating the master key.

Usage:
    from database.encrypted_fields import encrypt_field, decrypt_field

    stored = encrypt_field(body, field_type="content", associated_data=str(content.id).encode())
    body = decrypt_field(stored, field_type="content", associated_data=str(content.id).encode())
"""

import base64
import hashlib
import logging
import os
import warnings
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config.settings import get_settings

logger = logging.getLogger(__name__)


# =============================================================================
# KEY MANAGEMENT
# =============================================================================

class EncryptionKeyError(Exception):
    """The configured master key is absent (production) or malformed."""
    pass


class DecryptionError(Exception):
    """Raised when a stored value cannot be decrypted."""
    pass


def _get_encryption_key() -> bytes:
    """
    Get the encryption master key from settings.

    Returns:
        32-byte encryption key

    Raises:
        EncryptionKeyError: If key is missing in production
    """
    settings = get_settings()
    key_hex = settings.encryption_key or os.environ.get("ENCRYPTION_MASTER_KEY")

    if not key_hex:
        if settings.is_production:
            raise EncryptionKeyError(
                "CRITICAL: ACCESS_ENCRYPTION_KEY is required in production. "
                "Generate with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        warnings.warn(
            "ACCESS_ENCRYPTION_KEY not set - using insecure development key. "
            "Content will NOT be securely encrypted.",
            UserWarning
        )
        # Deterministic dev key so data can be read across restarts
        key_hex = hashlib.sha256(b"DEV-ONLY-INSECURE-KEY").hexdigest()

    try:
        key_bytes = bytes.fromhex(key_hex)
    except ValueError:
        raise EncryptionKeyError("Encryption key must be a valid hex string")

    if len(key_bytes) < 32:
        raise EncryptionKeyError("Encryption key must be at least 32 bytes (64 hex chars)")

    return key_bytes[:32]


@lru_cache(maxsize=1)
def get_encryption_key() -> bytes:
    """Master key, resolved once per process."""
    return _get_encryption_key()


# =============================================================================
# ENCRYPTION IMPLEMENTATION
# =============================================================================

# Bumped when the master key is rotated
ENCRYPTION_VERSION = 1

# Per-field key derivation labels
FIELD_CONTEXTS = {
    "content": b"field:content:v1",
    "generic": b"field:generic:v1",
}


def _derive_field_key(master_key: bytes, field_type: str) -> bytes:
    """Derive a field-specific key from the master key."""
    context = FIELD_CONTEXTS.get(field_type, FIELD_CONTEXTS["generic"])
    return hashlib.sha256(master_key + context).digest()


def is_encrypted_value(value: Optional[str]) -> bool:
    """Check whether a stored value carries the versioned envelope."""
    if not value:
        return False
    parts = value.split(":")
    return len(parts) == 4 and parts[0].startswith("v") and parts[0][1:].isdigit()


def encrypt_field(
    plaintext: str,
    field_type: str = "generic",
    associated_data: Optional[bytes] = None,
) -> str:
    """
    Encrypt a field value.

    Args:
        plaintext: The value to encrypt
        field_type: Key derivation label ("content" or "generic")
        associated_data: Optional context data to bind to ciphertext

    Returns:
        Versioned string: v{version}:{nonce}:{ciphertext}:{tag}
    """
    if not plaintext:
        return ""

    field_key = _derive_field_key(get_encryption_key(), field_type)
    nonce = os.urandom(12)

    sealed = AESGCM(field_key).encrypt(nonce, plaintext.encode("utf-8"), associated_data)

    # Tag is the last 16 bytes
    encrypted_data = sealed[:-16]
    tag = sealed[-16:]

    return "v{}:{}:{}:{}".format(
        ENCRYPTION_VERSION,
        base64.urlsafe_b64encode(nonce).decode("ascii"),
        base64.urlsafe_b64encode(encrypted_data).decode("ascii"),
        base64.urlsafe_b64encode(tag).decode("ascii"),
    )


def decrypt_field(
    ciphertext: str,
    field_type: str = "generic",
    associated_data: Optional[bytes] = None,
) -> str:
    """
    Decrypt a field value produced by ``encrypt_field``.

    Raises:
        DecryptionError: If the envelope is malformed or authentication fails
    """
    if not ciphertext:
        return ""

    if not is_encrypted_value(ciphertext):
        raise DecryptionError("Invalid ciphertext format")

    try:
        _, nonce_b64, data_b64, tag_b64 = ciphertext.split(":")
        nonce = base64.urlsafe_b64decode(nonce_b64)
        encrypted_data = base64.urlsafe_b64decode(data_b64)
        tag = base64.urlsafe_b64decode(tag_b64)
    except ValueError as e:
        raise DecryptionError(f"Failed to parse ciphertext: {e}")

    field_key = _derive_field_key(get_encryption_key(), field_type)

    try:
        plaintext = AESGCM(field_key).decrypt(nonce, encrypted_data + tag, associated_data)
    except InvalidTag:
        logger.warning("Authentication failed opening %s field", field_type)
        raise DecryptionError("Decryption failed: ciphertext does not authenticate")

    return plaintext.decode("utf-8")
