"""Common storage utilities shared between memory and postgres implementations.

Both backends keep client private keys encrypted at rest with the same
Fernet key, so a record written by one is readable by the other.
"""

from __future__ import annotations

import base64
import hashlib
import uuid
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from authserver.service.errors import KeyMaterialError


# ============================================================================
# KEY ENCRYPTION
# ============================================================================

def derive_cipher_key(key_material: str) -> bytes:
    """Derive a Fernet key from arbitrary-length key material."""
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_key_cipher(key_material: str) -> Fernet:
    if not key_material:
        raise RuntimeError("key material is required to encrypt client keys at rest")
    return Fernet(derive_cipher_key(key_material))


def encrypt_private_key(cipher: Fernet, private_key_pem: str) -> str:
    return cipher.encrypt(private_key_pem.encode()).decode()


def decrypt_private_key(cipher: Fernet, stored: str) -> str:
    """Decrypt a stored private key.

    A record that cannot be decrypted means the server key changed underneath
    the store; that is an operator fault, not something a request can fix.
    """
    try:
        return cipher.decrypt(stored.encode()).decode()
    except InvalidToken as exc:
        raise KeyMaterialError("client private key could not be decrypted") from exc


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def normalize_uuid(raw: Any) -> Optional[str]:
    """Return the canonical UUID string, or None when raw is not a UUID."""
    try:
        return str(uuid.UUID(str(raw)))
    except (ValueError, TypeError, AttributeError):
        return None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())
