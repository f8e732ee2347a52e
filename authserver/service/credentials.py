from __future__ import annotations

import secrets
from typing import Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from authserver.logging import get_logger

logger = get_logger(__name__)

RSA_KEY_BITS = 2048
CLIENT_SECRET_BYTES = 32


class SecretHasher:
    """argon2id hashing for user passwords and client secrets."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the subject does not exist so both paths cost the same
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, stored_hash: str, candidate: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("secret_hash_unverifiable")
            return False

    def burn(self, candidate: str) -> None:
        """Run a verification against a throwaway hash; always fails."""
        self.verify(self._dummy_hash, candidate)


def generate_client_secret() -> str:
    return secrets.token_urlsafe(CLIENT_SECRET_BYTES)


def generate_rsa_key_pair(bits: int = RSA_KEY_BITS) -> Tuple[str, str]:
    """Return (private_pem, public_pem) for a fresh RSA key."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode()
    )
    return private_pem, public_pem
