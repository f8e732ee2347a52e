"""Signed token minting and verification.

Access tokens are RS256, signed with the requesting client's private key.
Refresh tokens are HS256, signed with the server-wide secret. Each
validator pins its algorithm and checks the header before looking at the
signature, so a token minted for one family is never accepted by the other.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import (
    load_pem_private_key,
    load_pem_public_key,
)

from authserver.logging import get_logger
from authserver.service.errors import InvalidTokenError, KeyMaterialError

logger = get_logger(__name__)

ACCESS_TOKEN_ALGORITHM = "RS256"
REFRESH_TOKEN_ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["sub", "aud", "iat", "exp"]
CODE_BYTES = 32


def generate_code() -> str:
    """Return a fresh URL-safe authorization code with 256 bits of entropy."""
    return secrets.token_urlsafe(CODE_BYTES)


@dataclass(frozen=True)
class UnverifiedClaims:
    """Claims read without signature verification. Never trust for authorization."""

    sub: Optional[str]
    aud: Optional[str]
    iat: Optional[int]
    exp: Optional[int]


@dataclass(frozen=True)
class VerifiedClaims:
    """Claims from a token whose signature, algorithm and expiry all checked out."""

    sub: str
    aud: str
    iat: int
    exp: int


def _load_private_key(pem: str) -> rsa.RSAPrivateKey:
    try:
        key = load_pem_private_key(pem.encode(), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyMaterialError("client private key could not be parsed") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyMaterialError("client private key is not an RSA key")
    return key


def _load_public_key(pem: str) -> rsa.RSAPublicKey:
    try:
        key = load_pem_public_key(pem.encode())
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyMaterialError("client public key could not be parsed") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyMaterialError("client public key is not an RSA key")
    return key


class TokenIssuer:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def _claims(self, user_id: str, client_id: str, lifetime_seconds: int) -> dict:
        now = int(self._clock())
        return {
            "sub": user_id,
            "aud": client_id,
            "iat": now,
            "exp": now + lifetime_seconds,
        }

    def issue_access_token(
        self, client_private_key_pem: str, user_id: str, client_id: str, exp_minutes: int
    ) -> str:
        key = _load_private_key(client_private_key_pem)
        payload = self._claims(user_id, client_id, exp_minutes * 60)
        return jwt.encode(payload, key, algorithm=ACCESS_TOKEN_ALGORITHM)

    def issue_refresh_token(
        self, server_secret: str, user_id: str, client_id: str, exp_days: int
    ) -> str:
        payload = self._claims(user_id, client_id, exp_days * 24 * 60 * 60)
        return jwt.encode(payload, server_secret, algorithm=REFRESH_TOKEN_ALGORITHM)


class TokenValidator:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def validate_access_token(
        self,
        token: str,
        client_public_key_pem: str,
        audience: Optional[str] = None,
    ) -> VerifiedClaims:
        key = _load_public_key(client_public_key_pem)
        return self._validate(token, key, ACCESS_TOKEN_ALGORITHM, audience)

    def validate_refresh_token(
        self, token: str, server_secret: str, audience: Optional[str] = None
    ) -> VerifiedClaims:
        return self._validate(token, server_secret, REFRESH_TOKEN_ALGORITHM, audience)

    def parse_unverified(self, token: str) -> UnverifiedClaims:
        try:
            payload = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError as exc:
            logger.warning("jwt_unverified_parse_failed", error=str(exc))
            raise InvalidTokenError("malformed token") from exc
        return UnverifiedClaims(
            sub=payload.get("sub") if isinstance(payload.get("sub"), str) else None,
            aud=payload.get("aud") if isinstance(payload.get("aud"), str) else None,
            iat=_as_int(payload.get("iat")),
            exp=_as_int(payload.get("exp")),
        )

    def _validate(
        self, token: str, key: Any, algorithm: str, audience: Optional[str]
    ) -> VerifiedClaims:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError("malformed token") from exc
        if header.get("alg") != algorithm:
            logger.warning(
                "jwt_invalid_algorithm", alg=header.get("alg"), expected=algorithm
            )
            raise InvalidTokenError("unexpected token algorithm")

        options = {
            "require": REQUIRED_CLAIMS,
            # Time claims are checked below against the injected clock
            "verify_exp": False,
            "verify_iat": False,
            "verify_nbf": False,
            "verify_aud": audience is not None,
        }
        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                audience=audience,
                options=options,
            )
        except jwt.MissingRequiredClaimError as exc:
            logger.warning("jwt_missing_claim", claim=exc.claim)
            raise InvalidTokenError("token is missing required claims") from exc
        except jwt.InvalidAudienceError as exc:
            raise InvalidTokenError("token audience mismatch") from exc
        except jwt.InvalidTokenError as exc:
            logger.warning("jwt_verification_failed", error=str(exc))
            raise InvalidTokenError() from exc

        sub, aud = payload.get("sub"), payload.get("aud")
        iat, exp = _as_int(payload.get("iat")), _as_int(payload.get("exp"))
        if not isinstance(sub, str) or not isinstance(aud, str):
            raise InvalidTokenError("token subject or audience malformed")
        if iat is None or exp is None:
            raise InvalidTokenError("token time claims malformed")
        if exp <= self._clock():
            raise InvalidTokenError("token expired")
        return VerifiedClaims(sub=sub, aud=aud, iat=iat, exp=exp)


def _as_int(value: Any) -> Optional[int]:
    # bool is an int subclass but never a valid timestamp
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None
