from __future__ import annotations

import asyncio
import hmac
import re
from typing import Callable, Optional, Tuple

from authserver.config import Settings
from authserver.logging import get_logger
from authserver.service.credentials import (
    SecretHasher,
    generate_client_secret,
    generate_rsa_key_pair,
)
from authserver.service.email import EmailService
from authserver.service.errors import (
    InvalidRequestError,
    NotFoundError,
    ValidationError,
)
from authserver.service.oauth import CredentialStore
from authserver.service.revocation import EphemeralStore
from authserver.service.tokens import VerifiedClaims, generate_code
from authserver.storage.common import normalize_email
from authserver.storage.models import Client, User

VERIFICATION_PREFIX = "user:verification:"
PASSWORD_RESET_PREFIX = "user:password:reset:"

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_CLIENT_NAME_LENGTH = 128
_SPECIAL_CHAR = re.compile(r"[^A-Za-z0-9]")


def validate_password_strength(value: str) -> str:
    """Require 8-128 characters mixing upper case, lower case, digits and symbols."""
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in value):
        raise ValueError("password must contain an upper case letter")
    if not any(c.islower() for c in value):
        raise ValueError("password must contain a lower case letter")
    if not any(c.isdigit() for c in value):
        raise ValueError("password must contain a digit")
    if not _SPECIAL_CHAR.search(value):
        raise ValueError("password must contain a special character")
    return value


class AccountService:
    """User and client registration, email verification, and password resets."""

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        code_store: EphemeralStore,
        hasher: SecretHasher,
        email_service: EmailService,
        *,
        key_pair_factory: Callable[[], Tuple[str, str]] = generate_rsa_key_pair,
    ) -> None:
        self.settings = settings
        self.store = store
        self.code_store = code_store
        self.hasher = hasher
        self.email_service = email_service
        self._key_pair_factory = key_pair_factory
        self.logger = get_logger(__name__)

    @property
    def _verification_ttl(self) -> int:
        return self.settings.email_verification_exp_hours * 3600

    @property
    def _reset_ttl(self) -> int:
        return self.settings.password_reset_exp_hours * 3600

    @staticmethod
    def _check_password(password: str) -> None:
        try:
            validate_password_strength(password)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "password"}) from exc

    # registration
    async def register_user(
        self, first_name: str, last_name: str, email: str, password: str
    ) -> Tuple[User, str]:
        self._check_password(password)
        user = self.store.create_user(
            email,
            self.hasher.hash(password),
            first_name=first_name.strip(),
            last_name=last_name.strip(),
        )
        code = await self._issue_verification(user)
        self.logger.info("user_registered", user_id=user.id)
        return user, code

    async def register_client(self, name: str) -> Tuple[Client, str]:
        """Register a client application; the plain secret is only ever returned here."""
        name = (name or "").strip()
        if not name or len(name) > MAX_CLIENT_NAME_LENGTH:
            raise ValidationError(
                f"client name must be 1-{MAX_CLIENT_NAME_LENGTH} characters",
                detail={"field": "name"},
            )
        secret = generate_client_secret()
        private_pem, public_pem = self._key_pair_factory()
        client = self.store.create_client(
            name, self.hasher.hash(secret), private_pem, public_pem
        )
        self.logger.info("client_registered", client_id=client.id)
        return client, secret

    # email verification
    async def _issue_verification(self, user: User) -> str:
        code = generate_code()
        await self.code_store.set(
            VERIFICATION_PREFIX + code, user.id, self._verification_ttl
        )
        await asyncio.to_thread(
            self.email_service.send_email_verification,
            user.email,
            code,
            self.settings.email_verification_exp_hours,
        )
        return code

    async def verify_email(self, code: str) -> bool:
        """Consume a verification code. Returns False if the user was already verified."""
        user_id = await self.code_store.get_and_delete(VERIFICATION_PREFIX + code) if code else None
        if not user_id:
            raise InvalidRequestError("verification code is invalid or expired")
        user = self.store.get_user(user_id)
        if user is None:
            raise InvalidRequestError("verification code is invalid or expired")
        if user.verified:
            return False
        self.store.mark_user_verified(user.id)
        self.logger.info("email_verified", user_id=user.id)
        return True

    async def resend_verification(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if user is None or user.verified:
            self.logger.info("verification_resend_skipped")
            return
        await self._issue_verification(user)

    # password reset
    async def forgot_password(self, email: str) -> None:
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if user is None:
            # Same outward behaviour whether or not the account exists
            self.logger.info("password_reset_unknown_account")
            return
        code = generate_code()
        await self.code_store.set(PASSWORD_RESET_PREFIX + normalized, code, self._reset_ttl)
        await asyncio.to_thread(
            self.email_service.send_password_reset,
            user.email,
            code,
            self.settings.password_reset_exp_hours,
        )
        self.logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        self._check_password(new_password)
        normalized = normalize_email(email)
        key = PASSWORD_RESET_PREFIX + normalized
        stored: Optional[str] = await self.code_store.get(key)
        if not stored or not code or not hmac.compare_digest(stored.encode(), code.encode()):
            self.logger.warning("password_reset_code_rejected")
            raise InvalidRequestError("reset code is invalid or expired")
        # Claim the code; a concurrent reset that already consumed it loses
        if await self.code_store.get_and_delete(key) != stored:
            raise InvalidRequestError("reset code is invalid or expired")
        user = self.store.get_user_by_email(normalized)
        if user is None:
            raise InvalidRequestError("reset code is invalid or expired")
        self.store.update_user_password(user.id, self.hasher.hash(new_password))
        self.logger.info("password_reset_completed", user_id=user.id)

    # profiles
    def client_profile(self, client: Client) -> dict:
        return {"name": client.name, "public_key": client.public_key}

    def user_profile(self, claims: VerifiedClaims) -> dict:
        user = self.store.get_user(claims.sub)
        if user is None:
            raise NotFoundError("user not found")
        return {
            "id": user.id,
            "name": user.full_name,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "verified": user.verified,
        }
