from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from authserver.config import Settings
from authserver.logging import get_logger
from authserver.service.credentials import SecretHasher
from authserver.service.errors import (
    InvalidClientError,
    InvalidCredentialsError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidTokenError,
)
from authserver.service.pkce import (
    PLAIN,
    S256,
    SUPPORTED_METHODS,
    is_valid_verifier,
    verify_code_challenge,
)
from authserver.service.revocation import EphemeralStore, RevocationRegistry
from authserver.service.tokens import (
    TokenIssuer,
    TokenValidator,
    VerifiedClaims,
    generate_code,
)
from authserver.storage.models import AuthorizationCode, Client, User

AUTH_CODE_PREFIX = "auth:code:"
TOKEN_TYPE = "Bearer"


class CredentialStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_password(self, user_id: str, password_hash: str) -> None: ...

    def mark_user_verified(self, user_id: str) -> None: ...

    def create_client(
        self, name: str, secret_hash: str, private_key: str, public_key: str
    ) -> Client: ...

    def get_client(self, client_id: str) -> Optional[Client]: ...

    def get_client_by_name(self, name: str) -> Optional[Client]: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = TOKEN_TYPE


@dataclass(frozen=True)
class AccessGrant:
    access_token: str
    expires_in: int
    token_type: str = TOKEN_TYPE


class AuthorizationCodeManager:
    """Runs the authorization-code + PKCE grant and the refresh/logout lifecycle.

    Every collaborator is passed in; nothing here reaches for process-wide
    state, so tests can wire a manager against in-memory stores and a fake
    clock.
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        code_store: EphemeralStore,
        hasher: SecretHasher,
        issuer: TokenIssuer,
        validator: TokenValidator,
        registry: RevocationRegistry,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store
        self.code_store = code_store
        self.hasher = hasher
        self.issuer = issuer
        self.validator = validator
        self.registry = registry
        self._clock = clock
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # authorization codes
    # ------------------------------------------------------------------
    async def issue_code(
        self,
        email: str,
        password: str,
        client_id: str,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = S256,
    ) -> str:
        """Authenticate the user and hand back a single-use authorization code."""
        method = code_challenge_method or S256
        if not code_challenge:
            if self.settings.require_pkce:
                raise InvalidRequestError("code_challenge is required")
            code_challenge = None
        else:
            if method not in SUPPORTED_METHODS:
                raise InvalidRequestError("unsupported code_challenge_method")
            if method == PLAIN and not self.settings.allow_plain_pkce:
                raise InvalidRequestError("plain code_challenge_method is not allowed")
            if not is_valid_verifier(code_challenge):
                raise InvalidRequestError("code_challenge is malformed")

        client = self.store.get_client(client_id)
        user = self.store.get_user_by_email(email)
        if user is None:
            self.hasher.burn(password)
            password_ok = False
        else:
            password_ok = self.hasher.verify(user.password_hash, password)
        if client is None or user is None or not password_ok:
            self.logger.warning(
                "login_failed",
                client_found=client is not None,
                user_found=user is not None,
            )
            raise InvalidCredentialsError()

        now = int(self._clock())
        ttl = self.settings.auth_code_ttl_seconds
        record = AuthorizationCode(
            code=generate_code(),
            client_id=client.id,
            user_id=user.id,
            expires_at=now + ttl,
            code_challenge=code_challenge,
            code_challenge_method=method,
        )
        await self.code_store.set(AUTH_CODE_PREFIX + record.code, record.to_json(), ttl)
        self.logger.info(
            "authorization_code_issued",
            client_id=client.id,
            user_id=user.id,
            pkce=code_challenge is not None,
        )
        return record.code

    async def exchange_code(
        self,
        code: str,
        client_id: str,
        client_secret: str,
        code_verifier: Optional[str] = None,
    ) -> TokenPair:
        """Trade an authorization code for an access/refresh token pair.

        The client is authenticated before the store is touched. Once the
        code has been popped it is gone, whatever the outcome of the
        remaining checks.
        """
        client = self.authenticate_client(client_id, client_secret)
        if not code:
            raise InvalidRequestError("code is required")

        raw = await self.code_store.get_and_delete(AUTH_CODE_PREFIX + code)
        if raw is None:
            self.logger.warning("authorization_code_unknown", client_id=client.id)
            raise InvalidGrantError("authorization code is invalid or already used")
        try:
            record = AuthorizationCode.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            self.logger.error("authorization_code_corrupt", error=str(exc))
            raise InvalidGrantError("authorization code is invalid or already used")

        if record.client_id != client.id:
            self.logger.warning(
                "authorization_code_client_mismatch",
                client_id=client.id,
                bound_client_id=record.client_id,
            )
            raise InvalidGrantError("authorization code was not issued to this client")
        if record.expires_at <= self._clock():
            raise InvalidGrantError("authorization code expired")

        if record.code_challenge:
            if not code_verifier:
                raise InvalidRequestError("code_verifier is required")
            if not verify_code_challenge(
                record.code_challenge, code_verifier, record.code_challenge_method
            ):
                self.logger.warning("pkce_verification_failed", client_id=client.id)
                raise InvalidGrantError("code_verifier does not match code_challenge")

        user = self.store.get_user(record.user_id)
        if user is None:
            raise InvalidGrantError("authorization code subject no longer exists")

        access_token = self.issuer.issue_access_token(
            client.private_key,
            user.id,
            client.id,
            self.settings.access_token_exp_minutes,
        )
        refresh_token = self.issuer.issue_refresh_token(
            self.settings.jwt_secret,
            user.id,
            client.id,
            self.settings.refresh_token_exp_days,
        )
        self.logger.info("authorization_code_exchanged", client_id=client.id, user_id=user.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    # ------------------------------------------------------------------
    # refresh tokens
    # ------------------------------------------------------------------
    async def refresh_access_token(self, refresh_token: str) -> AccessGrant:
        claims = self.validator.validate_refresh_token(
            refresh_token, self.settings.jwt_secret
        )
        if await self.registry.is_revoked(refresh_token):
            self.logger.warning("refresh_token_revoked_use", client_id=claims.aud)
            raise InvalidGrantError("refresh token has been revoked")
        client = self.store.get_client(claims.aud)
        if client is None:
            raise InvalidTokenError("token audience is not a registered client")
        access_token = self.issuer.issue_access_token(
            client.private_key,
            claims.sub,
            client.id,
            self.settings.access_token_exp_minutes,
        )
        return AccessGrant(
            access_token=access_token,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    async def logout(self, refresh_token: str) -> None:
        claims = self.validator.validate_refresh_token(
            refresh_token, self.settings.jwt_secret
        )
        await self.registry.revoke(refresh_token, claims.exp)
        self.logger.info("logout", client_id=claims.aud, user_id=claims.sub)

    # ------------------------------------------------------------------
    # caller authentication
    # ------------------------------------------------------------------
    def authenticate_client(self, client_id: str, client_secret: str) -> Client:
        client = self.store.get_client(client_id) if client_id else None
        if client is None:
            self.hasher.burn(client_secret or "")
            raise InvalidClientError()
        if not client_secret or not self.hasher.verify(client.secret_hash, client_secret):
            self.logger.warning("client_authentication_failed", client_id=client.id)
            raise InvalidClientError()
        return client

    def authenticate_access_token(self, token: str) -> VerifiedClaims:
        """Resolve and fully verify an access token.

        The audience is read unverified only to pick the client whose public
        key must verify the signature; nothing else from that parse is used.
        """
        if not token:
            raise InvalidTokenError("missing bearer token")
        unverified = self.validator.parse_unverified(token)
        if not unverified.aud:
            raise InvalidTokenError("token audience missing")
        client = self.store.get_client(unverified.aud)
        if client is None:
            raise InvalidTokenError("token audience is not a registered client")
        return self.validator.validate_access_token(
            token, client.public_key, audience=client.id
        )
