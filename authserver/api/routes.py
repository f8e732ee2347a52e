from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from authserver.api.schemas import (
    AccessTokenResponse,
    ClientProfileResponse,
    ClientRegisterRequest,
    ClientRegisterResponse,
    EmailBody,
    Envelope,
    LoginRequest,
    LoginResponse,
    PasswordResetConfirm,
    RefreshRequest,
    TokenRequest,
    TokenResponse,
    UserProfileResponse,
    UserRegisterRequest,
    UserResponse,
    VerificationResponse,
)
from authserver.service.errors import InvalidTokenError
from authserver.service.runtime import get_runtime

router = APIRouter(prefix="/v1")

_basic_auth = HTTPBasic(auto_error=False)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(
        status_code=status_code,
        detail=payload,
        headers={"WWW-Authenticate": "Basic"} if status_code == 401 else None,
    )


def get_client_credentials(
    credentials: Optional[HTTPBasicCredentials] = Depends(_basic_auth),
) -> HTTPBasicCredentials:
    """Client id/secret from HTTP Basic auth."""
    if credentials is None or not credentials.username:
        raise _http_error("unauthorized", "client authentication required", 401)
    return credentials


def get_bearer_token(authorization: Optional[str] = Header(None)) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidTokenError("missing bearer token")
    return token.strip()


# ----------------------------------------------------------------------
# registration
# ----------------------------------------------------------------------
@router.post("/user/register", response_model=Envelope, status_code=201, tags=["users"])
async def register_user(body: UserRegisterRequest):
    """Create a user account and email a verification code.

    Raises:
        400: If the password does not meet the strength rules
        409: If the email is already registered
    """
    runtime = get_runtime()
    user, _ = await runtime.accounts.register_user(
        body.first_name, body.last_name, body.email, body.password
    )
    return Envelope(
        status="ok",
        data=UserResponse(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            verified=user.verified,
        ),
    )


@router.post("/client/register", response_model=Envelope, status_code=201, tags=["clients"])
async def register_client(body: ClientRegisterRequest):
    """Register a client application.

    The plain client secret appears in this response only; it is stored hashed.
    """
    runtime = get_runtime()
    client, secret = await runtime.accounts.register_client(body.name)
    return Envelope(
        status="ok",
        data=ClientRegisterResponse(
            client_id=client.id,
            client_secret=secret,
            name=client.name,
            public_key=client.public_key,
        ),
    )


# ----------------------------------------------------------------------
# authorization code grant
# ----------------------------------------------------------------------
@router.post("/login", response_model=Envelope, tags=["oauth"])
async def login(body: LoginRequest):
    """Authenticate a user for a client and return a single-use authorization code."""
    runtime = get_runtime()
    code = await runtime.oauth.issue_code(
        body.email,
        body.password,
        body.client_id,
        body.code_challenge,
        body.code_challenge_method,
    )
    return Envelope(status="ok", data=LoginResponse(code=code))


@router.post("/oauth/token", response_model=Envelope, tags=["oauth"])
async def exchange_token(
    body: TokenRequest,
    credentials: HTTPBasicCredentials = Depends(get_client_credentials),
):
    """Exchange an authorization code (plus PKCE verifier) for tokens.

    Raises:
        400: invalid_request when the verifier is missing, invalid_grant when
            the code is unknown, consumed, expired, bound to another client,
            or the verifier does not match
        401: If client authentication fails
    """
    runtime = get_runtime()
    pair = await runtime.oauth.exchange_code(
        body.code, credentials.username, credentials.password, body.code_verifier
    )
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        ),
    )


@router.post("/oauth/refresh", response_model=Envelope, tags=["oauth"])
async def refresh_access_token(body: RefreshRequest):
    runtime = get_runtime()
    grant = await runtime.oauth.refresh_access_token(body.refresh_token)
    return Envelope(
        status="ok",
        data=AccessTokenResponse(
            access_token=grant.access_token,
            token_type=grant.token_type,
            expires_in=grant.expires_in,
        ),
    )


@router.post("/logout", status_code=204, tags=["oauth"])
async def logout(body: RefreshRequest) -> Response:
    runtime = get_runtime()
    await runtime.oauth.logout(body.refresh_token)
    return Response(status_code=204)


# ----------------------------------------------------------------------
# profiles
# ----------------------------------------------------------------------
@router.get("/client/me", response_model=Envelope, tags=["clients"])
async def client_me(credentials: HTTPBasicCredentials = Depends(get_client_credentials)):
    runtime = get_runtime()
    client = runtime.oauth.authenticate_client(credentials.username, credentials.password)
    return Envelope(
        status="ok",
        data=ClientProfileResponse(**runtime.accounts.client_profile(client)),
    )


@router.get("/user/me", response_model=Envelope, tags=["users"])
async def user_me(token: str = Depends(get_bearer_token)):
    """Return the profile of the user an access token was issued to."""
    runtime = get_runtime()
    claims = runtime.oauth.authenticate_access_token(token)
    return Envelope(
        status="ok",
        data=UserProfileResponse(**runtime.accounts.user_profile(claims)),
    )


# ----------------------------------------------------------------------
# email verification and password reset
# ----------------------------------------------------------------------
@router.post("/user/verify", response_model=Envelope, tags=["users"])
async def verify_email(code: str = Query(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    newly_verified = await runtime.accounts.verify_email(code)
    return Envelope(
        status="ok",
        data=VerificationResponse(verified=True, already_verified=not newly_verified),
    )


@router.post("/user/verify/resend", response_model=Envelope, status_code=202, tags=["users"])
async def resend_verification(body: EmailBody):
    runtime = get_runtime()
    await runtime.accounts.resend_verification(body.email)
    return Envelope(status="ok", data={"accepted": True})


@router.post("/user/password/forgot", response_model=Envelope, status_code=202, tags=["users"])
async def forgot_password(body: EmailBody):
    """Email a reset code if the account exists; the response never says whether it does."""
    runtime = get_runtime()
    await runtime.accounts.forgot_password(body.email)
    return Envelope(status="ok", data={"accepted": True})


@router.post("/user/password/reset", response_model=Envelope, tags=["users"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.accounts.reset_password(body.email, body.code, body.new_password)
    return Envelope(status="ok", data={"reset": True})
