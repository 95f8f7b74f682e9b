from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from ridepass.api.schemas import (
    AuthResponse,
    CodeIssuedResponse,
    CodeRequest,
    Envelope,
    IdentityResponse,
    LoginRequest,
    MessageResponse,
    PasswordResetCodeCheck,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    RegisterResponse,
    TokenRefreshRequest,
    TokenResponse,
    VerifyCodeRequest,
)
from ridepass.service.errors import TokenInvalid
from ridepass.service.runtime import get_runtime
from ridepass.service.tokens import TokenPair
from ridepass.service.verification import AuthContext

router = APIRouter(prefix="/v1")

_RESET_REQUESTED_MESSAGE = (
    "If an account exists for this identifier, a reset code has been sent."
)


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        refresh_expires_in=tokens.refresh_expires_in,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve ``Authorization: Bearer <access token>`` to an active identity."""
    if not authorization:
        raise TokenInvalid("missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise TokenInvalid("missing bearer token")
    return get_runtime().verification.authenticate(token.strip())


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a pending identity and send its registration code.

    Raises:
        400: already registered, malformed identifier or role not self-service
        429: too many code requests for this identifier
    """
    runtime = get_runtime()
    result = await runtime.verification.register(
        body.identifier,
        body.password,
        role=body.role,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            identity=IdentityResponse.from_identity(result.identity),
            code=CodeIssuedResponse(
                purpose=result.code.purpose, expires_in=result.code.expires_in
            ),
        ),
    )


async def _request_code(body: CodeRequest) -> Envelope:
    runtime = get_runtime()
    issued = await runtime.verification.request_code(
        body.identifier, body.purpose, body.role
    )
    return Envelope(
        status="ok",
        data=CodeIssuedResponse(purpose=issued.purpose, expires_in=issued.expires_in),
    )


@router.post("/auth/request-code", response_model=Envelope, tags=["auth"])
async def request_code(body: CodeRequest):
    """Issue a registration or login code for an existing identity."""
    return await _request_code(body)


@router.post("/auth/resend-code", response_model=Envelope, tags=["auth"])
async def resend_code(body: CodeRequest):
    """Replace the live code with a new one; the previous code stops working."""
    return await _request_code(body)


@router.post("/auth/verify-code", response_model=Envelope, tags=["auth"])
async def verify_code(body: VerifyCodeRequest):
    """Consume a code, activate a pending identity and return session tokens.

    Raises:
        400: code expired or invalid
        403: account suspended or inactive
        429: too many wrong codes
    """
    runtime = get_runtime()
    result = await runtime.verification.verify_code(
        body.identifier, body.purpose, body.code
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            identity=IdentityResponse.from_identity(result.identity),
            tokens=_token_response(result.tokens),
            activated=result.activated,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with identifier and password.

    Raises:
        401: unknown identifier or wrong password
        403: not verified yet, suspended or inactive
    """
    runtime = get_runtime()
    result = await runtime.verification.login(body.identifier, body.password)
    return Envelope(
        status="ok",
        data=AuthResponse(
            identity=IdentityResponse.from_identity(result.identity),
            tokens=_token_response(result.tokens),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.verification.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: TokenRefreshRequest):
    runtime = get_runtime()
    await runtime.verification.logout(body.refresh_token)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_principal)):
    """Invalidate every token issued to the caller, including this one."""
    runtime = get_runtime()
    runtime.verification.revoke_all_sessions(principal.identity.id)
    return Envelope(status="ok", data=MessageResponse(message="all sessions revoked"))


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    """Always answers the same way, whether or not the account exists."""
    runtime = get_runtime()
    await runtime.verification.request_password_reset(body.identifier)
    return Envelope(status="ok", data=MessageResponse(message=_RESET_REQUESTED_MESSAGE))


@router.post("/auth/password/verify-code", response_model=Envelope, tags=["auth"])
async def check_reset_code(body: PasswordResetCodeCheck):
    """Check a reset code without consuming it."""
    runtime = get_runtime()
    valid = await runtime.verification.peek_reset_code(body.identifier, body.code)
    return Envelope(status="ok", data={"valid": valid})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.verification.confirm_password_reset(
        body.identifier, body.code, body.new_password
    )
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    return Envelope(
        status="ok", data=IdentityResponse.from_identity(principal.identity)
    )
