from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from authflow.api.schemas import (
    Envelope,
    LogoutAllResponse,
    LogoutRequest,
    RefreshRequest,
    ResendRequest,
    ResetPasswordRequest,
    SessionIdentityResponse,
    SessionTokenRequest,
    SessionTokenResponse,
    SigninRequest,
    SigninResponse,
    SignupRequest,
    TokenResponse,
    VerifyOtpRequest,
)
from authflow.service.errors import AuthenticationError
from authflow.service.rate_limit import RateLimitInfo
from authflow.service.runtime import get_runtime
from authflow.storage.models import AuthContext, SessionType

router = APIRouter(prefix="/v1")

_RESET_ACCEPTED = (
    "If an account exists for this identifier, a password reset code has been sent."
)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    request: Request,
    action: str,
    identifier: Optional[str] = None,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count the request against ``action``'s policy and apply headers."""
    runtime = get_runtime()
    info = await runtime.rate_limiter.hit(action, _client_ip(request), identifier)
    if response is not None:
        info.apply_headers(response)
    return info


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Missing bearer token.")
    return await get_runtime().auth.authenticate(token.strip())


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create an unverified account and send its verification code."""
    await _enforce_rate_limit(request, "signup", body.email, response=response)
    session_token = await get_runtime().auth.signup(
        body.email,
        body.password,
        username=body.username,
        phone_number=body.phone_number,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=SessionTokenResponse(session_token=session_token))


@router.post("/auth/signup/session", response_model=Envelope, tags=["auth"])
async def validate_signup_session(body: SessionTokenRequest, request: Request):
    await _enforce_rate_limit(request, "auth")
    identity = await get_runtime().auth.validate_session(
        body.session_token, SessionType.SIGNUP_VERIFY
    )
    return Envelope(status="ok", data=SessionIdentityResponse(**identity))


@router.post("/auth/signup/resend", response_model=Envelope, tags=["auth"])
async def resend_signup_code(body: ResendRequest, request: Request, response: Response):
    await _enforce_rate_limit(request, "otp", body.identifier, response=response)
    session_token = await get_runtime().auth.resend_verification(
        session_token=body.session_token, identifier=body.identifier
    )
    return Envelope(status="ok", data=SessionTokenResponse(session_token=session_token))


@router.post("/auth/signup/verify", response_model=Envelope, tags=["auth"])
async def verify_signup(body: VerifyOtpRequest, request: Request, response: Response):
    await _enforce_rate_limit(request, "otp", body.session_token, response=response)
    user = await get_runtime().auth.verify_signup(body.session_token, body.otp)
    return Envelope(status="ok", data={"user_id": user.id, "verified": True})


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest, request: Request, response: Response):
    """Password sign-in; returns an access/refresh token pair."""
    await _enforce_rate_limit(request, "signin", body.identifier, response=response)
    user, session_id, tokens = await get_runtime().auth.signin(body.identifier, body.password)
    return Envelope(
        status="ok",
        data=SigninResponse(
            user_id=user.id,
            session_id=session_id,
            email=user.email,
            username=user.username,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    await _enforce_rate_limit(request, "auth")
    access_token = await get_runtime().auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenResponse(access_token=access_token))


@router.post("/auth/rotate", response_model=Envelope, tags=["auth"])
async def rotate(body: RefreshRequest, request: Request):
    await _enforce_rate_limit(request, "auth")
    tokens = await get_runtime().auth.rotate(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
        ),
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ResendRequest, request: Request, response: Response):
    """Start or resume a password reset.

    The response is the same whether or not the identifier belongs to an
    account.
    """
    await _enforce_rate_limit(request, "password_reset", body.identifier, response=response)
    session_token = await get_runtime().auth.forgot_password(
        session_token=body.session_token, identifier=body.identifier
    )
    return Envelope(
        status="ok",
        data={"session_token": session_token, "message": _RESET_ACCEPTED},
    )


@router.post("/auth/forgot-password/session", response_model=Envelope, tags=["auth"])
async def validate_reset_session(body: SessionTokenRequest, request: Request):
    await _enforce_rate_limit(request, "auth")
    identity = await get_runtime().auth.validate_session(
        body.session_token, SessionType.RESET_PASSWORD
    )
    return Envelope(status="ok", data=SessionIdentityResponse(**identity))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    await _enforce_rate_limit(request, "otp", body.session_token, response=response)
    await get_runtime().auth.reset_password(body.session_token, body.otp, body.new_password)
    return Envelope(status="ok", data={"password_reset": True})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    """End the caller's current session, or another session they own."""
    await _enforce_rate_limit(request, "auth")
    target = (body.session_id if body else None) or principal.session_id
    await get_runtime().auth.logout(target, principal.user_id)
    return Envelope(status="ok", data={"session_id": target, "logged_out": True})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, principal: AuthContext = Depends(get_user)):
    await _enforce_rate_limit(request, "auth")
    revoked = await get_runtime().auth.logout_all(principal.user_id)
    return Envelope(status="ok", data=LogoutAllResponse(revoked=revoked))
