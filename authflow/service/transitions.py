"""Pure session state transitions.

Each function takes the current record (or the identity to start from) and
returns the next record. Nothing here reads the clock or touches the store;
``AuthService`` loads state, calls one of these, and commits the result in a
single batch.
"""

from __future__ import annotations

import math
from typing import Dict, Optional

from authflow.service.errors import GoneError, RateLimitedError
from authflow.storage.models import AuthSession, SessionType, UserRecord

OTP_SESSION_TYPES = (SessionType.SIGNUP_VERIFY, SessionType.RESET_PASSWORD)


def format_remaining_time(remaining_ms: int) -> str:
    minutes = math.ceil(max(remaining_ms, 0) / 60000)
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes > 1 else ''}"
    hours = math.ceil(minutes / 60)
    return f"{hours} hour{'s' if hours > 1 else ''}"


def identity_from_user(user: UserRecord) -> Dict[str, Optional[str]]:
    return {
        "email": user.email,
        "username": user.username,
        "phone_number": user.phone_number,
        "user_id": user.id,
    }


def new_otp_session(
    session_type: SessionType,
    identity: Dict[str, Optional[str]],
    *,
    otp_hash: str,
    now: int,
    otp_ttl_ms: int,
    resend_count: int = 0,
    otp_attempts: int = 0,
) -> AuthSession:
    if session_type not in OTP_SESSION_TYPES:
        raise ValueError(f"{session_type.value} sessions do not carry an OTP")
    return AuthSession(
        type=session_type,
        otp_hash=otp_hash,
        otp_expires_at=now + otp_ttl_ms,
        otp_attempts=otp_attempts,
        otp_resend_count=resend_count,
        created_at=now,
        **identity,
    )


def apply_resend(
    session: AuthSession,
    *,
    otp_hash: str,
    now: int,
    otp_ttl_ms: int,
    max_resends: int,
) -> AuthSession:
    """Successor record for a resend of ``session``.

    The resend counter goes up by one and attempts start over with the new
    code. Past ``max_resends`` the call is refused while the creation window
    ``created_at + otp_ttl_ms`` is still open; once it has elapsed the
    counter starts over at 1.
    """
    resend_count = session.otp_resend_count + 1
    remaining_ms = max(session.created_at + otp_ttl_ms - now, 0)
    if resend_count > max_resends:
        if remaining_ms > 0:
            hint = format_remaining_time(remaining_ms)
            raise RateLimitedError(
                f"OTP resend limit reached. Try again after {hint}.",
                retry_after=math.ceil(remaining_ms / 1000),
                detail={"retry_after_hint": hint},
            )
        resend_count = 1
    return AuthSession(
        type=session.type,
        email=session.email,
        username=session.username,
        phone_number=session.phone_number,
        user_id=session.user_id,
        otp_hash=otp_hash,
        otp_expires_at=now + otp_ttl_ms,
        otp_attempts=0,
        otp_resend_count=resend_count,
        created_at=now,
    )


def otp_expired(session: AuthSession, now: int) -> bool:
    return not session.otp_expires_at or now > session.otp_expires_at


def ensure_otp_window(session: AuthSession, now: int, *, label: str = "Verification") -> None:
    if otp_expired(session, now):
        raise GoneError(f"{label} code has expired. Please request a new code.")


def register_otp_attempt(session: AuthSession, *, max_attempts: int) -> AuthSession:
    """Count one more verification attempt, refusing once the budget is spent."""
    if session.otp_attempts >= max_attempts:
        raise RateLimitedError(
            "Too many incorrect verification attempts. Please request a new code."
        )
    return session.evolve(otp_attempts=session.otp_attempts + 1)


def new_signin_session(user: UserRecord, *, now: int) -> AuthSession:
    return AuthSession(
        type=SessionType.SIGNIN,
        created_at=now,
        last_activity_at=now,
        **identity_from_user(user),
    )


def is_inactive(session: AuthSession, *, now: int, max_idle_ms: int) -> bool:
    last = session.last_activity_at or session.created_at
    return now - last > max_idle_ms


def touch_activity(session: AuthSession, *, now: int) -> AuthSession:
    return session.evolve(last_activity_at=now)


def rotate_session(session: AuthSession, *, now: int) -> AuthSession:
    """Same logical sign-in under a new id, with refreshed timestamps."""
    return session.evolve(created_at=now, last_activity_at=now)
