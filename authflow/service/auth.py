from __future__ import annotations

import asyncio
import math
import uuid
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service import otp as otp_codes
from authflow.service import transitions
from authflow.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    GoneError,
    InvalidOtpError,
    InvalidStateError,
    NotFoundError,
    SessionExpiredError,
    ValidationError,
)
from authflow.service.notifications import EMAIL, SMS, Notifier
from authflow.service.passwords import PasswordHasher
from authflow.service.tokens import TokenIssuer, TokenType
from authflow.storage.errors import ConstraintViolation
from authflow.storage.identifier_index import IdentifierIndex
from authflow.storage.keys import FlowNamespace, normalize_identifier, user_field_for
from authflow.storage.models import (
    AuthContext,
    AuthProvider,
    AuthSession,
    SessionType,
    TokenPair,
    UserRecord,
    now_ms,
)
from authflow.storage.session_store import KeyValueCache, SessionStore

logger = get_logger(__name__)

_DAY_MS = 24 * 60 * 60 * 1000

_FLOW_LABELS = {
    SessionType.SIGNUP_VERIFY: "Verification",
    SessionType.RESET_PASSWORD: "Password reset",
    SessionType.SIGNIN: "Sign-in",
}


class UserDirectory(Protocol):
    def find_by_identifier(self, identifier: Optional[str]) -> Optional[UserRecord]: ...

    def create_user(self, email: str, **fields: Any) -> UserRecord: ...

    def update_user_by_id(
        self, user_id: Optional[str], patch: Dict[str, Any]
    ) -> Optional[UserRecord]: ...


class AuthService:
    """Session and OTP lifecycle for signup, password reset and sign-in.

    Every transition loads the current record, computes the next one with a
    pure function from ``transitions`` and commits all affected keys in one
    store batch. There are no locks; counters are last-writer-wins and
    terminal transitions re-check existence after the fact.
    """

    def __init__(
        self,
        cache: KeyValueCache,
        directory: UserDirectory,
        notifier: Notifier,
        settings: Settings,
        *,
        password_hasher: Optional[PasswordHasher] = None,
        token_issuer: Optional[TokenIssuer] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.cache = cache
        self.directory = directory
        self.notifier = notifier
        self.settings = settings
        self.passwords = password_hasher or PasswordHasher()
        self.tokens = token_issuer or TokenIssuer.from_settings(settings, clock=clock)
        self.otp = otp_codes.OtpEngine(settings.otp_secret, length=settings.otp_length)
        self.sessions = SessionStore(cache)
        self.signup_index = IdentifierIndex(cache, FlowNamespace.SIGNUP)
        self.forgot_index = IdentifierIndex(cache, FlowNamespace.FORGOT)
        self.logger = logger
        self._clock = clock
        self._pending_notifications: Set[asyncio.Task] = set()

    # -- helpers ---------------------------------------------------------------

    def _now(self) -> int:
        return int(self._clock())

    @property
    def _otp_ttl_ms(self) -> int:
        return self.settings.otp_expires_in_seconds * 1000

    def _index_for(self, session_type: SessionType) -> IdentifierIndex:
        if session_type == SessionType.RESET_PASSWORD:
            return self.forgot_index
        return self.signup_index

    @staticmethod
    def _identifiers(
        session: Optional[AuthSession], user: Optional[UserRecord], *extra: Optional[str]
    ) -> List[Optional[str]]:
        values: List[Optional[str]] = list(extra)
        for source in (session, user):
            if source is not None:
                values.extend([source.email, source.phone_number, source.username])
        return values

    @staticmethod
    def _decoy_identity(identifier: Optional[str]) -> Dict[str, Optional[str]]:
        """Identity for a reset session that has no account behind it."""
        normalized = normalize_identifier(identifier)
        field_name = user_field_for(normalized)
        return {field_name: normalized, "user_id": None}

    def _dispatch(self, notification: str, func: Callable[..., bool], *args: Any) -> None:
        """Run a notifier call on a worker thread without awaiting it."""

        async def _deliver() -> None:
            try:
                delivered = await asyncio.to_thread(func, *args)
            except Exception as exc:
                self.logger.error(
                    "notification_dispatch_failed",
                    notification=notification,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return
            if not delivered:
                self.logger.warning("notification_not_delivered", notification=notification)

        task = asyncio.get_running_loop().create_task(_deliver())
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def drain_notifications(self) -> None:
        """Wait for in-flight notification tasks (shutdown and tests)."""
        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    @staticmethod
    def _channel_for(record: Any) -> Optional[Tuple[str, str]]:
        if record.email:
            return EMAIL, record.email
        if record.phone_number:
            return SMS, record.phone_number
        return None

    def _send_otp(self, session: AuthSession, session_id: str, code: str) -> None:
        if session.user_id is None:
            # Decoy reset sessions never deliver a code
            return
        target = self._channel_for(session)
        if target is None:
            self.logger.warning("otp_no_destination", session_id=session_id)
            return
        channel, destination = target
        context = {
            "flow": "reset" if session.type == SessionType.RESET_PASSWORD else "signup",
            "session_id": session_id,
            "expires_in_minutes": math.ceil(self.settings.otp_expires_in_seconds / 60),
        }
        self._dispatch("otp", self.notifier.send_otp, channel, destination, code, context)

    def _send_notice(self, user: UserRecord, kind: str) -> None:
        target = self._channel_for(user)
        if target is not None:
            self._dispatch(kind, self.notifier.send_notice, target[0], target[1], kind)

    async def _load(self, session_id: Optional[str], expected: SessionType) -> AuthSession:
        label = _FLOW_LABELS[expected]
        session = await self.sessions.get(session_id)
        if session is None:
            raise GoneError(f"{label} session has expired. Please request a new code.")
        if session.type != expected:
            raise InvalidStateError(f"Invalid {label.lower()} session.")
        return session

    # -- signup / password reset -----------------------------------------------

    async def signup(
        self,
        email: str,
        password: str,
        *,
        username: Optional[str] = None,
        phone_number: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> str:
        """Create an unverified account and start its verification session."""
        email = normalize_identifier(email)
        if not email:
            raise ValidationError("An email address is required.")
        for candidate in (email, username, phone_number):
            if candidate and self.directory.find_by_identifier(candidate):
                raise ConflictError("An account already exists with the provided credentials.")

        try:
            user = self.directory.create_user(
                email,
                username=normalize_identifier(username),
                phone_number=normalize_identifier(phone_number),
                first_name=first_name,
                last_name=last_name,
                password_hash=self.passwords.hash(password),
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "An account already exists with the provided credentials.",
                detail=exc.detail,
            ) from exc

        now = self._now()
        code = self.otp.generate()
        session = transitions.new_otp_session(
            SessionType.SIGNUP_VERIFY,
            transitions.identity_from_user(user),
            otp_hash=self.otp.hash(code),
            now=now,
            otp_ttl_ms=self._otp_ttl_ms,
        )
        session_id = str(uuid.uuid4())
        ttl = self.settings.otp_session_ttl_seconds
        batch = self.cache.batch()
        self.signup_index.stage_link(batch, self._identifiers(session, None), session_id, ttl)
        self.sessions.stage_create(batch, session_id, session, ttl)
        await batch.execute()

        self.logger.info("signup_session_created", user_id=user.id, session_id=session_id)
        self._send_otp(session, session_id, code)
        return session_id

    async def validate_session(
        self, session_token: str, flow: SessionType
    ) -> Dict[str, str]:
        """Check an OTP session is usable and return one identifier to display.

        Password reset sessions return an empty identity.
        """
        session = await self._load(session_token, flow)
        if transitions.otp_expired(session, self._now()):
            raise GoneError(
                f"{_FLOW_LABELS[flow]} code has expired. Please request a new one."
            )
        if flow == SessionType.RESET_PASSWORD:
            # Reset sessions may stand in for unknown accounts; show nothing
            return {}
        return session.display_identity()

    async def resend_verification(
        self, session_token: Optional[str] = None, identifier: Optional[str] = None
    ) -> str:
        return await self._reissue_otp(SessionType.SIGNUP_VERIFY, session_token, identifier)

    async def forgot_password(
        self, session_token: Optional[str] = None, identifier: Optional[str] = None
    ) -> str:
        return await self._reissue_otp(SessionType.RESET_PASSWORD, session_token, identifier)

    async def _resolve_otp_session(
        self,
        flow: SessionType,
        session_token: Optional[str],
        identifier: Optional[str],
    ) -> Tuple[Optional[str], Optional[AuthSession]]:
        # A supplied token always wins and must resolve
        if session_token:
            return session_token, await self._load(session_token, flow)
        if not identifier:
            return None, None
        session_id = await self._index_for(flow).resolve(identifier)
        if not session_id:
            return None, None
        session = await self.sessions.get(session_id)
        if session is None:
            return None, None
        if session.type != flow:
            raise InvalidStateError(f"Invalid {_FLOW_LABELS[flow].lower()} session.")
        return session_id, session

    def _cold_start_user(self, flow: SessionType, identifier: Optional[str]) -> Optional[UserRecord]:
        if not normalize_identifier(identifier):
            raise ValidationError("An email, username, or phone number is required.")
        user = self.directory.find_by_identifier(identifier)
        if flow == SessionType.RESET_PASSWORD:
            # Unknown and inactive accounts get the same response as real ones
            if user is None or not user.is_active:
                return None
            return user
        if user is None:
            raise NotFoundError("No account found with the provided identifier.")
        if not user.is_active:
            raise ForbiddenError("Your account is not active. Please contact support.")
        if user.email_verified:
            raise ConflictError("This account is already verified.")
        return user

    async def _reissue_otp(
        self,
        flow: SessionType,
        session_token: Optional[str],
        identifier: Optional[str],
    ) -> str:
        old_id, session = await self._resolve_otp_session(flow, session_token, identifier)
        now = self._now()
        code = self.otp.generate()
        otp_hash = self.otp.hash(code)
        user: Optional[UserRecord] = None

        if session is not None and session.user_id is None and not session_token:
            # A decoy gives way once its identifier belongs to an active account
            user = self._cold_start_user(flow, identifier)

        if user is None and session is not None:
            updated = transitions.apply_resend(
                session,
                otp_hash=otp_hash,
                now=now,
                otp_ttl_ms=self._otp_ttl_ms,
                max_resends=self.settings.otp_max_resends,
            )
        else:
            if user is None:
                user = self._cold_start_user(flow, identifier)
            if user is None:
                self.logger.info("password_reset_requested_unknown_account")
                identity = self._decoy_identity(identifier)
            else:
                identity = transitions.identity_from_user(user)
            updated = transitions.new_otp_session(
                flow,
                identity,
                otp_hash=otp_hash,
                now=now,
                otp_ttl_ms=self._otp_ttl_ms,
                resend_count=1,
            )

        new_id = str(uuid.uuid4())
        ttl = self.settings.otp_session_ttl_seconds
        # The caller's identifier is only trusted when it led to this session
        linked = self._identifiers(session, user, None if session_token else identifier)
        batch = self.cache.batch()
        if old_id:
            self.sessions.stage_delete(batch, old_id)
        self._index_for(flow).stage_link(batch, linked, new_id, ttl)
        self.sessions.stage_create(batch, new_id, updated, ttl)
        await batch.execute()

        self.logger.info(
            "otp_session_reissued",
            flow=flow.value,
            session_id=new_id,
            previous_session_id=old_id,
            resend_count=updated.otp_resend_count,
        )
        self._send_otp(updated, new_id, code)
        return new_id

    async def _consume_otp(
        self, session_token: str, otp: Any, flow: SessionType
    ) -> AuthSession:
        session = await self._load(session_token, flow)
        now = self._now()
        if self.settings.enforce_otp_expiry_on_verify:
            transitions.ensure_otp_window(session, now, label=_FLOW_LABELS[flow])
        if self.settings.enforce_otp_attempts_on_verify:
            attempted = transitions.register_otp_attempt(
                session, max_attempts=self.settings.otp_max_attempts
            )
            ttl_ms = await self.sessions.remaining_ttl_ms(session_token)
            if ttl_ms == -2:
                raise GoneError(f"{_FLOW_LABELS[flow]} session has expired. Please request a new code.")
            ttl = (
                math.ceil(ttl_ms / 1000)
                if ttl_ms > 0
                else self.settings.otp_session_ttl_seconds
            )
            await self.sessions.touch(session_token, attempted, ttl)
            session = attempted
        if not self.otp.verify(otp, session.otp_hash):
            self.logger.info(
                "otp_verification_failed",
                flow=flow.value,
                session_id=session_token,
                attempts=session.otp_attempts,
            )
            if flow == SessionType.RESET_PASSWORD:
                raise InvalidOtpError("Invalid password reset code.")
            raise InvalidOtpError("Invalid verification code.")
        return session

    async def _finish_otp_flow(
        self,
        flow: SessionType,
        session_token: str,
        session: AuthSession,
        user: UserRecord,
    ) -> None:
        batch = self.cache.batch()
        self._index_for(flow).stage_unlink(batch, self._identifiers(session, user))
        self.sessions.stage_delete(batch, session_token)
        await batch.execute()

    async def verify_signup(self, session_token: str, otp: Any) -> UserRecord:
        session = await self._consume_otp(session_token, otp, SessionType.SIGNUP_VERIFY)
        user = self.directory.update_user_by_id(session.user_id, {"email_verified": True})
        if user is None:
            raise GoneError(
                "Verification session is no longer valid. Please request a new code."
            )
        await self._finish_otp_flow(SessionType.SIGNUP_VERIFY, session_token, session, user)
        self.logger.info("signup_verified", user_id=user.id)
        self._send_notice(user, "account_verified")
        return user

    async def reset_password(
        self, session_token: str, otp: Any, new_password: str
    ) -> UserRecord:
        session = await self._consume_otp(session_token, otp, SessionType.RESET_PASSWORD)
        user = self.directory.update_user_by_id(
            session.user_id, {"password_hash": self.passwords.hash(new_password)}
        )
        if user is None:
            raise GoneError(
                "Password reset session is no longer valid. Please request a new code."
            )
        await self._finish_otp_flow(SessionType.RESET_PASSWORD, session_token, session, user)
        revoked = 0
        if self.settings.revoke_sessions_on_password_reset:
            revoked = await self.logout_all(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        self._send_notice(user, "password_changed")
        return user

    # -- sign-in sessions --------------------------------------------------------

    async def signin(
        self, identifier: str, password: str
    ) -> Tuple[UserRecord, str, TokenPair]:
        user = self.directory.find_by_identifier(identifier)
        if user is None:
            raise AuthenticationError("Invalid credentials.")
        if user.provider != AuthProvider.LOCAL:
            raise ValidationError(
                "This account uses social login. Please sign in with the appropriate provider."
            )
        if not user.email_verified:
            raise ForbiddenError("Please verify your email address before signing in.")
        if not user.is_active:
            raise ForbiddenError("Your account is not active. Please contact support.")
        if not self.passwords.verify(user.password_hash, password):
            raise AuthenticationError("Invalid credentials.")

        session_id = str(uuid.uuid4())
        session = transitions.new_signin_session(user, now=self._now()).evolve(verified=True)
        ttl = self.settings.signin_session_ttl_seconds
        batch = self.cache.batch()
        replaced: Set[str] = set()
        if not self.settings.enable_multi_device_login:
            replaced = await self.sessions.list_user_sessions(user.id)
            self.sessions.stage_delete(batch, *replaced)
            self.sessions.stage_untrack(batch, user.id, *replaced)
        self.sessions.stage_create(batch, session_id, session, ttl)
        self.sessions.stage_track(batch, user.id, session_id, ttl)
        await batch.execute()

        self.logger.info(
            "signin_session_created",
            user_id=user.id,
            session_id=session_id,
            replaced_sessions=len(replaced),
        )
        return user, session_id, self.tokens.issue_pair(user.id, session_id)

    async def _load_signin(self, payload: Dict[str, Any]) -> AuthSession:
        session_id = payload["sid"]
        session = await self.sessions.get(session_id)
        if session is None:
            raise GoneError("Session has expired. Please sign in again.")
        if session.type != SessionType.SIGNIN:
            raise InvalidStateError("Invalid sign-in session.")
        if session.user_id and session.user_id != payload["sub"]:
            raise AuthenticationError("Token does not match its session.")
        if self.settings.enable_inactivity_logout and transitions.is_inactive(
            session,
            now=self._now(),
            max_idle_ms=self.settings.inactivity_logout_days * _DAY_MS,
        ):
            batch = self.cache.batch()
            self.sessions.stage_delete(batch, session_id)
            self.sessions.stage_untrack(batch, payload["sub"], session_id)
            await batch.execute()
            self.logger.info("session_inactivity_logout", session_id=session_id)
            raise SessionExpiredError("Session expired due to inactivity. Please sign in again.")
        return session

    async def refresh(self, refresh_token: str) -> str:
        """Extend the sign-in session and return a new access token."""
        payload = self.tokens.verify(refresh_token, TokenType.REFRESH)
        session = await self._load_signin(payload)
        ttl = self.settings.signin_session_ttl_seconds
        batch = self.cache.batch()
        self.sessions.stage_create(
            batch, payload["sid"], transitions.touch_activity(session, now=self._now()), ttl
        )
        # The user's session set must live at least as long as the session
        self.sessions.stage_track(batch, session.user_id or payload["sub"], payload["sid"], ttl)
        await batch.execute()
        return self.tokens.issue(
            {"sub": payload["sub"], "sid": payload["sid"], "type": TokenType.ACCESS.value}
        )

    async def rotate(self, refresh_token: str) -> TokenPair:
        """Move the sign-in session to a new id and issue a fresh token pair."""
        payload = self.tokens.verify(refresh_token, TokenType.REFRESH)
        session = await self._load_signin(payload)
        old_id = payload["sid"]
        user_id = session.user_id or payload["sub"]
        new_id = str(uuid.uuid4())
        ttl = self.settings.signin_session_ttl_seconds

        batch = self.cache.batch()
        self.sessions.stage_create(
            batch, new_id, transitions.rotate_session(session, now=self._now()), ttl
        )
        self.sessions.stage_track(batch, user_id, new_id, ttl)
        self.sessions.stage_delete(batch, old_id)
        self.sessions.stage_untrack(batch, user_id, old_id)
        await batch.execute()

        self.logger.info("session_rotated", user_id=user_id, session_id=new_id, previous_session_id=old_id)
        return self.tokens.issue_pair(payload["sub"], new_id)

    async def authenticate(self, access_token: str) -> AuthContext:
        payload = self.tokens.verify(access_token, TokenType.ACCESS)
        session = await self.sessions.get(payload["sid"])
        if session is None or session.type != SessionType.SIGNIN:
            raise GoneError("Session has expired. Please sign in again.")
        return AuthContext(user_id=payload["sub"], session_id=payload["sid"])

    async def logout(self, session_id: str, user_id: str) -> None:
        session = await self.sessions.get(session_id)
        if session is None:
            raise NotFoundError("Session not found or already expired.")
        if session.user_id != user_id:
            raise ForbiddenError("Session does not belong to this user.")
        batch = self.cache.batch()
        self.sessions.stage_delete(batch, session_id)
        self.sessions.stage_untrack(batch, user_id, session_id)
        await batch.execute()
        self.logger.info("session_logged_out", user_id=user_id, session_id=session_id)

    async def logout_all(self, user_id: str) -> int:
        """Revoke every sign-in session of ``user_id``; returns how many ids were tracked."""
        session_ids = await self.sessions.list_user_sessions(user_id)
        if not session_ids:
            return 0
        batch = self.cache.batch()
        self.sessions.stage_delete(batch, *session_ids)
        self.sessions.stage_drop_user_set(batch, user_id)
        await batch.execute()
        self.logger.info("sessions_logged_out_all", user_id=user_id, count=len(session_ids))
        return len(session_ids)
