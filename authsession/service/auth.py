from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

from authsession.config import Settings
from authsession.logging import get_logger
from authsession.service.anomaly import AnomalyDetector
from authsession.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    RateLimitedError,
    ServerError,
    SessionNotFoundError,
    TokenBlacklistedError,
    TokenExpiredError,
    UnauthorizedError,
    ValidationError,
)
from authsession.service.revocation import RevocationRegistry
from authsession.service.scheduler import Scheduler
from authsession.service.sessions import SessionRegistry
from authsession.service.throttle import ThrottleGuard
from authsession.service.tokens import ACCESS, REFRESH, TokenCodec, expires_at, issued_at
from authsession.storage.errors import ConstraintViolation
from authsession.storage.models import (
    Clock,
    DeviceInfo,
    Principal,
    SecurityAlert,
    Session,
    SessionSummary,
    UserRecord,
    utcnow,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class CredentialStore(Protocol):
    async def find_by_email(self, email: str) -> Optional[UserRecord]: ...

    async def find_by_id(self, user_id: str) -> Optional[UserRecord]: ...

    async def verify_password(self, candidate: str, password_hash: str) -> bool: ...


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str
    user_id: str
    token_type: str = "bearer"
    new_device: bool = False
    alert: Optional[SecurityAlert] = None


@dataclass
class Ack:
    success: bool = True
    message: str = "ok"


@dataclass
class SessionsView:
    sessions: List[SessionSummary] = field(default_factory=list)
    stats: dict = field(default_factory=dict)


class AuthService:
    """Login, refresh, logout and request authentication over the session subsystem."""

    def __init__(
        self,
        credentials: CredentialStore,
        settings: Settings,
        *,
        codec: TokenCodec,
        revocation: RevocationRegistry,
        sessions: SessionRegistry,
        login_throttle: ThrottleGuard,
        register_throttle: ThrottleGuard,
        anomaly: AnomalyDetector,
        clock: Clock = utcnow,
    ) -> None:
        self.credentials = credentials
        self.settings = settings
        self.codec = codec
        self.revocation = revocation
        self.sessions = sessions
        self.login_throttle = login_throttle
        self.register_throttle = register_throttle
        self.anomaly = anomaly
        self._clock = clock
        self.logger = logger

    @staticmethod
    def _throttle_subject(ip: Optional[str], email: str) -> str:
        return ip or email

    @staticmethod
    def extract_bearer(raw: Optional[str]) -> Optional[str]:
        if not raw:
            return None
        scheme, _, token = raw.strip().partition(" ")
        if not token:
            # Bare token, or a scheme with nothing after it
            return None if scheme.lower() == "bearer" else (scheme or None)
        if scheme.lower() != "bearer":
            return None
        return token.strip() or None

    async def _verify_credentials(self, email: str, password: str) -> Optional[UserRecord]:
        """Return the user on a password match, None on mismatch.

        Store failures surface as InvalidCredentialsError so callers never see
        raw backend exceptions.
        """
        try:
            user = await self.credentials.find_by_email(email)
            if user is None:
                return None
            if not await self.credentials.verify_password(password, user.password_hash):
                return None
            return user
        except Exception as exc:
            self.logger.error(
                "credential_store_failed",
                operation="verify",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise InvalidCredentialsError() from exc

    async def _find_user(self, user_id: str) -> Optional[UserRecord]:
        try:
            return await self.credentials.find_by_id(user_id)
        except Exception as exc:
            self.logger.error(
                "credential_store_failed",
                operation="find_by_id",
                user_id=user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise UnauthorizedError(reason="credential_store") from exc

    def _revocable_claims(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        """Verified claims of a token that still needs a blacklist entry.

        Forged and malformed tokens get no entry, so callers cannot fill the
        blacklist with rows that never expire. Expired tokens need none.
        """
        try:
            return self.codec.verify(token, expected_type=token_type)
        except TokenExpiredError:
            return None
        except UnauthorizedError as exc:
            self.logger.info("revoke_skipped_unverified", token_type=token_type, reason=exc.reason)
            return None

    async def _blacklist_token(self, token: str, claims: dict[str, Any], reason: str) -> None:
        user_id = claims.get("sub")
        expiry = expires_at(claims)
        if expiry is None:
            return
        try:
            await self.revocation.blacklist(token, user_id, expiry, reason=reason)
        except Exception as exc:
            # Logout still succeeds for the caller
            self.logger.warning(
                "token_blacklist_failed", user_id=user_id, reason=reason, error=str(exc)
            )

    async def login(
        self,
        email: str,
        password: str,
        device_info: DeviceInfo,
        *,
        remember_me: bool = False,
    ) -> AuthResult:
        email_key = (email or "").strip().lower()
        subject = self._throttle_subject(device_info.ip, email_key)
        decision = await self.login_throttle.check(subject)
        if not decision.allowed:
            self.logger.warning(
                "login_throttled", ip=device_info.ip, retry_after=decision.retry_after_seconds
            )
            raise RateLimitedError(decision.retry_after_seconds)

        user = await self._verify_credentials(email_key, password)
        if user is None:
            await self.login_throttle.record(subject, success=False)
            self.anomaly.record_failed_login(email_key, device_info.ip, device_info.user_agent)
            self.anomaly.check_suspicious_activity(email_key, device_info.ip)
            self.logger.info("login_failed", email=email_key, ip=device_info.ip)
            raise InvalidCredentialsError()

        await self.login_throttle.record(subject, success=True)
        refresh_token = self.codec.issue_refresh(user)
        session = await self.sessions.create(
            user.id,
            device_info,
            refresh_token,
            ttl=self.settings.session_ttl(remember_me),
        )
        access_token = self.codec.issue_access(user, session_id=session.session_id)

        new_device = False
        alert = None
        try:
            result = await self.anomaly.check_new_device(
                user.id, session.device_info, exclude_session_id=session.session_id
            )
            new_device, alert = result.is_new_device, result.alert
        except Exception as exc:
            self.logger.warning("new_device_check_failed", user_id=user.id, error=str(exc))

        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session.session_id,
            remember_me=remember_me,
            new_device=new_device,
        )
        return AuthResult(
            access_token=access_token,
            refresh_token=refresh_token,
            # Reports the signed lifetime of the access token itself.
            expires_in=int(self.codec.access_ttl.total_seconds()),
            session_id=session.session_id,
            user_id=user.id,
            new_device=new_device,
            alert=alert,
        )

    async def refresh(
        self, refresh_token: str, old_access_token: Optional[str] = None
    ) -> AuthResult:
        """Trade a refresh token for a new pair, rotating the bound session in place.

        The consumed refresh token is blacklisted, so each one works once.
        """
        if not refresh_token:
            raise UnauthorizedError(reason="missing_token")
        if await self.revocation.is_blacklisted(refresh_token):
            self.logger.info("refresh_token_blacklisted")
            raise TokenBlacklistedError()
        claims = self.codec.verify(refresh_token, expected_type=REFRESH)
        user_id = claims["sub"]
        if await self.revocation.is_revoked_for_user(user_id, issued_at(claims)):
            raise TokenBlacklistedError(reason="user_revoked")

        session = await self.sessions.find_by_refresh_token(refresh_token)
        if session is None or session.user_id != user_id:
            self.logger.info("refresh_session_not_found", user_id=user_id)
            raise UnauthorizedError(reason="session_not_found")
        user = await self._find_user(user_id)
        if user is None:
            raise UnauthorizedError(reason="unknown_user")

        if old_access_token:
            old_claims = self._revocable_claims(old_access_token, ACCESS) or {}
            if old_claims.get("sub") == user.id:
                await self._blacklist_token(old_access_token, old_claims, "logout")
            elif old_claims:
                self.logger.warning("refresh_foreign_access_token_ignored", user_id=user.id)
        await self._blacklist_token(refresh_token, claims, "logout")

        new_refresh = self.codec.issue_refresh(user)
        new_access = self.codec.issue_access(user, session_id=session.session_id)
        await self.sessions.rotate_refresh_token(session.session_id, new_refresh)
        self.logger.info("tokens_refreshed", user_id=user.id, session_id=session.session_id)
        return AuthResult(
            access_token=new_access,
            refresh_token=new_refresh,
            expires_in=int(self.codec.access_ttl.total_seconds()),
            session_id=session.session_id,
            user_id=user.id,
        )

    async def logout(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Ack:
        """Revoke the presented tokens. Succeeds even when nothing is left to revoke."""
        token = self.extract_bearer(access_token)
        claims = self._revocable_claims(token, ACCESS) if token else None
        owner = user_id or (claims or {}).get("sub")
        if claims is not None:
            await self._blacklist_token(token, claims, "logout")

        if refresh_token:
            try:
                session = await self._owned_session(refresh_token, owner)
            except SessionNotFoundError as exc:
                self.logger.info(
                    "logout_session_not_found", user_id=owner, reason=exc.detail.get("reason")
                )
            else:
                await self.sessions.invalidate(session.session_id, reason="logout")
                owner = owner or session.user_id
                refresh_claims = self._revocable_claims(refresh_token, REFRESH)
                if refresh_claims is not None:
                    await self._blacklist_token(refresh_token, refresh_claims, "logout")
        self.logger.info("logout_completed", user_id=owner)
        return Ack(message="logged out")

    async def _owned_session(self, refresh_token: str, owner: Optional[str]) -> Session:
        session = await self.sessions.find_by_refresh_token(refresh_token)
        if session is None:
            raise SessionNotFoundError(detail={"reason": "missing"})
        if owner and session.user_id != owner:
            self.logger.warning(
                "logout_session_owner_mismatch", user_id=owner, session_id=session.session_id
            )
            raise SessionNotFoundError(detail={"reason": "owner_mismatch"})
        return session

    async def _revoke_everything(self, user_id: str, reason: str) -> int:
        ended = await self.sessions.invalidate_all(user_id, reason=reason)
        blacklist_reason = "security" if reason == "security" else "logout"
        for session in ended:
            claims = self._revocable_claims(session.refresh_token, REFRESH)
            if claims is not None:
                await self._blacklist_token(session.refresh_token, claims, blacklist_reason)
        try:
            await self.revocation.blacklist_all(user_id, reason=blacklist_reason)
        except Exception as exc:
            self.logger.warning("blacklist_all_failed", user_id=user_id, error=str(exc))
        return len(ended)

    async def logout_all(self, user_id: str) -> Ack:
        count = await self._revoke_everything(user_id, "logout_all")
        self.logger.info("logout_all_completed", user_id=user_id, sessions=count)
        return Ack(message=f"logged out of {count} sessions")

    async def security_logout(self, user_id: str) -> Ack:
        """Revoke every session and token of a user after a security event."""
        count = await self._revoke_everything(user_id, "security")
        self.logger.warning("security_logout", user_id=user_id, sessions=count)
        return Ack(message=f"revoked {count} sessions")

    async def authenticate(self, raw_token: Optional[str]) -> Principal:
        token = self.extract_bearer(raw_token)
        if not token:
            raise UnauthorizedError("authentication required", reason="missing_token")
        # Cheap lookup before signature work
        if await self.revocation.is_blacklisted(token):
            raise TokenBlacklistedError()
        claims = self.codec.verify(token, expected_type=ACCESS)
        user_id = claims["sub"]
        if await self.revocation.is_revoked_for_user(user_id, issued_at(claims)):
            raise TokenBlacklistedError(reason="user_revoked")
        session_id = claims.get("sid")
        if session_id:
            # An untracked sid is allowed; a tracked one must still be live
            session = await self.sessions.get(session_id)
            if session is not None and not session.is_live(self._clock()):
                raise TokenBlacklistedError(reason="session_ended")
        user = await self._find_user(user_id)
        if user is None:
            raise UnauthorizedError(reason="unknown_user")

        if session_id:
            try:
                await self.sessions.touch(session_id)
            except Exception as exc:
                self.logger.debug("session_touch_failed", session_id=session_id, error=str(exc))
        return Principal(user_id=user.id, email=user.email, role=user.role, session_id=session_id)

    async def get_sessions(self, user_id: str) -> SessionsView:
        active = await self.sessions.list_active(user_id)
        return SessionsView(
            sessions=[SessionSummary.from_session(s) for s in active],
            stats=await self.sessions.stats(user_id),
        )

    async def register(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        role: str = "user",
    ) -> UserRecord:
        email_key = (email or "").strip().lower()
        if not email_key:
            raise ValidationError("email is required")
        if not MIN_PASSWORD_LENGTH <= len(password or "") <= MAX_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be {MIN_PASSWORD_LENGTH} to {MAX_PASSWORD_LENGTH} characters"
            )
        subject = self._throttle_subject(ip, email_key)
        decision = await self.register_throttle.check(subject)
        if not decision.allowed:
            self.logger.warning("register_throttled", ip=ip, retry_after=decision.retry_after_seconds)
            raise RateLimitedError(decision.retry_after_seconds)

        create_user = getattr(self.credentials, "create_user", None)
        if create_user is None:
            raise ServerError("registration is not supported by the credential store")
        try:
            user = await create_user(email_key, password, role=role)
        except ConstraintViolation as exc:
            await self.register_throttle.record(subject, success=False)
            raise ConflictError(exc.message, detail=exc.detail) from exc
        await self.register_throttle.record(subject, success=True)
        self.logger.info("user_registered", user_id=user.id)
        return user

    def security_alerts(self, user_id: str, limit: int = 10) -> dict[str, Any]:
        return {
            "alerts": self.anomaly.get_user_alerts(user_id, limit=limit),
            "stats": self.anomaly.security_stats(user_id),
        }

    def register_maintenance_jobs(self, scheduler: Scheduler) -> None:
        scheduler.add_job(
            "blacklist_sweep",
            self.settings.blacklist_sweep_interval_seconds,
            self.revocation.sweep,
        )
        scheduler.add_job(
            "login_throttle_sweep",
            self.settings.throttle_sweep_interval_seconds,
            self.login_throttle.sweep,
        )
        scheduler.add_job(
            "register_throttle_sweep",
            self.settings.throttle_sweep_interval_seconds,
            self.register_throttle.sweep,
        )
        scheduler.add_job(
            "session_sweep",
            self.settings.session_sweep_interval_seconds,
            self.sessions.sweep_expired,
        )
        scheduler.add_job(
            "security_alert_prune",
            self.settings.blacklist_sweep_interval_seconds,
            self.anomaly.prune_older_than,
        )
