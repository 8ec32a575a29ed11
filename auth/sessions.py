"""
auth/sessions.py -- Login, session creation, refresh rotation, and logout.

Session lifecycle:
  create   -- new opaque session_id, token pair minted with that id, hashes of
              both tokens stored; expiry = now + access-token lifetime
  refresh  -- same session_id, fresh pair, stored hashes overwritten, expiry
              extended, last_activity updated
  logout   -- session deactivated, both current token hashes blacklisted
  logout_all -- every session of the user deactivated in one UPDATE

Refresh vs. logout race:
  Rotation is a conditional UPDATE on (is_active, old refresh hash). If the
  logout's deactivation lands first, the rotation matches no row and refresh
  fails. If the rotation lands first, the logout deactivates the rotated
  session and blacklists the new hashes it reads back; a request validating
  the rotated access token between those two statements still succeeds. The
  window is bounded by one store round trip. No lock spans the two writes.

Security:
  [C1] Login runs bcrypt against a dummy hash of the configured cost when the
       email matches nobody, so response time does not reveal whether an
       account exists.
  Wrong email and wrong password produce the same AuthError message.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from auth.audit import ActivityRecorder
from auth.models import AuthResult, Session, TokenType, User, utcnow
from auth.passwords import dummy_hash, validate_email, verify_password
from auth.tokens import TokenIssuer, hash_token
from auth.validator import blacklist_key
from core.deadline import BoundedExecutor, Deadline
from core.errors import AuthError, InternalError, NotFoundError

logger = logging.getLogger("tenantgate.auth")

INVALID_CREDENTIALS = "Invalid email or password"


class SessionManager:
    """Creates, refreshes, enumerates and terminates sessions."""

    def __init__(
        self,
        store,
        cache,
        issuer: TokenIssuer,
        executor: BoundedExecutor,
        recorder: ActivityRecorder,
        *,
        inactivity: timedelta = timedelta(hours=24),
        bcrypt_rounds: int = 12,
    ) -> None:
        self._store = store
        self._cache = cache
        self._issuer = issuer
        self._executor = executor
        self._recorder = recorder
        self._inactivity = inactivity
        self._dummy_hash = dummy_hash(bcrypt_rounds)

    def _call(self, fn, *args, deadline: Deadline | None = None, **kwargs):
        return self._executor.call(fn, *args, deadline=deadline, **kwargs)

    # ------------------------------------------------------------------
    # Login and creation
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: str = "",
        user_agent: str = "",
        deadline: Deadline | None = None,
    ) -> AuthResult:
        """Authenticate by email and password and open a new session.

        The email lookup spans every tenant; the caller does not know its
        tenant before logging in.
        """
        email = validate_email(email)
        user = self._call(self._store.find_user_by_email_across_tenants, email, deadline=deadline)

        if user is None:
            verify_password(password, self._dummy_hash)  # [C1]
            logger.info("login failed: unknown account")
            raise AuthError(INVALID_CREDENTIALS)

        if not verify_password(password, user.password_hash):
            self._recorder.record(
                "login",
                user.tenant_id,
                user_id=user.id,
                resource_id=user.id,
                success=False,
                error_message="invalid password",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise AuthError(INVALID_CREDENTIALS)

        if not user.is_authenticatable():
            self._recorder.record(
                "login",
                user.tenant_id,
                user_id=user.id,
                resource_id=user.id,
                success=False,
                error_message="account inactive",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise AuthError("Account is inactive")

        self._call(self._store.update_last_login, user.id, deadline=deadline)
        result = self.create_session(user, ip_address=ip_address, user_agent=user_agent, deadline=deadline)
        self._recorder.record(
            "login",
            user.tenant_id,
            user_id=user.id,
            resource_id=user.id,
            session_id=result.session_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("user %s logged in (session %s)", user.id, result.session_id)
        return result

    def create_session(
        self,
        user: User,
        *,
        ip_address: str = "",
        user_agent: str = "",
        device_info: str = "",
        deadline: Deadline | None = None,
    ) -> AuthResult:
        session_id = str(uuid.uuid4())
        access, refresh = self._issuer.issue_pair(user, session_id)
        now = utcnow()
        session = Session(
            user_id=user.id,
            tenant_id=user.tenant_id,
            session_id=session_id,
            token_hash=hash_token(access),
            refresh_token_hash=hash_token(refresh),
            expires_at=now + self._issuer.access_ttl,
            last_activity=now,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
        )
        self._call(self._store.create_session, session, deadline=deadline)
        return AuthResult(
            user=user,
            access_token=access,
            refresh_token=refresh,
            session_id=session_id,
            expires_in=int(self._issuer.access_ttl.total_seconds()),
        )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: str = "",
        user_agent: str = "",
        deadline: Deadline | None = None,
    ) -> AuthResult:
        """Rotate the token pair of the session the refresh token belongs to.

        The session id is preserved; both tokens are new. The previous access
        token stops validating as soon as the stored hash is overwritten.
        """
        claims = self._issuer.verify(refresh_token) if refresh_token else None
        if claims is None or claims.token_type != TokenType.REFRESH.value:
            raise AuthError("Invalid refresh token")

        refresh_hash = hash_token(refresh_token)
        if self._call(self._cache.exists, blacklist_key(refresh_hash), deadline=deadline):
            raise AuthError("Refresh token has been revoked")

        session = self._call(self._store.get_session_by_refresh_hash, refresh_hash, deadline=deadline)
        if session is None or session.session_id != claims.session_id:
            raise AuthError("Session not found")
        if not session.is_valid(self._inactivity):
            raise AuthError("Session expired or inactive")

        user = self._call(self._store.get_user, session.user_id, deadline=deadline)
        if user is None or not user.is_authenticatable():
            raise AuthError("Account is inactive")

        access, refresh = self._issuer.issue_pair(user, session.session_id)
        rotated = self._call(
            self._store.rotate_session_tokens,
            session.session_id,
            refresh_hash,
            hash_token(access),
            hash_token(refresh),
            utcnow() + self._issuer.access_ttl,
            deadline=deadline,
        )
        if not rotated:
            # Logged out, or another refresh with the same token won.
            raise AuthError("Session expired or inactive")

        self._recorder.record(
            "token_refresh",
            user.tenant_id,
            resource_type="session",
            user_id=user.id,
            session_id=session.session_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return AuthResult(
            user=user,
            access_token=access,
            refresh_token=refresh,
            session_id=session.session_id,
            expires_in=int(self._issuer.access_ttl.total_seconds()),
        )

    # ------------------------------------------------------------------
    # Enumeration and termination
    # ------------------------------------------------------------------

    def list_sessions(self, user_id: str, deadline: Deadline | None = None) -> list[Session]:
        """Active, currently valid sessions for user_id, newest first."""
        sessions = self._call(self._store.list_sessions, user_id, deadline=deadline)
        now = utcnow()
        return [s for s in sessions if s.is_valid(self._inactivity, now)]

    def logout(self, session_id: str, *, user_id: str | None = None, deadline: Deadline | None = None) -> None:
        """Deactivate one session and blacklist its current token pair.

        With user_id given, the session must belong to that user.
        """
        session = self._call(self._store.get_session, session_id, deadline=deadline)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise NotFoundError("Session not found")

        self._call(self._store.deactivate_session, session_id, deadline=deadline)

        # Re-read so hashes rotated by a refresh that raced this logout are
        # revoked too.
        current = self._call(self._store.get_session, session_id, deadline=deadline) or session
        self._revoke(current, deadline)

        self._recorder.record(
            "logout",
            session.tenant_id,
            resource_type="session",
            user_id=session.user_id,
            session_id=session_id,
        )
        logger.info("session %s logged out", session_id)

    def logout_all(self, user_id: str, tenant_id: str = "", deadline: Deadline | None = None) -> int:
        """Deactivate every active session owned by user_id. Returns how many."""
        count = self._call(self._store.deactivate_user_sessions, user_id, deadline=deadline)
        if tenant_id:
            self._recorder.record(
                "logout_all",
                tenant_id,
                resource_type="session",
                user_id=user_id,
                new_values={"sessions_terminated": count},
            )
        logger.info("deactivated %d session(s) for user %s", count, user_id)
        return count

    def _revoke(self, session: Session, deadline: Deadline | None) -> None:
        # Session.expires_at tracks the current access token's exp. The
        # refresh token's exact exp is not stored, so its hash is kept for the
        # full refresh lifetime, which is never shorter than what remains.
        access_ttl = max(1, int((session.expires_at - utcnow()).total_seconds()) + 1)
        refresh_ttl = int(self._issuer.refresh_ttl.total_seconds())
        try:
            self._call(self._cache.set, blacklist_key(session.token_hash), "1", access_ttl, deadline=deadline)
            self._call(self._cache.set, blacklist_key(session.refresh_token_hash), "1", refresh_ttl, deadline=deadline)
        except InternalError as exc:
            # The session row is already inactive, which alone fails validation.
            logger.error("could not blacklist tokens for session %s: %s", session.session_id, exc)
