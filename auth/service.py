"""
auth/service.py -- AuthService: the single entry point the API layer calls.

AuthService wires the components together and owns nothing else:

  RegistrationManager  register, profile, change password
  SessionManager       login, refresh, list sessions, logout, logout-all
  TokenValidator       access-token validation (revocation, signature, session)
  PasswordResetFlow    request, validate, consume reset tokens
  PermissionEngine     role grants and tenant isolation

Call sites depend on the capability Protocols below, not on the concrete
classes, so a test can hand AuthService a double for any one of them.
AuthService.build() assembles the production graph from Settings plus an
already-open CredentialStore and SharedCache.

Layer rule: no imports from api/. The cache backend arrives as a parameter.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Protocol

from auth.audit import ActivityRecorder
from auth.models import AuthResult, Identity, ResetRequestResult, ResetTokenValidation, Session, User, utcnow
from auth.passwords import PasswordPolicy
from auth.permissions import PermissionEngine
from auth.registration import RegistrationManager
from auth.reset import PasswordResetFlow, ResetNotifier
from auth.sessions import SessionManager
from auth.tokens import TokenIssuer
from auth.validator import TokenValidator
from core.deadline import BoundedExecutor, Deadline
from core.errors import InternalError, NotFoundError, ValidationError

logger = logging.getLogger("tenantgate.auth")


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class TokenAuthenticator(Protocol):
    def validate(self, token: str | None, deadline: Deadline | None = None) -> Identity | None: ...

    def authenticate(self, token: str | None, deadline: Deadline | None = None) -> Identity: ...


class SessionControl(Protocol):
    def login(self, email: str, password: str, **kwargs) -> AuthResult: ...

    def create_session(self, user: User, **kwargs) -> AuthResult: ...

    def refresh(self, refresh_token: str, **kwargs) -> AuthResult: ...

    def list_sessions(self, user_id: str, deadline: Deadline | None = None) -> list[Session]: ...

    def logout(self, session_id: str, **kwargs) -> None: ...

    def logout_all(self, user_id: str, tenant_id: str = "", deadline: Deadline | None = None) -> int: ...


class ResetFlow(Protocol):
    def request_reset(self, email: str, **kwargs) -> ResetRequestResult: ...

    def validate_token(self, token: str, deadline: Deadline | None = None) -> ResetTokenValidation: ...

    def reset_password(self, token: str, new_password: str, **kwargs) -> str: ...


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class AuthService:
    def __init__(
        self,
        *,
        registration: RegistrationManager,
        sessions: SessionControl,
        validator: TokenAuthenticator,
        reset: ResetFlow,
        permissions: PermissionEngine,
        store,
        cache,
        recorder: ActivityRecorder,
        executor: BoundedExecutor,
        store_timeout: float = 2.0,
        activity_retention: timedelta = timedelta(days=90),
    ) -> None:
        self.registration = registration
        self.sessions = sessions
        self.validator = validator
        self.reset = reset
        self.permissions = permissions
        self.store = store
        self.cache = cache
        self.recorder = recorder
        self.executor = executor
        self._store_timeout = store_timeout
        self._activity_retention = activity_retention

    @classmethod
    def build(
        cls,
        settings,
        store,
        cache,
        *,
        recorder: ActivityRecorder | None = None,
        executor: BoundedExecutor | None = None,
        notifier: ResetNotifier | None = None,
        permissions: PermissionEngine | None = None,
    ) -> "AuthService":
        """Assemble every component from settings. The recorder is started here."""
        executor = executor or BoundedExecutor(settings.store_workers)
        recorder = recorder or ActivityRecorder(store, maxsize=settings.audit_queue_size)
        recorder.start()
        issuer = TokenIssuer.from_settings(settings)
        policy = PasswordPolicy.from_settings(settings)
        inactivity = timedelta(seconds=settings.session_inactivity_seconds)

        sessions = SessionManager(
            store, cache, issuer, executor, recorder, inactivity=inactivity, bcrypt_rounds=settings.bcrypt_rounds
        )
        validator = TokenValidator(
            store,
            cache,
            issuer,
            executor,
            inactivity=inactivity,
            touch_interval=timedelta(seconds=settings.session_touch_interval_seconds),
        )
        registration = RegistrationManager(
            store, sessions, executor, recorder, policy, bcrypt_rounds=settings.bcrypt_rounds
        )
        reset = PasswordResetFlow(
            store,
            executor,
            recorder,
            policy,
            notifier=notifier,
            token_ttl=timedelta(seconds=settings.password_reset_token_ttl_seconds),
            max_requests=settings.password_reset_max_requests,
            window=timedelta(seconds=settings.password_reset_window_seconds),
            bcrypt_rounds=settings.bcrypt_rounds,
        )
        return cls(
            registration=registration,
            sessions=sessions,
            validator=validator,
            reset=reset,
            permissions=permissions or PermissionEngine(),
            store=store,
            cache=cache,
            recorder=recorder,
            executor=executor,
            store_timeout=settings.store_timeout_seconds,
            activity_retention=timedelta(days=settings.activity_retention_days),
        )

    def deadline(self) -> Deadline:
        """A fresh per-request deadline of store_timeout_seconds."""
        return Deadline(self._store_timeout)

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, display_name: str, tenant_id: str, **kwargs) -> AuthResult:
        return self.registration.register(email, password, display_name, tenant_id, **kwargs)

    def login(self, email: str, password: str, **kwargs) -> AuthResult:
        return self.sessions.login(email, password, **kwargs)

    def refresh(self, refresh_token: str, **kwargs) -> AuthResult:
        return self.sessions.refresh(refresh_token, **kwargs)

    def logout(self, identity: Identity, deadline: Deadline | None = None) -> None:
        self.sessions.logout(identity.session_id, user_id=identity.user_id, deadline=deadline)

    def logout_all(self, identity: Identity, deadline: Deadline | None = None) -> int:
        return self.sessions.logout_all(identity.user_id, identity.tenant_id, deadline=deadline)

    def validate_token(self, token: str | None, deadline: Deadline | None = None) -> Identity | None:
        return self.validator.validate(token, deadline)

    def authenticate(self, token: str | None, deadline: Deadline | None = None) -> Identity:
        return self.validator.authenticate(token, deadline)

    def list_sessions(self, identity: Identity, deadline: Deadline | None = None) -> list[Session]:
        return self.sessions.list_sessions(identity.user_id, deadline)

    def get_profile(self, user_id: str, deadline: Deadline | None = None) -> User:
        return self.registration.get_profile(user_id, deadline)

    def update_profile(self, user_id: str, **kwargs) -> User:
        return self.registration.update_profile(user_id, **kwargs)

    def change_password(self, user_id: str, current_password: str, new_password: str, **kwargs) -> int:
        return self.registration.change_password(user_id, current_password, new_password, **kwargs)

    def request_password_reset(self, email: str, **kwargs) -> ResetRequestResult:
        return self.reset.request_reset(email, **kwargs)

    def validate_reset_token(self, token: str, deadline: Deadline | None = None) -> ResetTokenValidation:
        return self.reset.validate_token(token, deadline)

    def reset_password(self, token: str, new_password: str, **kwargs) -> str:
        return self.reset.reset_password(token, new_password, **kwargs)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def list_users(
        self, tenant_id: str, *, limit: int = 100, offset: int = 0, deadline: Deadline | None = None
    ) -> list[User]:
        return self.executor.call(self.store.list_users, tenant_id, limit, offset, deadline=deadline)

    def delete_user(
        self, actor: Identity, user_id: str, tenant_id: str, deadline: Deadline | None = None
    ) -> None:
        """Soft-delete user_id in tenant_id and end all of its sessions.

        A user outside tenant_id is reported as missing, not forbidden, so the
        response does not confirm that the id exists elsewhere.
        """
        if user_id == actor.user_id:
            raise ValidationError("You cannot delete your own account")
        target = self.executor.call(self.store.get_user, user_id, deadline=deadline)
        if target is None or target.tenant_id != tenant_id:
            raise NotFoundError("User not found")

        self.executor.call(self.store.soft_delete_user, user_id, deadline=deadline)
        ended = self.sessions.logout_all(user_id, deadline=deadline)
        self.recorder.record(
            "delete_user",
            tenant_id,
            user_id=actor.user_id,
            resource_id=user_id,
            session_id=actor.session_id,
            old_values={"email": target.email, "role": target.role},
            new_values={"sessions_terminated": ended},
        )
        logger.info("user %s deleted by %s", user_id, actor.user_id)

    # ------------------------------------------------------------------
    # Health and maintenance
    # ------------------------------------------------------------------

    def health(self) -> dict[str, str]:
        return {
            "database": "ok" if self.store.ping() else "error",
            "cache": "ok" if self.cache.ping() else "error",
        }

    def run_maintenance(self) -> dict[str, int]:
        """Expire stale rows and trim old activity. Each step runs even if an earlier one failed."""
        cutoff = utcnow() - self._activity_retention
        steps = {
            "cache_entries": self.cache.purge_expired,
            "sessions": self.store.cleanup_expired_sessions,
            "reset_tokens": self.store.deactivate_expired_reset_tokens,
            "activity": lambda: self.store.delete_activity_before(cutoff),
        }
        results: dict[str, int] = {}
        for name, step in steps.items():
            try:
                results[name] = step()
            except InternalError as exc:
                logger.error("maintenance step %s failed: %s", name, exc)
                results[name] = -1
        return results

    def close(self) -> None:
        self.recorder.stop()
        self.executor.shutdown(wait=False)
