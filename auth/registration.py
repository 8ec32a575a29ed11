"""
auth/registration.py -- Account creation and credential changes.

Registration implies login: a successful register() returns a token pair for
a brand-new session. If the session cannot be created after the user row is
committed, the user is soft-deleted again so no account exists that its
owner was never able to use.

Validation order: email, tenant, display name, role, password policy. All of
it runs before the first store call.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging

from auth.audit import ActivityRecorder
from auth.models import AuthResult, Role, User
from auth.passwords import PasswordPolicy, hash_password, validate_email, verify_password
from auth.sessions import SessionManager
from core.deadline import BoundedExecutor, Deadline
from core.errors import AuthError, ConflictError, InternalError, NotFoundError, TenantGateError, ValidationError

logger = logging.getLogger("tenantgate.auth")


class RegistrationManager:
    def __init__(
        self,
        store,
        sessions: SessionManager,
        executor: BoundedExecutor,
        recorder: ActivityRecorder,
        policy: PasswordPolicy,
        *,
        bcrypt_rounds: int = 12,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._executor = executor
        self._recorder = recorder
        self._policy = policy
        self._rounds = bcrypt_rounds

    def _call(self, fn, *args, deadline: Deadline | None = None, **kwargs):
        return self._executor.call(fn, *args, deadline=deadline, **kwargs)

    def register(
        self,
        email: str,
        password: str,
        display_name: str,
        tenant_id: str,
        *,
        phone: str = "",
        role: str | None = None,
        ip_address: str = "",
        user_agent: str = "",
        deadline: Deadline | None = None,
    ) -> AuthResult:
        email = validate_email(email)
        if not tenant_id:
            raise ValidationError("tenant id is required", details={"field": "tenant_id"})
        display_name = (display_name or "").strip()
        if not display_name:
            raise ValidationError("display name is required", details={"field": "display_name"})
        role = role or Role.VIEWER.value
        if role not in Role.values():
            raise ValidationError(f"invalid role: {role}", details={"field": "role", "allowed": Role.values()})
        self._policy.validate(password)

        if self._call(self._store.exists_by_email, email, tenant_id, deadline=deadline):
            self._recorder.record(
                "register",
                tenant_id,
                success=False,
                error_message="email already registered",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise ConflictError(f"user with email {email} already exists", title="User already exists")

        user = User(
            tenant_id=tenant_id,
            email=email,
            password_hash=hash_password(password, self._rounds),
            display_name=display_name,
            role=role,
            phone=(phone or "").strip(),
        )
        user.id = self._call(self._store.create_user, user, deadline=deadline)

        try:
            result = self._sessions.create_session(
                user, ip_address=ip_address, user_agent=user_agent, deadline=deadline
            )
        except TenantGateError as exc:
            logger.error("session creation failed for new user %s, rolling back: %s", user.id, exc)
            self._rollback(user.id)
            raise

        stored = self._call(self._store.get_user, user.id, deadline=deadline)
        if stored is not None:
            result.user = stored

        self._recorder.record(
            "register",
            tenant_id,
            user_id=user.id,
            resource_id=user.id,
            session_id=result.session_id,
            new_values={"email": email, "role": role, "display_name": display_name},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("registered user %s in tenant %s", user.id, tenant_id)
        return result

    def _rollback(self, user_id: str) -> None:
        # No deadline: the request's deadline may already have passed.
        try:
            self._store.soft_delete_user(user_id)
        except InternalError as exc:
            logger.error("rollback of user %s failed; account left without a session: %s", user_id, exc)

    # ------------------------------------------------------------------
    # Profile and password
    # ------------------------------------------------------------------

    def get_profile(self, user_id: str, deadline: Deadline | None = None) -> User:
        user = self._call(self._store.get_user, user_id, deadline=deadline)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def update_profile(
        self,
        user_id: str,
        *,
        display_name: str | None = None,
        phone: str | None = None,
        deadline: Deadline | None = None,
    ) -> User:
        """Update display name and/or phone.

        A blank display name is ignored; phone may be set to "" to clear it.
        """
        before = self.get_profile(user_id, deadline)
        changes: dict[str, str] = {}
        if display_name is not None and display_name.strip():
            changes["display_name"] = display_name.strip()
        if phone is not None:
            changes["phone"] = phone.strip()
        if not changes:
            return before

        self._call(self._store.update_user, user_id, deadline=deadline, **changes)
        after = self.get_profile(user_id, deadline)
        self._recorder.record(
            "update_profile",
            before.tenant_id,
            user_id=user_id,
            resource_id=user_id,
            old_values={k: getattr(before, k) for k in changes},
            new_values=changes,
        )
        return after

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        deadline: Deadline | None = None,
    ) -> int:
        """Rotate a user's password and end all their sessions. Returns sessions ended."""
        self._policy.validate(new_password, field="new_password")
        user = self.get_profile(user_id, deadline)
        if not verify_password(current_password, user.password_hash):
            self._recorder.record(
                "change_password",
                user.tenant_id,
                user_id=user_id,
                resource_id=user_id,
                success=False,
                error_message="current password incorrect",
            )
            raise AuthError("Current password is incorrect")

        new_hash = hash_password(new_password, self._rounds)
        self._call(self._store.update_user, user_id, password_hash=new_hash, deadline=deadline)
        ended = self._sessions.logout_all(user_id, deadline=deadline)
        self._recorder.record(
            "change_password",
            user.tenant_id,
            user_id=user_id,
            resource_id=user_id,
            new_values={"sessions_terminated": ended},
        )
        return ended
