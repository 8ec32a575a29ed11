"""
auth/reset.py -- Self-service password reset.

Token state machine: issued -> valid -> {used | expired | deactivated}. The
terminal states are mutually exclusive and irreversible.

request_reset():
  Unknown email, inactive account, and throttled requests all return the same
  generic message, so the response does not disclose whether an account
  exists. Throttling: at most password_reset_max_requests tokens per user per
  password_reset_window_seconds, counted in the credential store so every
  running instance sees the same count. Issuing a token deactivates the
  user's earlier ones; at most one token per user is active.

reset_password():
  Validates the token, then consumes it with a single conditional UPDATE. Of
  two concurrent resets with one token exactly one consumes it; the other
  fails with reason "used". Only the winner rotates the password hash and
  revokes every session and outstanding token of the user.

Delivery of the raw token is the ResetNotifier's job. The default notifier
only logs that a token was issued, never the token itself.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Protocol

from auth.audit import ActivityRecorder
from auth.models import (
    PasswordResetToken,
    ResetFailure,
    ResetRequestResult,
    ResetTokenValidation,
    User,
    reset_failure_message,
    utcnow,
)
from auth.passwords import PasswordPolicy, hash_password, mask_email, validate_email
from auth.tokens import hash_token
from core.deadline import BoundedExecutor, Deadline
from core.errors import NotFoundError, RateLimitedError

logger = logging.getLogger("tenantgate.auth.reset")

RESET_REQUESTED_MESSAGE = "If an account with this email exists, a password reset link has been sent"
RESET_THROTTLED_MESSAGE = "Too many password reset requests. Please try again later"


class ResetNotifier(Protocol):
    def send_reset_token(self, user: User, token: PasswordResetToken) -> None: ...


class LoggingResetNotifier:
    """Dev-mode notifier: records that a token went out, without its value."""

    def send_reset_token(self, user: User, token: PasswordResetToken) -> None:
        logger.info(
            "password reset token %s issued for %s (expires %s)",
            token.id,
            mask_email(token.email),
            token.expires_at.isoformat(),
        )


class PasswordResetFlow:
    def __init__(
        self,
        store,
        executor: BoundedExecutor,
        recorder: ActivityRecorder,
        policy: PasswordPolicy,
        *,
        notifier: ResetNotifier | None = None,
        token_ttl: timedelta = timedelta(hours=1),
        max_requests: int = 3,
        window: timedelta = timedelta(hours=1),
        bcrypt_rounds: int = 12,
    ) -> None:
        self._store = store
        self._executor = executor
        self._recorder = recorder
        self._policy = policy
        self._notifier = notifier or LoggingResetNotifier()
        self._token_ttl = token_ttl
        self._max_requests = max_requests
        self._window = window
        self._rounds = bcrypt_rounds

    def _call(self, fn, *args, deadline: Deadline | None = None, **kwargs):
        return self._executor.call(fn, *args, deadline=deadline, **kwargs)

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def request_reset(
        self,
        email: str,
        *,
        ip_address: str = "",
        user_agent: str = "",
        deadline: Deadline | None = None,
    ) -> ResetRequestResult:
        email = validate_email(email)
        now = utcnow()
        expires_at = now + self._token_ttl
        masked = mask_email(email)

        user = self._call(self._store.find_user_by_email_across_tenants, email, deadline=deadline)
        if user is None or not user.is_authenticatable():
            logger.info("password reset requested for unknown or inactive account %s", masked)
            return ResetRequestResult(message=RESET_REQUESTED_MESSAGE, expires_at=expires_at, sent_to_email=masked)

        try:
            self._check_rate(user, now, deadline)
        except RateLimitedError as exc:
            logger.warning("%s (user %s)", exc.message, user.id)
            self._recorder.record(
                "password_reset_requested",
                user.tenant_id,
                user_id=user.id,
                resource_id=user.id,
                success=False,
                error_message=exc.message,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return ResetRequestResult(
                message=RESET_REQUESTED_MESSAGE,
                expires_at=expires_at,
                sent_to_email=masked,
                rate_limited=True,
            )

        self._call(self._store.deactivate_reset_tokens, user.id, deadline=deadline)

        raw = secrets.token_urlsafe(32)
        token = PasswordResetToken(
            user_id=user.id,
            tenant_id=user.tenant_id,
            token_hash=hash_token(raw),
            email=email,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )
        token.id = self._call(self._store.create_reset_token, token, deadline=deadline)
        token.token = raw

        try:
            self._notifier.send_reset_token(user, token)
        except Exception:  # noqa: BLE001 -- a delivery failure must not change the response
            logger.exception("password reset delivery failed for token %s", token.id)

        self._recorder.record(
            "password_reset_requested",
            user.tenant_id,
            user_id=user.id,
            resource_id=user.id,
            new_values={"reset_token_id": token.id},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return ResetRequestResult(
            message=RESET_REQUESTED_MESSAGE,
            expires_at=expires_at,
            sent_to_email=masked,
            reset_token_id=token.id,
            token=raw,
        )

    def _check_rate(self, user: User, now: datetime, deadline: Deadline | None) -> None:
        issued = self._call(self._store.count_reset_tokens_since, user.id, now - self._window, deadline=deadline)
        if issued >= self._max_requests:
            raise RateLimitedError(RESET_THROTTLED_MESSAGE, details={"issued": issued})

    # ------------------------------------------------------------------
    # Validate (read-only)
    # ------------------------------------------------------------------

    def validate_token(self, token: str, deadline: Deadline | None = None) -> ResetTokenValidation:
        if not token:
            return ResetTokenValidation(is_valid=False, reason=ResetFailure.NOT_FOUND)
        record = self._call(self._store.get_reset_token_by_hash, hash_token(token), deadline=deadline)
        if record is None:
            return ResetTokenValidation(is_valid=False, reason=ResetFailure.NOT_FOUND)
        reason = record.failure()
        return ResetTokenValidation(
            is_valid=reason is None,
            reason=reason,
            user_id=record.user_id,
            tenant_id=record.tenant_id,
            email=record.email,
            expires_at=record.expires_at,
            token_id=record.id,
        )

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip_address: str = "",
        user_agent: str = "",
        deadline: Deadline | None = None,
    ) -> str:
        """Set a new password using a reset token. Returns the user id.

        Raises NotFoundError carrying details["reason"] when the token is
        unknown, used, expired, inactive, or consumed by a concurrent call.
        """
        self._policy.validate(new_password, field="new_password")

        check = self.validate_token(token, deadline)
        if not check.is_valid:
            raise NotFoundError(check.message, details={"reason": check.reason.value})

        new_hash = hash_password(new_password, self._rounds)
        if not self._call(self._store.consume_reset_token, check.token_id, deadline=deadline):
            raise NotFoundError(
                reset_failure_message(ResetFailure.USED),
                details={"reason": ResetFailure.USED.value},
            )

        user = self._call(self._store.get_user, check.user_id, deadline=deadline)
        if user is None:
            raise NotFoundError("User not found")

        self._call(self._store.update_user, user.id, password_hash=new_hash, deadline=deadline)
        revoked = self._call(self._store.deactivate_user_sessions, user.id, deadline=deadline)
        self._call(self._store.deactivate_reset_tokens, user.id, deadline=deadline)

        self._recorder.record(
            "password_reset",
            user.tenant_id,
            user_id=user.id,
            resource_id=user.id,
            new_values={"sessions_terminated": revoked},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("password reset completed for user %s", user.id)
        return user.id
