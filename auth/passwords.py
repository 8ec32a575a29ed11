"""
auth/passwords.py -- Password hashing, password policy, and email handling.

Passwords: bcrypt, used directly rather than through passlib. bcrypt only
    reads the first 72 bytes of its input and current releases raise
    ValueError beyond that, so the policy rejects longer passwords before
    they are hashed. The cost factor (rounds) comes from
    Settings.bcrypt_rounds so tests can run at the minimum cost of 4.

Policy: minimum length plus optional uppercase / digit / special-character
    presence, all configurable. The same policy applies to registration,
    password change, and password reset.

Emails: trimmed and lower-cased before validation, storage, and lookup, so
    "User@Acme.test " and "user@acme.test" are the same identity.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache

import bcrypt

from core.errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"[0-9]")
_SPECIAL = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")

# bcrypt ignores everything past this many bytes of input.
MAX_PASSWORD_BYTES = 72


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Callers run PasswordPolicy first; bcrypt raises ValueError for input
    longer than MAX_PASSWORD_BYTES.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash, or input past the bcrypt limit
        return False


@lru_cache(maxsize=None)
def dummy_hash(rounds: int = 12) -> str:
    """Timing equalization hash [C1] at the given cost.

    Login runs verify_password() against this when no user matches, so
    response time does not reveal whether an email exists. It must use the
    same cost as real hashes; SessionManager builds it once at startup.
    """
    return hash_password("tenantgate_timing_dummy", rounds)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    require_uppercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True

    @classmethod
    def from_settings(cls, settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.min_password_length,
            require_uppercase=settings.require_uppercase,
            require_numbers=settings.require_numbers,
            require_special_chars=settings.require_special_chars,
        )

    def violations(self, password: str) -> list[str]:
        """Return every rule the password breaks, in a stable order."""
        problems = []
        if len(password) < self.min_length:
            problems.append(f"password must be at least {self.min_length} characters long")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            problems.append(f"password must be at most {MAX_PASSWORD_BYTES} bytes long")
        if self.require_uppercase and not _UPPER.search(password):
            problems.append("password must contain at least one uppercase letter")
        if self.require_numbers and not _DIGIT.search(password):
            problems.append("password must contain at least one number")
        if self.require_special_chars and not _SPECIAL.search(password):
            problems.append("password must contain at least one special character")
        return problems

    def validate(self, password: str, field: str = "password") -> None:
        problems = self.violations(password)
        if problems:
            raise ValidationError(problems[0], details={"field": field, "violations": problems})


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_email(email: str) -> str:
    """Normalize and validate an email address. Returns the normalized form."""
    normalized = normalize_email(email or "")
    if not normalized:
        raise ValidationError("email is required", details={"field": "email"})
    if not EMAIL_PATTERN.match(normalized):
        raise ValidationError("invalid email format", details={"field": "email"})
    return normalized


def mask_email(email: str) -> str:
    """Mask the local part of an address for responses: "user@x.io" -> "us**@x.io"."""
    if len(email) < 4:
        return "****"
    parts = email.split("@")
    if len(parts) != 2:
        return "****"
    local, domain = parts
    if len(local) <= 2:
        return "****@" + domain
    return local[:2] + "*" * (len(local) - 2) + "@" + domain
