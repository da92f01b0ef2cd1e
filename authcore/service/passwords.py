"""Password strength rules, email address rules and argon2id credential hashing."""

from __future__ import annotations

import re
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from authcore.logging import get_logger
from authcore.service.errors import ValidationError

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


class PasswordPolicy:
    """Minimum length plus uppercase, lowercase and digit character classes."""

    def __init__(self, min_length: int = MIN_PASSWORD_LENGTH) -> None:
        self.min_length = min_length

    def check(self, password: str) -> Optional[str]:
        """Return a violation message, or ``None`` when the password is acceptable."""
        if len(password) < self.min_length:
            return f"Password must be at least {self.min_length} characters"
        has_upper = any(c.isupper() for c in password)
        has_lower = any(c.islower() for c in password)
        has_digit = any(c.isdigit() for c in password)
        if not (has_upper and has_lower and has_digit):
            return "Password must contain uppercase, lowercase, and number"
        return None

    def enforce(self, password: str) -> None:
        violation = self.check(password)
        if violation:
            raise ValidationError(violation, detail={"field": "password"})


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


def validate_email(email: str) -> str:
    """Normalize an email address and reject malformed ones."""
    normalized = normalize_email(email)
    if not is_valid_email(normalized):
        raise ValidationError("invalid email format", detail={"field": "email"})
    return normalized


class CredentialHasher:
    """Salted argon2id hashing; digests embed their own salt and cost parameters."""

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, digest: str) -> bool:
        # argon2 compares the recomputed tag in constant time
        try:
            return self._hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error_type=type(exc).__name__)
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHashError:
            return True
