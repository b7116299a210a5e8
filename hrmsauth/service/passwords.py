from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import string
from typing import List, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from hrmsauth.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
PASSWORD_SYMBOLS = '!@#$%^&*(),.?":{}|<>'

_SYMBOL_PATTERN = re.compile("[" + re.escape(PASSWORD_SYMBOLS) + "]")


def validate_password_strength(password: str) -> List[str]:
    """Return the list of policy violations; empty means the password is acceptable."""
    errors: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not re.search(r"[a-z]", password):
        errors.append("password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("password must contain at least one number")
    if not _SYMBOL_PATTERN.search(password):
        errors.append("password must contain at least one special character")
    return errors


def generate_random_password(length: int = 16) -> str:
    """Generate a random password that satisfies the strength policy."""
    if length < MIN_PASSWORD_LENGTH:
        raise ValueError(f"length must be at least {MIN_PASSWORD_LENGTH}")
    pools = [string.ascii_lowercase, string.ascii_uppercase, string.digits, "!@#$%^&*"]
    charset = "".join(pools)
    chars = [secrets.choice(pool) for pool in pools]
    chars.extend(secrets.choice(charset) for _ in range(length - len(pools)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def digest_token(token: str) -> str:
    """One-way digest used to store reset, verification and refresh tokens."""
    return hashlib.sha256(token.encode()).hexdigest()


def generate_one_time_token() -> Tuple[str, str]:
    """Return ``(raw_token, digest)``; only the digest is ever persisted."""
    token = secrets.token_hex(32)
    return token, digest_token(token)


def digests_match(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode(), right.encode())


class PasswordService:
    """argon2id hashing and verification."""

    algorithm = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: str | None = None

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str | None, password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def verify_against_dummy(self, password: str) -> None:
        """Spend one verification on a throwaway hash.

        Keeps unknown-email logins as slow as wrong-password logins.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self.verify(self._dummy_hash, password)
