from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, List, Optional

from hrmsauth.config import Settings
from hrmsauth.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenError(Exception):
    """Base class for token verification failures."""


class TokenExpired(TokenError):
    """Signature and claims are valid but ``exp`` has passed."""


class TokenInvalid(TokenError):
    """Malformed token, wrong key, or issuer/audience/type mismatch."""


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    staff_id: str
    roles: List[str] = field(default_factory=list)
    token_type: TokenKind = TokenKind.ACCESS
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    jti: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class TokenService:
    """Issues and verifies HS256 tokens with separate access and refresh keys."""

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self._clock = clock or _utcnow
        self._keys = {
            TokenKind.ACCESS: settings.access_token_secret.encode(),
            TokenKind.REFRESH: settings.refresh_token_secret.encode(),
        }
        self._ttls = {
            TokenKind.ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            TokenKind.REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        }

    def now(self) -> datetime:
        return self._clock()

    def ttl(self, kind: TokenKind) -> timedelta:
        return self._ttls[kind]

    def issue_access_token(self, claims: TokenClaims) -> str:
        token, _ = self._issue(claims, TokenKind.ACCESS)
        return token

    def issue_refresh_token(self, claims: TokenClaims) -> str:
        token, _ = self._issue(claims, TokenKind.REFRESH)
        return token

    def issue_pair(self, claims: TokenClaims) -> TokenPair:
        access, access_exp = self._issue(claims, TokenKind.ACCESS)
        refresh, refresh_exp = self._issue(claims, TokenKind.REFRESH)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify(self, token: str, kind: TokenKind) -> TokenClaims:
        """Verify ``token`` as ``kind`` and return its claims.

        Raises:
            TokenInvalid: malformed token, bad signature, or claim mismatch
            TokenExpired: everything checks out except the expiry
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalid("malformed token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("malformed token header") from None
        # Reject algorithm confusion: only HS256 is ever issued
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise TokenInvalid("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid("invalid token signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("malformed token payload") from None
        if not isinstance(payload, dict):
            raise TokenInvalid("malformed token payload")

        if payload.get("token_type") != kind.value:
            raise TokenInvalid("unexpected token type")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid("invalid token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalid("invalid token audience")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("token has no expiry") from None
        if self.now().timestamp() >= exp_ts:
            raise TokenExpired(f"{kind.value} token has expired")

        for claim in ("sub", "email", "staff_id"):
            if not isinstance(payload.get(claim), str):
                raise TokenInvalid(f"token is missing {claim}")
        return self._claims_from_payload(payload)

    def decode_unsafe(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload without verifying anything.

        For diagnostics only; never base an authorization decision on it.
        """
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
        except (AttributeError, ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def expires_at(self, token: str) -> Optional[datetime]:
        payload = self.decode_unsafe(token)
        if not payload or payload.get("exp") is None:
            return None
        try:
            return datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None

    def remaining_lifetime(self, token: str) -> Optional[float]:
        """Seconds until expiry (never negative), or None if the token has no expiry."""
        expiry = self.expires_at(token)
        if expiry is None:
            return None
        return max(0.0, (expiry - self.now()).total_seconds())

    def is_expired(self, token: str) -> bool:
        expiry = self.expires_at(token)
        if expiry is None:
            return True
        return self.now() >= expiry

    def _issue(self, claims: TokenClaims, kind: TokenKind) -> tuple[str, datetime]:
        now = self.now()
        expires_at = now + self._ttls[kind]
        payload = {
            "sub": claims.user_id,
            "email": claims.email,
            "staff_id": claims.staff_id,
            "roles": list(claims.roles),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": kind.value,
        }
        return self._encode_jwt(payload, kind), datetime.fromtimestamp(
            payload["exp"], tz=timezone.utc
        )

    @staticmethod
    def _claims_from_payload(payload: dict[str, Any]) -> TokenClaims:
        roles = payload.get("roles") or []
        iat = payload.get("iat")
        return TokenClaims(
            user_id=payload["sub"],
            email=payload["email"],
            staff_id=payload["staff_id"],
            roles=[str(r) for r in roles] if isinstance(roles, list) else [],
            token_type=TokenKind(payload["token_type"]),
            issued_at=datetime.fromtimestamp(float(iat), tz=timezone.utc) if iat else None,
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            jti=payload.get("jti"),
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        signature = hmac.new(
            self._keys[kind], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(signature)

    def _encode_jwt(self, payload: dict[str, Any], kind: TokenKind) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"
