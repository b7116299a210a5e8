from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol

from hrmsauth.logging import get_logger, hash_identifier

logger = get_logger(__name__)


class DeliveryPurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


class TokenDelivery(Protocol):
    """Out-of-band channel that hands a raw one-time token to its owner."""

    def deliver(self, email: str, token: str, purpose: DeliveryPurpose, expires_at: datetime) -> None: ...


class LoggingTokenDelivery:
    """Default channel: records that a token was issued, never the token itself."""

    def deliver(self, email: str, token: str, purpose: DeliveryPurpose, expires_at: datetime) -> None:
        logger.info(
            "one_time_token_issued",
            purpose=purpose.value,
            email_hash=hash_identifier(email),
            expires_at=expires_at.isoformat(),
        )


@dataclass(frozen=True)
class DeliveredToken:
    email: str
    token: str
    purpose: DeliveryPurpose
    expires_at: datetime


class InMemoryTokenOutbox:
    """Keeps delivered tokens in memory so tests can complete reset and verification flows."""

    def __init__(self) -> None:
        self.messages: List[DeliveredToken] = []
        self._lock = threading.Lock()

    def deliver(self, email: str, token: str, purpose: DeliveryPurpose, expires_at: datetime) -> None:
        with self._lock:
            self.messages.append(DeliveredToken(email, token, purpose, expires_at))

    def latest(self, email: str, purpose: DeliveryPurpose) -> Optional[str]:
        with self._lock:
            for message in reversed(self.messages):
                if message.email == email and message.purpose == purpose:
                    return message.token
        return None
