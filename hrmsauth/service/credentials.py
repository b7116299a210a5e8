"""Pure state transitions applied to a ``Credential`` inside atomic store updates.

Every function here mutates the credential it is given and is meant to run
as the ``mutate`` callback of ``store.update_credential`` so the
read-modify-write happens under the store's per-credential lock.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from hrmsauth.service.passwords import digests_match
from hrmsauth.storage.models import Credential, RefreshTokenRecord


class LockoutOutcome(str, Enum):
    RESET = "reset"
    INCREMENTED = "incremented"
    LOCKED_NOW = "locked_now"
    ALREADY_LOCKED = "already_locked"


def is_locked(credential: Credential, now: datetime) -> bool:
    return credential.account_locked_until is not None and now < credential.account_locked_until


def record_failed_login(
    credential: Credential, now: datetime, *, max_attempts: int, lockout: timedelta
) -> LockoutOutcome:
    if is_locked(credential, now):
        return LockoutOutcome.ALREADY_LOCKED
    if credential.account_locked_until is not None:
        # Lock expired; the stale count stands so one more miss re-locks
        credential.account_locked_until = None
    credential.failed_login_attempts += 1
    if credential.failed_login_attempts >= max_attempts:
        credential.account_locked_until = now + lockout
        return LockoutOutcome.LOCKED_NOW
    return LockoutOutcome.INCREMENTED


def record_successful_login(credential: Credential, now: datetime) -> LockoutOutcome:
    if is_locked(credential, now):
        return LockoutOutcome.ALREADY_LOCKED
    credential.failed_login_attempts = 0
    credential.account_locked_until = None
    return LockoutOutcome.RESET


def add_refresh_token(
    credential: Credential, record: RefreshTokenRecord, now: datetime, *, max_tokens: int
) -> int:
    """Prune expired records, evict the oldest past ``max_tokens``, append.

    Returns the number of live records evicted.
    """
    live = [rt for rt in credential.refresh_tokens if rt.expires_at > now]
    live.sort(key=lambda rt: rt.created_at)
    evicted = 0
    while len(live) >= max_tokens:
        live.pop(0)
        evicted += 1
    live.append(record)
    credential.refresh_tokens = live
    return evicted


def find_refresh_token(
    credential: Credential, token_digest: str, now: datetime
) -> Optional[RefreshTokenRecord]:
    for record in credential.refresh_tokens:
        if digests_match(record.token_digest, token_digest) and record.expires_at > now:
            return record
    return None


def remove_refresh_token(credential: Credential, token_digest: str) -> bool:
    remaining = [
        rt for rt in credential.refresh_tokens if not digests_match(rt.token_digest, token_digest)
    ]
    removed = len(remaining) != len(credential.refresh_tokens)
    credential.refresh_tokens = remaining
    return removed


def remove_all_refresh_tokens(credential: Credential) -> int:
    count = len(credential.refresh_tokens)
    credential.refresh_tokens = []
    return count
