from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Protocol, TypeVar

from hrmsauth.config import Settings
from hrmsauth.logging import get_logger, hash_identifier
from hrmsauth.service.credentials import (
    LockoutOutcome,
    add_refresh_token,
    find_refresh_token,
    is_locked,
    record_failed_login,
    record_successful_login,
    remove_all_refresh_tokens,
    remove_refresh_token,
)
from hrmsauth.service.delivery import DeliveryPurpose, LoggingTokenDelivery, TokenDelivery
from hrmsauth.service.passwords import (
    PasswordService,
    digest_token,
    generate_one_time_token,
    generate_random_password,
    validate_password_strength,
)
from hrmsauth.service.results import ErrorKind, Result
from hrmsauth.service.tokens import TokenClaims, TokenError, TokenKind, TokenService
from hrmsauth.storage.errors import ConstraintViolation, MissingReference
from hrmsauth.storage.memory import normalize_email
from hrmsauth.storage.models import (
    Credential,
    PasswordResetRecord,
    PermissionOverride,
    Profile,
    RefreshTokenRecord,
    ResolvedProfile,
    Role,
)

logger = get_logger(__name__)

T = TypeVar("T")

INVALID_CREDENTIALS_MESSAGE = "invalid email or password"


class AuthStore(Protocol):
    def get_credential(self, email: str) -> Optional[Credential]: ...

    def get_password_hash(self, email: str) -> Optional[str]: ...

    def update_credential(self, email: str, mutate: Callable[[Credential], T]) -> Optional[T]: ...

    def set_password(self, email: str, password_hash: str, changed_at: datetime) -> bool: ...

    def create_credential(self, email: str, password_hash: str, profile_id: str) -> Credential: ...

    def consume_password_reset(self, token_digest: str, now: datetime) -> Optional[str]: ...

    def consume_email_verification(self, token_digest: str, now: datetime) -> Optional[str]: ...

    def get_profile(self, profile_id: str) -> Optional[ResolvedProfile]: ...

    def touch_last_login(self, profile_id: str, when: datetime) -> None: ...

    def create_profile(
        self,
        staff_id: str,
        display_name: str,
        *,
        designation: Optional[str] = None,
        role_ids: Iterable[str] = (),
        custom_permissions: Iterable[PermissionOverride] = (),
        is_active: bool = True,
    ) -> Profile: ...

    def create_account(
        self,
        email: str,
        password_hash: str,
        staff_id: str,
        display_name: str,
        *,
        designation: Optional[str] = None,
        role_ids: Iterable[str] = (),
        custom_permissions: Iterable[PermissionOverride] = (),
    ) -> tuple[Credential, Profile]: ...

    def set_custom_permission(self, profile_id: str, override: PermissionOverride) -> ResolvedProfile: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def verify_connection(self) -> None: ...


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    profile: ResolvedProfile
    token_type: str = "bearer"


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    access_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class ProvisionedAccount:
    credential: Credential
    profile: ResolvedProfile
    generated_password: Optional[str] = None


class AuthService:
    """Credential lifecycle: login, refresh, logout, password and email flows.

    Every public operation returns a ``Result``; nothing raises across this
    boundary for an expected failure.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        settings: Settings,
        *,
        passwords: Optional[PasswordService] = None,
        delivery: Optional[TokenDelivery] = None,
    ) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self.settings = settings
        self.passwords = passwords or PasswordService()
        self.delivery: TokenDelivery = delivery or LoggingTokenDelivery()
        self.logger = logger
        self._lockout = timedelta(minutes=settings.lockout_minutes)

    def _now(self) -> datetime:
        return self.tokens.now()

    @staticmethod
    def _policy_failure(errors: list[str]) -> Result:
        return Result.failure(
            ErrorKind.VALIDATION_FAILED,
            "password does not meet the strength requirements",
            {"errors": errors},
        )

    async def _deliver(
        self, email: str, raw_token: str, purpose: DeliveryPurpose, expires_at: datetime
    ) -> bool:
        """Hand a one-time token to the delivery channel off the event loop.

        Channel failures are logged and reported as ``False``; the stored
        digest stays valid and the caller may request a new token.
        """
        try:
            await asyncio.to_thread(self.delivery.deliver, email, raw_token, purpose, expires_at)
        except Exception as exc:
            self.logger.warning(
                "token_delivery_failed",
                purpose=purpose.value,
                email_hash=hash_identifier(email),
                error=str(exc),
            )
            return False
        return True

    async def login(
        self,
        email: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        source_address: Optional[str] = None,
    ) -> Result[LoginResult]:
        email = normalize_email(email)
        email_hash = hash_identifier(email)
        now = self._now()

        credential = self.store.get_credential(email)
        if credential is None:
            await asyncio.to_thread(self.passwords.verify_against_dummy, password)
            self.logger.info("login_failed", email_hash=email_hash, reason="unknown_email")
            return Result.failure(ErrorKind.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE)

        if is_locked(credential, now):
            self.logger.warning("login_rejected_locked", email_hash=email_hash)
            return self._locked(credential.account_locked_until)

        password_hash = self.store.get_password_hash(email)
        matched = await asyncio.to_thread(self.passwords.verify, password_hash, password)
        if not matched:
            outcome = self.store.update_credential(
                email,
                lambda c: record_failed_login(
                    c, now, max_attempts=self.settings.max_failed_logins, lockout=self._lockout
                ),
            )
            if outcome == LockoutOutcome.ALREADY_LOCKED:
                return self._locked(None)
            if outcome == LockoutOutcome.LOCKED_NOW:
                self.logger.warning(
                    "account_locked",
                    email_hash=email_hash,
                    lockout_minutes=self.settings.lockout_minutes,
                )
            else:
                self.logger.info("login_failed", email_hash=email_hash, reason="bad_password")
            return Result.failure(ErrorKind.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE)

        outcome = self.store.update_credential(email, lambda c: record_successful_login(c, now))
        if outcome is None:
            return Result.failure(ErrorKind.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE)
        if outcome == LockoutOutcome.ALREADY_LOCKED:
            return self._locked(None)

        profile = self.store.get_profile(credential.profile_id)
        if profile is None or not profile.is_active:
            self.logger.warning("login_rejected_inactive", email_hash=email_hash)
            return Result.failure(ErrorKind.ACCOUNT_INACTIVE, "account is inactive")

        pair = self.tokens.issue_pair(
            TokenClaims(
                user_id=credential.id,
                email=credential.email,
                staff_id=profile.staff_id,
                roles=profile.role_names,
            )
        )
        record = RefreshTokenRecord(
            token_digest=digest_token(pair.refresh_token),
            expires_at=pair.refresh_expires_at,
            created_at=now,
            device_info=device_info,
            source_address=source_address,
        )
        evicted = self.store.update_credential(
            email,
            lambda c: add_refresh_token(c, record, now, max_tokens=self.settings.max_refresh_tokens),
        )
        if evicted:
            self.logger.info("refresh_tokens_evicted", email_hash=email_hash, count=evicted)
        self.store.touch_last_login(profile.id, now)
        self.logger.info("login_succeeded", email_hash=email_hash, profile_id=profile.id)
        return Result.success(
            LoginResult(
                access_token=pair.access_token,
                refresh_token=pair.refresh_token,
                access_expires_at=pair.access_expires_at,
                refresh_expires_at=pair.refresh_expires_at,
                profile=replace(profile, last_login=now),
            )
        )

    @staticmethod
    def _locked(until: Optional[datetime]) -> Result:
        detail = {"locked_until": until.isoformat()} if until else None
        return Result.failure(
            ErrorKind.ACCOUNT_LOCKED,
            "account is temporarily locked after repeated failed logins",
            detail,
        )

    async def refresh(self, refresh_token: str) -> Result[RefreshResult]:
        """Issue a new access token for a live refresh token; the refresh token is kept."""
        try:
            claims = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=type(exc).__name__)
            return Result.failure(ErrorKind.INVALID_TOKEN, "invalid or expired refresh token")

        now = self._now()
        credential = self.store.get_credential(claims.email)
        if credential is None or credential.id != claims.user_id:
            return Result.failure(ErrorKind.INVALID_TOKEN, "invalid or expired refresh token")
        if find_refresh_token(credential, digest_token(refresh_token), now) is None:
            self.logger.info("refresh_rejected", reason="revoked", email_hash=hash_identifier(claims.email))
            return Result.failure(ErrorKind.INVALID_TOKEN, "invalid or expired refresh token")

        profile = self.store.get_profile(credential.profile_id)
        if profile is None or not profile.is_active:
            return Result.failure(ErrorKind.ACCOUNT_INACTIVE, "account is inactive")

        access_token = self.tokens.issue_access_token(
            TokenClaims(
                user_id=credential.id,
                email=credential.email,
                staff_id=profile.staff_id,
                roles=profile.role_names,
            )
        )
        return Result.success(
            RefreshResult(
                access_token=access_token,
                access_expires_at=now + self.tokens.ttl(TokenKind.ACCESS),
            )
        )

    async def logout(self, refresh_token: str) -> Result[None]:
        """Drop the session for ``refresh_token`` if there is one.

        Always succeeds and never reveals whether a session existed.
        """
        try:
            claims = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        except TokenError:
            return Result.success(None)
        digest = digest_token(refresh_token)
        removed = self.store.update_credential(claims.email, lambda c: remove_refresh_token(c, digest))
        if removed:
            self.logger.info("logout", email_hash=hash_identifier(claims.email))
        return Result.success(None)

    async def logout_all(self, email: str) -> Result[int]:
        email = normalize_email(email)
        removed = self.store.update_credential(email, remove_all_refresh_tokens)
        if removed is None:
            return Result.failure(ErrorKind.NOT_FOUND, "account not found")
        self.logger.info("logout_all", email_hash=hash_identifier(email), sessions=removed)
        return Result.success(removed)

    async def change_password(
        self, email: str, current_password: str, new_password: str
    ) -> Result[None]:
        email = normalize_email(email)
        password_hash = self.store.get_password_hash(email)
        if password_hash is None:
            return Result.failure(ErrorKind.NOT_FOUND, "account not found")
        matched = await asyncio.to_thread(self.passwords.verify, password_hash, current_password)
        if not matched:
            self.logger.info("password_change_rejected", email_hash=hash_identifier(email))
            return Result.failure(ErrorKind.INVALID_CREDENTIALS, "current password is incorrect")
        errors = validate_password_strength(new_password)
        if errors:
            return self._policy_failure(errors)
        new_hash = await asyncio.to_thread(self.passwords.hash, new_password)
        if not self.store.set_password(email, new_hash, self._now()):
            return Result.failure(ErrorKind.NOT_FOUND, "account not found")
        self.logger.info("password_changed", email_hash=hash_identifier(email))
        return Result.success(None)

    async def forgot_password(self, email: str) -> Result[None]:
        """Start a password reset; the outcome is identical for unknown emails."""
        email = normalize_email(email)
        email_hash = hash_identifier(email)
        if self.store.get_credential(email) is None:
            self.logger.info("password_reset_unknown_email", email_hash=email_hash)
            return Result.success(None)

        now = self._now()
        raw_token, token_digest = generate_one_time_token()
        expires_at = now + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        record = PasswordResetRecord(token_digest=token_digest, expires_at=expires_at, created_at=now)
        self.store.update_credential(email, lambda c: c.password_resets.append(record))
        await self._deliver(email, raw_token, DeliveryPurpose.PASSWORD_RESET, expires_at)
        self.logger.info("password_reset_requested", email_hash=email_hash)
        return Result.success(None)

    async def reset_password(self, token: str, new_password: str) -> Result[None]:
        errors = validate_password_strength(new_password)
        if errors:
            return self._policy_failure(errors)
        now = self._now()
        email = self.store.consume_password_reset(digest_token(token), now)
        if email is None:
            self.logger.warning("password_reset_invalid_token")
            return Result.failure(
                ErrorKind.INVALID_OR_EXPIRED_TOKEN, "invalid or expired password reset token"
            )
        new_hash = await asyncio.to_thread(self.passwords.hash, new_password)
        if not self.store.set_password(email, new_hash, now):
            self.logger.warning("password_reset_user_missing", email_hash=hash_identifier(email))
            return Result.failure(
                ErrorKind.INVALID_OR_EXPIRED_TOKEN, "invalid or expired password reset token"
            )
        self.logger.info("password_reset_completed", email_hash=hash_identifier(email))
        return Result.success(None)

    async def request_email_verification(self, email: str) -> Result[None]:
        email = normalize_email(email)
        now = self._now()
        raw_token, token_digest = generate_one_time_token()
        expires_at = now + timedelta(hours=self.settings.email_verification_ttl_hours)

        def _issue(credential: Credential) -> bool:
            if credential.is_email_verified:
                return False
            credential.email_verification_digest = token_digest
            credential.email_verification_expires_at = expires_at
            return True

        issued = self.store.update_credential(email, _issue)
        if issued is None:
            return Result.failure(ErrorKind.NOT_FOUND, "account not found")
        if not issued:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "email is already verified")
        await self._deliver(email, raw_token, DeliveryPurpose.EMAIL_VERIFICATION, expires_at)
        self.logger.info("email_verification_requested", email_hash=hash_identifier(email))
        return Result.success(None)

    async def verify_email(self, token: str) -> Result[None]:
        email = self.store.consume_email_verification(digest_token(token), self._now())
        if email is None:
            self.logger.warning("email_verification_invalid_token")
            return Result.failure(
                ErrorKind.INVALID_OR_EXPIRED_TOKEN, "invalid or expired verification token"
            )
        self.logger.info("email_verified", email_hash=hash_identifier(email))
        return Result.success(None)

    async def provision_account(
        self,
        email: str,
        password: Optional[str],
        staff_id: str,
        display_name: str,
        *,
        designation: Optional[str] = None,
        role_ids: Iterable[str] = (),
        custom_permissions: Iterable[PermissionOverride] = (),
    ) -> Result[ProvisionedAccount]:
        """Create a staff profile and its credential.

        Without ``password`` a random policy-compliant one is generated and
        returned once in ``ProvisionedAccount.generated_password``.
        """
        email = normalize_email(email)
        generated: Optional[str] = None
        if password is None:
            password = generated = generate_random_password()
        else:
            errors = validate_password_strength(password)
            if errors:
                return self._policy_failure(errors)
        if self.store.get_credential(email) is not None:
            return Result.failure(ErrorKind.DUPLICATE_KEY, "email already exists", {"field": "email"})

        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        try:
            credential, profile = self.store.create_account(
                email,
                password_hash,
                staff_id,
                display_name,
                designation=designation,
                role_ids=role_ids,
                custom_permissions=custom_permissions,
            )
        except MissingReference as exc:
            return Result.failure(ErrorKind.NOT_FOUND, exc.message, exc.detail)
        except ConstraintViolation as exc:
            return Result.failure(ErrorKind.DUPLICATE_KEY, exc.message, exc.detail)

        resolved = self.store.get_profile(profile.id)
        if resolved is None:
            return Result.failure(ErrorKind.NOT_FOUND, "profile not found")
        self.logger.info(
            "account_provisioned",
            email_hash=hash_identifier(email),
            profile_id=profile.id,
            password_generated=generated is not None,
        )
        return Result.success(
            ProvisionedAccount(credential=credential, profile=resolved, generated_password=generated)
        )
