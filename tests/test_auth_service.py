"""Tests for the credential lifecycle orchestrated by AuthService."""

from datetime import timedelta

from hrmsauth.service.delivery import DeliveryPurpose, LoggingTokenDelivery
from hrmsauth.service.passwords import digest_token
from hrmsauth.service.results import ErrorKind
from hrmsauth.service.tokens import TokenKind
from hrmsauth.storage.errors import ConstraintViolation
from hrmsauth.storage.models import PermissionOverride

STRONG_PASSWORD = "Str0ng!Pass"
OTHER_STRONG_PASSWORD = "An0ther#Secret"

MANAGER = "manager@example.com"


class TestLogin:
    async def test_successful_login_returns_tokens_and_profile(self, auth_service, manager, tokens, clock):
        result = await auth_service.login(MANAGER, STRONG_PASSWORD, device_info="laptop")

        assert result.ok
        login = result.value
        claims = tokens.verify(login.access_token, TokenKind.ACCESS)
        assert claims.email == MANAGER
        assert claims.staff_id == "EMP-001"
        assert claims.roles == ["HR Manager"]
        assert login.profile.last_login == clock()
        assert login.token_type == "bearer"

    async def test_login_stores_refresh_digest_not_raw_token(self, auth_service, store, manager):
        login = (await auth_service.login(MANAGER, STRONG_PASSWORD, source_address="10.1.1.1")).value
        records = store.get_credential(MANAGER).refresh_tokens

        assert len(records) == 1
        assert records[0].token_digest == digest_token(login.refresh_token)
        assert records[0].token_digest != login.refresh_token
        assert records[0].source_address == "10.1.1.1"

    async def test_email_lookup_is_case_insensitive(self, auth_service, manager):
        assert (await auth_service.login("  Manager@Example.com", STRONG_PASSWORD)).ok

    async def test_unknown_email_and_wrong_password_are_indistinguishable(self, auth_service, manager):
        unknown = await auth_service.login("nobody@example.com", STRONG_PASSWORD)
        wrong = await auth_service.login(MANAGER, "Wr0ng!Password")

        assert unknown.error is wrong.error is ErrorKind.INVALID_CREDENTIALS
        assert unknown.message == wrong.message

    async def test_lockout_after_five_failures(self, auth_service, store, manager, clock):
        results = [await auth_service.login(MANAGER, "Wr0ng!Password") for _ in range(5)]
        assert all(r.error is ErrorKind.INVALID_CREDENTIALS for r in results)

        credential = store.get_credential(MANAGER)
        assert credential.failed_login_attempts == 5
        assert credential.account_locked_until == clock() + timedelta(minutes=30)

        locked = await auth_service.login(MANAGER, STRONG_PASSWORD)
        assert locked.error is ErrorKind.ACCOUNT_LOCKED

    async def test_lock_expires_after_thirty_minutes(self, auth_service, store, manager, clock):
        for _ in range(5):
            await auth_service.login(MANAGER, "Wr0ng!Password")
        clock.advance(minutes=29, seconds=59)
        assert (await auth_service.login(MANAGER, STRONG_PASSWORD)).error is ErrorKind.ACCOUNT_LOCKED

        clock.advance(seconds=1)
        assert (await auth_service.login(MANAGER, STRONG_PASSWORD)).ok
        credential = store.get_credential(MANAGER)
        assert credential.failed_login_attempts == 0
        assert credential.account_locked_until is None

    async def test_single_miss_after_lock_expiry_relocks(self, auth_service, store, manager, clock):
        for _ in range(5):
            await auth_service.login(MANAGER, "Wr0ng!Password")
        clock.advance(minutes=30)

        miss = await auth_service.login(MANAGER, "Wr0ng!Password")
        assert miss.error is ErrorKind.INVALID_CREDENTIALS
        credential = store.get_credential(MANAGER)
        assert credential.failed_login_attempts == 6
        assert credential.account_locked_until == clock() + timedelta(minutes=30)
        assert (await auth_service.login(MANAGER, STRONG_PASSWORD)).error is ErrorKind.ACCOUNT_LOCKED

    async def test_success_resets_failure_counter(self, auth_service, store, manager):
        for _ in range(4):
            await auth_service.login(MANAGER, "Wr0ng!Password")
        assert (await auth_service.login(MANAGER, STRONG_PASSWORD)).ok
        assert store.get_credential(MANAGER).failed_login_attempts == 0

    async def test_inactive_profile_cannot_log_in(self, auth_service, store, manager):
        store.set_profile_active(manager.profile.id, False)
        result = await auth_service.login(MANAGER, STRONG_PASSWORD)
        assert result.error is ErrorKind.ACCOUNT_INACTIVE

    async def test_refresh_ring_keeps_five_newest_sessions(self, auth_service, store, manager, clock):
        logins = []
        for _ in range(6):
            logins.append((await auth_service.login(MANAGER, STRONG_PASSWORD)).value)
            clock.advance(seconds=1)

        assert len(store.get_credential(MANAGER).refresh_tokens) == 5
        evicted = await auth_service.refresh(logins[0].refresh_token)
        newest = await auth_service.refresh(logins[-1].refresh_token)
        assert evicted.error is ErrorKind.INVALID_TOKEN
        assert newest.ok


class TestRefreshAndLogout:
    async def test_refresh_issues_new_access_token_only(self, auth_service, manager, tokens, clock):
        login = (await auth_service.login(MANAGER, STRONG_PASSWORD)).value
        clock.advance(minutes=20)

        result = await auth_service.refresh(login.refresh_token)
        assert result.ok
        assert result.value.access_token != login.access_token
        assert result.value.access_expires_at == clock() + timedelta(minutes=15)
        assert tokens.verify(result.value.access_token, TokenKind.ACCESS).email == MANAGER

    async def test_refresh_rejects_access_token(self, auth_service, manager):
        login = (await auth_service.login(MANAGER, STRONG_PASSWORD)).value
        result = await auth_service.refresh(login.access_token)
        assert result.error is ErrorKind.INVALID_TOKEN

    async def test_refresh_rejects_expired_token(self, auth_service, manager, clock, settings):
        login = (await auth_service.login(MANAGER, STRONG_PASSWORD)).value
        clock.advance(minutes=settings.refresh_token_ttl_minutes + 1)
        assert (await auth_service.refresh(login.refresh_token)).error is ErrorKind.INVALID_TOKEN

    async def test_refresh_rejected_when_profile_disabled(self, auth_service, store, manager):
        login = (await auth_service.login(MANAGER, STRONG_PASSWORD)).value
        store.set_profile_active(manager.profile.id, False)
        assert (await auth_service.refresh(login.refresh_token)).error is ErrorKind.ACCOUNT_INACTIVE

    async def test_logout_revokes_only_that_session(self, auth_service, manager):
        first = (await auth_service.login(MANAGER, STRONG_PASSWORD)).value
        second = (await auth_service.login(MANAGER, STRONG_PASSWORD)).value

        assert (await auth_service.logout(first.refresh_token)).ok
        assert (await auth_service.refresh(first.refresh_token)).error is ErrorKind.INVALID_TOKEN
        assert (await auth_service.refresh(second.refresh_token)).ok

    async def test_logout_is_idempotent_and_silent(self, auth_service, manager):
        login = (await auth_service.login(MANAGER, STRONG_PASSWORD)).value
        assert (await auth_service.logout(login.refresh_token)).ok
        assert (await auth_service.logout(login.refresh_token)).ok
        assert (await auth_service.logout("garbage")).ok

    async def test_logout_all_revokes_every_session(self, auth_service, manager):
        logins = [(await auth_service.login(MANAGER, STRONG_PASSWORD)).value for _ in range(3)]
        result = await auth_service.logout_all(MANAGER)

        assert result.value == 3
        for login in logins:
            assert (await auth_service.refresh(login.refresh_token)).error is ErrorKind.INVALID_TOKEN
        assert (await auth_service.logout_all("nobody@example.com")).error is ErrorKind.NOT_FOUND


class TestChangePassword:
    async def test_change_password_revokes_sessions(self, auth_service, manager):
        login = (await auth_service.login(MANAGER, STRONG_PASSWORD)).value
        result = await auth_service.change_password(MANAGER, STRONG_PASSWORD, OTHER_STRONG_PASSWORD)

        assert result.ok
        assert (await auth_service.refresh(login.refresh_token)).error is ErrorKind.INVALID_TOKEN
        assert (await auth_service.login(MANAGER, STRONG_PASSWORD)).error is ErrorKind.INVALID_CREDENTIALS
        assert (await auth_service.login(MANAGER, OTHER_STRONG_PASSWORD)).ok

    async def test_wrong_current_password(self, auth_service, manager):
        result = await auth_service.change_password(MANAGER, "Wr0ng!Password", OTHER_STRONG_PASSWORD)
        assert result.error is ErrorKind.INVALID_CREDENTIALS

    async def test_current_password_checked_before_policy(self, auth_service, manager):
        result = await auth_service.change_password(MANAGER, "Wr0ng!Password", "weak")
        assert result.error is ErrorKind.INVALID_CREDENTIALS
        assert result.detail is None or "errors" not in result.detail

    async def test_weak_new_password_lists_violations(self, auth_service, manager):
        result = await auth_service.change_password(MANAGER, STRONG_PASSWORD, "weak")
        assert result.error is ErrorKind.VALIDATION_FAILED
        assert len(result.detail["errors"]) >= 3

    async def test_unknown_account(self, auth_service):
        result = await auth_service.change_password("nobody@example.com", STRONG_PASSWORD, OTHER_STRONG_PASSWORD)
        assert result.error is ErrorKind.NOT_FOUND


class TestPasswordReset:
    async def test_full_reset_flow(self, auth_service, store, outbox, manager):
        login = (await auth_service.login(MANAGER, STRONG_PASSWORD)).value
        assert (await auth_service.forgot_password(MANAGER)).ok

        token = outbox.latest(MANAGER, DeliveryPurpose.PASSWORD_RESET)
        assert token
        stored = store.get_credential(MANAGER).password_resets
        assert [r.token_digest for r in stored] == [digest_token(token)]

        assert (await auth_service.reset_password(token, OTHER_STRONG_PASSWORD)).ok
        assert (await auth_service.refresh(login.refresh_token)).error is ErrorKind.INVALID_TOKEN
        assert (await auth_service.login(MANAGER, OTHER_STRONG_PASSWORD)).ok

    async def test_reset_token_is_single_use(self, auth_service, outbox, manager):
        await auth_service.forgot_password(MANAGER)
        token = outbox.latest(MANAGER, DeliveryPurpose.PASSWORD_RESET)

        assert (await auth_service.reset_password(token, OTHER_STRONG_PASSWORD)).ok
        replay = await auth_service.reset_password(token, "Th1rd#Password")
        assert replay.error is ErrorKind.INVALID_OR_EXPIRED_TOKEN

    async def test_reset_token_expires_after_an_hour(self, auth_service, outbox, manager, clock):
        await auth_service.forgot_password(MANAGER)
        token = outbox.latest(MANAGER, DeliveryPurpose.PASSWORD_RESET)
        clock.advance(hours=1)
        result = await auth_service.reset_password(token, OTHER_STRONG_PASSWORD)
        assert result.error is ErrorKind.INVALID_OR_EXPIRED_TOKEN

    async def test_weak_password_does_not_consume_token(self, auth_service, outbox, manager):
        await auth_service.forgot_password(MANAGER)
        token = outbox.latest(MANAGER, DeliveryPurpose.PASSWORD_RESET)

        assert (await auth_service.reset_password(token, "weak")).error is ErrorKind.VALIDATION_FAILED
        assert (await auth_service.reset_password(token, OTHER_STRONG_PASSWORD)).ok

    async def test_forgot_password_for_unknown_email_looks_the_same(self, auth_service, outbox):
        result = await auth_service.forgot_password("nobody@example.com")
        assert result.ok
        assert result.value is None
        assert outbox.messages == []

    async def test_delivery_failure_is_not_reported_to_caller(self, store, tokens, settings, passwords, manager):
        from hrmsauth.service.auth import AuthService

        class BrokenDelivery:
            def deliver(self, *args, **kwargs):
                raise ConnectionError("smtp down")

        service = AuthService(store, tokens, settings, passwords=passwords, delivery=BrokenDelivery())
        assert (await service.forgot_password(MANAGER)).ok
        assert len(store.get_credential(MANAGER).password_resets) == 1

    async def test_reset_does_not_clear_lockout(self, auth_service, store, outbox, manager):
        for _ in range(5):
            await auth_service.login(MANAGER, "Wr0ng!Password")
        await auth_service.forgot_password(MANAGER)
        token = outbox.latest(MANAGER, DeliveryPurpose.PASSWORD_RESET)

        assert (await auth_service.reset_password(token, OTHER_STRONG_PASSWORD)).ok
        result = await auth_service.login(MANAGER, OTHER_STRONG_PASSWORD)
        assert result.error is ErrorKind.ACCOUNT_LOCKED


class TestEmailVerification:
    async def test_request_and_verify(self, auth_service, store, outbox, manager):
        assert (await auth_service.request_email_verification(MANAGER)).ok
        token = outbox.latest(MANAGER, DeliveryPurpose.EMAIL_VERIFICATION)

        assert (await auth_service.verify_email(token)).ok
        assert store.get_credential(MANAGER).is_email_verified
        assert (await auth_service.verify_email(token)).error is ErrorKind.INVALID_OR_EXPIRED_TOKEN

    async def test_verification_token_expires(self, auth_service, outbox, manager, clock):
        await auth_service.request_email_verification(MANAGER)
        token = outbox.latest(MANAGER, DeliveryPurpose.EMAIL_VERIFICATION)
        clock.advance(hours=24)
        assert (await auth_service.verify_email(token)).error is ErrorKind.INVALID_OR_EXPIRED_TOKEN

    async def test_new_request_supersedes_old_token(self, auth_service, outbox, manager):
        await auth_service.request_email_verification(MANAGER)
        first = outbox.latest(MANAGER, DeliveryPurpose.EMAIL_VERIFICATION)
        await auth_service.request_email_verification(MANAGER)
        second = outbox.latest(MANAGER, DeliveryPurpose.EMAIL_VERIFICATION)

        assert (await auth_service.verify_email(first)).error is ErrorKind.INVALID_OR_EXPIRED_TOKEN
        assert (await auth_service.verify_email(second)).ok

    async def test_already_verified(self, auth_service, outbox, manager):
        await auth_service.request_email_verification(MANAGER)
        await auth_service.verify_email(outbox.latest(MANAGER, DeliveryPurpose.EMAIL_VERIFICATION))
        result = await auth_service.request_email_verification(MANAGER)
        assert result.error is ErrorKind.VALIDATION_FAILED

    async def test_unknown_account(self, auth_service):
        result = await auth_service.request_email_verification("nobody@example.com")
        assert result.error is ErrorKind.NOT_FOUND

    async def test_channel_failure_does_not_escape(self, store, tokens, settings, passwords, manager):
        from hrmsauth.service.auth import AuthService

        class BrokenDelivery:
            def deliver(self, *args, **kwargs):
                raise ConnectionError("smtp down")

        service = AuthService(store, tokens, settings, passwords=passwords, delivery=BrokenDelivery())
        assert (await service.request_email_verification(MANAGER)).ok
        assert store.get_credential(MANAGER).email_verification_digest is not None


class TestProvisioning:
    async def test_generated_password_is_returned_once_and_works(self, auth_service, catalogue):
        result = await auth_service.provision_account(
            "new@example.com", None, "EMP-500", "New Hire", role_ids=[catalogue.employee_role.id]
        )
        assert result.ok
        generated = result.value.generated_password
        assert generated
        assert result.value.profile.role_names == ["Employee"]
        assert (await auth_service.login("new@example.com", generated)).ok

    async def test_duplicate_email(self, auth_service, manager):
        result = await auth_service.provision_account(MANAGER, STRONG_PASSWORD, "EMP-999", "Dup")
        assert result.error is ErrorKind.DUPLICATE_KEY

    async def test_duplicate_staff_id(self, auth_service, manager):
        result = await auth_service.provision_account("x@example.com", STRONG_PASSWORD, "EMP-001", "Dup")
        assert result.error is ErrorKind.DUPLICATE_KEY

    async def test_failed_credential_write_leaves_no_profile(self, auth_service, store, monkeypatch):
        real_create_credential = store.create_credential

        def _lost_race(*args, **kwargs):
            raise ConstraintViolation("email already exists", {"field": "email"})

        monkeypatch.setattr(store, "create_credential", _lost_race)
        first = await auth_service.provision_account("late@example.com", STRONG_PASSWORD, "EMP-9", "Late")
        assert first.error is ErrorKind.DUPLICATE_KEY
        assert store.get_profile_by_staff_id("EMP-9") is None

        monkeypatch.setattr(store, "create_credential", real_create_credential)
        retry = await auth_service.provision_account("late@example.com", STRONG_PASSWORD, "EMP-9", "Late")
        assert retry.ok
        assert retry.value.credential.profile_id == retry.value.profile.id

    async def test_unknown_role(self, auth_service):
        result = await auth_service.provision_account(
            "x@example.com", STRONG_PASSWORD, "EMP-7", "X", role_ids=["missing"]
        )
        assert result.error is ErrorKind.NOT_FOUND

    async def test_weak_password_rejected(self, auth_service):
        result = await auth_service.provision_account("x@example.com", "weak", "EMP-7", "X")
        assert result.error is ErrorKind.VALIDATION_FAILED

    async def test_initial_overrides_are_applied(self, auth_service, catalogue):
        result = await auth_service.provision_account(
            "x@example.com",
            STRONG_PASSWORD,
            "EMP-7",
            "X",
            custom_permissions=[
                PermissionOverride(catalogue.staff_permission.id, frozenset(), is_revoked=True)
            ],
        )
        assert result.value.profile.overrides[0].is_revoked


def test_logging_delivery_does_not_raise(clock):
    LoggingTokenDelivery().deliver("a@example.com", "raw", DeliveryPurpose.PASSWORD_RESET, clock())
