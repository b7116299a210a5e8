"""Tests for bearer authentication and role/permission guards."""

import asyncio

import pytest

from hrmsauth.service.gate import AccessGate
from hrmsauth.service.results import ErrorKind
from hrmsauth.service.tokens import TokenClaims
from hrmsauth.storage.models import Action, PermissionOverride, Resource

PASSWORD = "Str0ng!Pass"


@pytest.fixture
def gate(store, tokens):
    return AccessGate(store, tokens)


def _login(auth_service, email):
    result = asyncio.run(auth_service.login(email, PASSWORD))
    assert result.ok
    return result.value


@pytest.fixture
def manager_login(auth_service, manager):
    return _login(auth_service, "manager@example.com")


@pytest.fixture
def employee_login(auth_service, employee):
    return _login(auth_service, "employee@example.com")


class TestAuthenticate:
    async def test_valid_bearer_yields_context(self, gate, manager_login):
        result = await gate.authenticate(f"Bearer {manager_login.access_token}")
        assert result.ok
        assert result.value.credential.email == "manager@example.com"
        assert result.value.profile.role_names == ["HR Manager"]

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer   ", "Basic abc", "Token xyz"])
    async def test_missing_or_malformed_header(self, gate, header):
        result = await gate.authenticate(header)
        assert result.error is ErrorKind.UNAUTHENTICATED
        assert result.message == "authentication required"

    async def test_expired_access_token(self, gate, manager_login, clock):
        clock.advance(minutes=16)
        result = await gate.authenticate(f"Bearer {manager_login.access_token}")
        assert result.error is ErrorKind.UNAUTHENTICATED
        assert result.message == "access token has expired"

    async def test_refresh_token_is_not_a_bearer(self, gate, manager_login):
        result = await gate.authenticate(f"Bearer {manager_login.refresh_token}")
        assert result.error is ErrorKind.UNAUTHENTICATED
        assert result.message == "access token is invalid"

    async def test_token_for_unknown_credential(self, gate, tokens, catalogue):
        token = tokens.issue_access_token(
            TokenClaims(user_id="ghost", email="ghost@example.com", staff_id="X")
        )
        result = await gate.authenticate(f"Bearer {token}")
        assert result.error is ErrorKind.UNAUTHENTICATED

    async def test_locked_account_is_rejected(self, gate, store, manager_login, clock):
        store.update_credential(
            "manager@example.com",
            lambda c: setattr(c, "account_locked_until", clock().replace(year=2027)),
        )
        result = await gate.authenticate(f"Bearer {manager_login.access_token}")
        assert result.error is ErrorKind.ACCOUNT_LOCKED

    async def test_deactivated_profile_is_forbidden(self, gate, store, manager_login):
        store.set_profile_active(manager_login.profile.id, False)
        result = await gate.authenticate(f"Bearer {manager_login.access_token}")
        assert result.error is ErrorKind.FORBIDDEN

    async def test_scheme_is_case_insensitive(self, gate, manager_login):
        assert (await gate.authenticate(f"bearer {manager_login.access_token}")).ok


class TestAuthorize:
    async def test_role_intersection(self, gate, manager_login):
        context = (await gate.authenticate(f"Bearer {manager_login.access_token}")).value
        assert gate.authorize(context, "Administrator", "HR Manager").ok

        denied = gate.authorize(context, "Administrator")
        assert denied.error is ErrorKind.FORBIDDEN
        assert denied.detail == {"required_roles": ["Administrator"]}


class TestRequirePermission:
    async def test_granted_by_role(self, gate, manager_login):
        context = (await gate.authenticate(f"Bearer {manager_login.access_token}")).value
        assert gate.require_permission(context, Resource.STAFF, Action.UPDATE).ok

    async def test_denied_with_resource_and_action(self, gate, employee_login):
        context = (await gate.authenticate(f"Bearer {employee_login.access_token}")).value
        result = gate.require_permission(context, "staff", "read")
        assert result.error is ErrorKind.FORBIDDEN
        assert result.detail == {"resource": "staff", "action": "read"}

    async def test_revocation_applies_to_already_issued_token(self, gate, store, manager_login, catalogue):
        context = (await gate.authenticate(f"Bearer {manager_login.access_token}")).value
        store.set_custom_permission(
            context.profile.id,
            PermissionOverride(catalogue.staff_permission.id, frozenset(), is_revoked=True),
        )
        result = gate.require_permission(context, Resource.STAFF, Action.READ)
        assert result.error is ErrorKind.FORBIDDEN

    async def test_new_grant_applies_without_relogin(self, gate, store, employee_login, catalogue):
        context = (await gate.authenticate(f"Bearer {employee_login.access_token}")).value
        assert not gate.require_permission(context, Resource.PAYROLL, Action.EXPORT).ok

        store.set_custom_permission(
            context.profile.id,
            PermissionOverride(catalogue.payroll_permission.id, frozenset({Action.EXPORT})),
        )
        granted = gate.require_permission(context, Resource.PAYROLL, Action.EXPORT)
        assert granted.ok
        assert granted.value.profile.overrides
