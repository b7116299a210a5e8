import asyncio
import inspect
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set before any hrmsauth import so Settings.from_env() never needs real secrets
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "access-secret-for-tests-only-0123456789")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "refresh-secret-for-tests-only-9876543210")
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from hrmsauth.app import create_app  # noqa: E402
from hrmsauth.config import Settings  # noqa: E402
from hrmsauth.service.auth import AuthService  # noqa: E402
from hrmsauth.service.delivery import InMemoryTokenOutbox  # noqa: E402
from hrmsauth.service.passwords import PasswordService  # noqa: E402
from hrmsauth.service.rate_limit import InMemoryRateCounter  # noqa: E402
from hrmsauth.service.runtime import Runtime  # noqa: E402
from hrmsauth.service.tokens import TokenService  # noqa: E402
from hrmsauth.storage.memory import MemoryStore  # noqa: E402
from hrmsauth.storage.models import Action, Resource, RoleLevel, RolePermission  # noqa: E402

STRONG_PASSWORD = "Str0ng!Pass"
OTHER_STRONG_PASSWORD = "An0ther#Secret"


class FakeClock:
    """Settable UTC clock shared by the token service and the orchestrator."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeMonotonic:
    def __init__(self) -> None:
        self.current = 1000.0

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@dataclass
class Catalogue:
    staff_permission: object
    payroll_permission: object
    leave_permission: object
    hr_manager_role: object
    employee_role: object


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        test_mode=True,
        use_memory_store=True,
        redis_url=None,
        access_token_secret="access-secret-for-tests-only-0123456789",
        refresh_token_secret="refresh-secret-for-tests-only-9876543210",
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def passwords():
    """argon2id with minimal cost so tests stay fast."""
    return PasswordService(
        PasswordHasher(type=Type.ID, time_cost=1, memory_cost=1024, parallelism=1)
    )


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


@pytest.fixture
def outbox():
    return InMemoryTokenOutbox()


@pytest.fixture
def auth_service(store, tokens, settings, passwords, outbox):
    return AuthService(store, tokens, settings, passwords=passwords, delivery=outbox)


@pytest.fixture
def catalogue(store):
    """Seed permissions and two roles: HR Manager (staff read/update) and Employee (leave)."""
    staff = store.create_permission("staff:manage", Resource.STAFF, list(Action))
    payroll = store.create_permission(
        "payroll:manage", Resource.PAYROLL, [Action.READ, Action.EXPORT, Action.APPROVE]
    )
    leave = store.create_permission("leave:self", Resource.LEAVE, [Action.CREATE, Action.READ])
    hr_manager = store.create_role(
        "HR Manager",
        RoleLevel.MIDDLE_MANAGEMENT,
        [
            RolePermission(staff.id, frozenset({Action.READ, Action.UPDATE})),
            RolePermission(leave.id, frozenset({Action.READ, Action.APPROVE})),
        ],
    )
    employee = store.create_role(
        "Employee",
        RoleLevel.STAFF,
        [RolePermission(leave.id, frozenset({Action.CREATE, Action.READ}))],
    )
    return Catalogue(staff, payroll, leave, hr_manager, employee)


def _provision(auth_service, email, staff_id, role_ids, password=STRONG_PASSWORD):
    result = asyncio.run(
        auth_service.provision_account(
            email, password, staff_id, f"Staff {staff_id}", role_ids=role_ids
        )
    )
    assert result.ok, result.message
    return result.value


@pytest.fixture
def manager(auth_service, catalogue):
    """Provisioned HR manager account."""
    return _provision(auth_service, "manager@example.com", "EMP-001", [catalogue.hr_manager_role.id])


@pytest.fixture
def employee(auth_service, catalogue):
    """Provisioned regular employee account."""
    return _provision(auth_service, "employee@example.com", "EMP-002", [catalogue.employee_role.id])


@pytest.fixture
def runtime(settings, store, clock, outbox, monotonic, passwords):
    return Runtime(
        settings,
        store=store,
        clock=clock,
        delivery=outbox,
        rate_counter=InMemoryRateCounter(now=monotonic),
        passwords=passwords,
    )


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime=runtime))


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
