from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"
    REJECT = "reject"
    EXPORT = "export"


class Resource(str, Enum):
    STAFF = "staff"
    EMPLOYMENT = "employment"
    PAYROLL = "payroll"
    ATTENDANCE = "attendance"
    LEAVE = "leave"
    PERFORMANCE = "performance"
    RECRUITMENT = "recruitment"
    TRAINING = "training"
    DOCUMENTS = "documents"
    REPORTS = "reports"
    SETTINGS = "settings"


class RoleLevel(str, Enum):
    EXECUTIVE = "executive"
    SENIOR_MANAGEMENT = "senior-management"
    MIDDLE_MANAGEMENT = "middle-management"
    TEAM_LEAD = "team-lead"
    STAFF = "staff"
    ENTRY_LEVEL = "entry-level"


@dataclass
class RefreshTokenRecord:
    token_digest: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    device_info: Optional[str] = None
    source_address: Optional[str] = None


@dataclass
class PasswordResetRecord:
    token_digest: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used: bool = False


@dataclass
class Credential:
    """Authentication aggregate for one account.

    The password hash is deliberately absent; stores expose it only through
    ``get_password_hash``.
    """

    id: str
    email: str
    profile_id: str
    is_email_verified: bool = False
    email_verification_digest: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    refresh_tokens: List[RefreshTokenRecord] = field(default_factory=list)
    password_resets: List[PasswordResetRecord] = field(default_factory=list)
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    name: str
    description: str
    resource: Resource
    actions: FrozenSet[Action]
    is_active: bool = True


@dataclass
class RolePermission:
    permission_id: str
    allowed_actions: FrozenSet[Action]


@dataclass
class Role:
    id: str
    name: str
    description: str
    level: RoleLevel
    permissions: List[RolePermission] = field(default_factory=list)
    is_active: bool = True
    is_system_role: bool = False


@dataclass
class PermissionOverride:
    permission_id: str
    allowed_actions: FrozenSet[Action] = frozenset()
    is_revoked: bool = False


@dataclass
class Profile:
    id: str
    staff_id: str
    display_name: str
    designation: Optional[str] = None
    assigned_role_ids: List[str] = field(default_factory=list)
    custom_permissions: List[PermissionOverride] = field(default_factory=list)
    is_active: bool = True
    last_login: Optional[datetime] = None


# Resolved projections: references expanded into typed records by the store.


@dataclass(frozen=True)
class ResolvedPermission:
    id: str
    name: str
    resource: Resource
    actions: FrozenSet[Action]
    is_active: bool


@dataclass(frozen=True)
class ResolvedGrant:
    permission: ResolvedPermission
    allowed_actions: FrozenSet[Action]


@dataclass(frozen=True)
class ResolvedRole:
    id: str
    name: str
    level: RoleLevel
    is_active: bool
    grants: Tuple[ResolvedGrant, ...] = ()


@dataclass(frozen=True)
class ResolvedOverride:
    permission: ResolvedPermission
    allowed_actions: FrozenSet[Action]
    is_revoked: bool


@dataclass(frozen=True)
class ResolvedProfile:
    id: str
    staff_id: str
    display_name: str
    designation: Optional[str]
    roles: Tuple[ResolvedRole, ...]
    overrides: Tuple[ResolvedOverride, ...]
    is_active: bool
    last_login: Optional[datetime] = None

    @property
    def role_names(self) -> List[str]:
        return [role.name for role in self.roles]


def resolve_permission_record(permission: Permission) -> ResolvedPermission:
    return ResolvedPermission(
        id=permission.id,
        name=permission.name,
        resource=Resource(permission.resource),
        actions=frozenset(Action(a) for a in permission.actions),
        is_active=permission.is_active,
    )
