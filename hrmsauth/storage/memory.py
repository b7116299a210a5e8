from __future__ import annotations

import copy
import hmac
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from hrmsauth.logging import get_logger
from hrmsauth.storage.errors import ConstraintViolation, MissingReference
from hrmsauth.storage.models import (
    Action,
    Credential,
    Permission,
    PermissionOverride,
    Profile,
    ResolvedGrant,
    ResolvedOverride,
    ResolvedProfile,
    ResolvedRole,
    Resource,
    Role,
    RoleLevel,
    RolePermission,
    new_id,
    resolve_permission_record,
    utcnow,
)

T = TypeVar("T")


def normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """Dict-backed store for tests and single-process development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.permissions: Dict[str, Permission] = {}
        self.roles: Dict[str, Role] = {}
        self.profiles: Dict[str, Profile] = {}
        self.credentials: Dict[str, Credential] = {}
        self.password_hashes: Dict[str, str] = {}
        # RLock so mutate callbacks may read back through the store
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # -- permissions & roles -------------------------------------------------

    def create_permission(
        self,
        name: str,
        resource: Resource | str,
        actions: Iterable[Action | str],
        *,
        description: str = "",
        is_active: bool = True,
    ) -> Permission:
        action_set = frozenset(Action(a) for a in actions)
        if not action_set:
            raise ConstraintViolation("permission requires at least one action", {"field": "actions"})
        with self._data_lock:
            if any(p.name == name for p in self.permissions.values()):
                raise ConstraintViolation("permission name already exists", {"field": "name"})
            permission = Permission(
                id=new_id(),
                name=name,
                description=description,
                resource=Resource(resource),
                actions=action_set,
                is_active=is_active,
            )
            self.permissions[permission.id] = permission
            return copy.deepcopy(permission)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            return copy.deepcopy(permission) if permission else None

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            for permission in self.permissions.values():
                if permission.name == name:
                    return copy.deepcopy(permission)
            return None

    def set_permission_active(self, permission_id: str, is_active: bool) -> None:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            if not permission:
                raise MissingReference("permission not found", {"permission_id": permission_id})
            permission.is_active = is_active

    def create_role(
        self,
        name: str,
        level: RoleLevel | str,
        permissions: Iterable[RolePermission] = (),
        *,
        description: str = "",
        is_active: bool = True,
        is_system_role: bool = False,
    ) -> Role:
        grants = [
            RolePermission(rp.permission_id, frozenset(Action(a) for a in rp.allowed_actions))
            for rp in permissions
        ]
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            seen: set[str] = set()
            for grant in grants:
                if grant.permission_id not in self.permissions:
                    raise MissingReference(
                        "permission not found", {"permission_id": grant.permission_id}
                    )
                if grant.permission_id in seen:
                    raise ConstraintViolation(
                        "permission listed twice in role", {"permission_id": grant.permission_id}
                    )
                if not grant.allowed_actions:
                    raise ConstraintViolation(
                        "role permission requires at least one action",
                        {"permission_id": grant.permission_id},
                    )
                seen.add(grant.permission_id)
            role = Role(
                id=new_id(),
                name=name,
                description=description,
                level=RoleLevel(level),
                permissions=grants,
                is_active=is_active,
                is_system_role=is_system_role,
            )
            self.roles[role.id] = role
            return copy.deepcopy(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return copy.deepcopy(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            for role in self.roles.values():
                if role.name == name:
                    return copy.deepcopy(role)
            return None

    def set_role_active(self, role_id: str, is_active: bool) -> None:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                raise MissingReference("role not found", {"role_id": role_id})
            role.is_active = is_active

    # -- profiles -----------------------------------------------------------

    def _override_resource(self, override: PermissionOverride) -> Resource:
        permission = self.permissions.get(override.permission_id)
        if not permission:
            raise MissingReference("permission not found", {"permission_id": override.permission_id})
        return permission.resource

    def create_profile(
        self,
        staff_id: str,
        display_name: str,
        *,
        designation: Optional[str] = None,
        role_ids: Iterable[str] = (),
        custom_permissions: Iterable[PermissionOverride] = (),
        is_active: bool = True,
    ) -> Profile:
        role_ids = list(dict.fromkeys(role_ids))
        overrides = list(custom_permissions)
        with self._data_lock:
            if any(p.staff_id == staff_id for p in self.profiles.values()):
                raise ConstraintViolation("staff id already exists", {"field": "staff_id"})
            for role_id in role_ids:
                if role_id not in self.roles:
                    raise MissingReference("role not found", {"role_id": role_id})
            resources: set[Resource] = set()
            for override in overrides:
                resource = self._override_resource(override)
                if resource in resources:
                    raise ConstraintViolation(
                        "only one custom permission per resource", {"resource": resource.value}
                    )
                resources.add(resource)
            profile = Profile(
                id=new_id(),
                staff_id=staff_id,
                display_name=display_name,
                designation=designation,
                assigned_role_ids=role_ids,
                custom_permissions=[copy.deepcopy(o) for o in overrides],
                is_active=is_active,
            )
            self.profiles[profile.id] = profile
            return copy.deepcopy(profile)

    def assign_role(self, profile_id: str, role_id: str) -> None:
        with self._data_lock:
            profile = self.profiles.get(profile_id)
            if not profile:
                raise MissingReference("profile not found", {"profile_id": profile_id})
            if role_id not in self.roles:
                raise MissingReference("role not found", {"role_id": role_id})
            if role_id not in profile.assigned_role_ids:
                profile.assigned_role_ids.append(role_id)

    def set_custom_permission(self, profile_id: str, override: PermissionOverride) -> ResolvedProfile:
        """Replace any override on the same resource with ``override``."""
        with self._data_lock:
            profile = self.profiles.get(profile_id)
            if not profile:
                raise MissingReference("profile not found", {"profile_id": profile_id})
            resource = self._override_resource(override)
            profile.custom_permissions = [
                existing
                for existing in profile.custom_permissions
                if self.permissions.get(existing.permission_id) is None
                or self.permissions[existing.permission_id].resource != resource
            ]
            profile.custom_permissions.append(
                PermissionOverride(
                    permission_id=override.permission_id,
                    allowed_actions=frozenset(Action(a) for a in override.allowed_actions),
                    is_revoked=override.is_revoked,
                )
            )
            return self._resolve_profile(profile)

    def remove_custom_permission(self, profile_id: str, permission_id: str) -> bool:
        with self._data_lock:
            profile = self.profiles.get(profile_id)
            if not profile:
                return False
            remaining = [o for o in profile.custom_permissions if o.permission_id != permission_id]
            removed = len(remaining) != len(profile.custom_permissions)
            profile.custom_permissions = remaining
            return removed

    def set_profile_active(self, profile_id: str, is_active: bool) -> None:
        with self._data_lock:
            profile = self.profiles.get(profile_id)
            if not profile:
                raise MissingReference("profile not found", {"profile_id": profile_id})
            profile.is_active = is_active

    def _resolve_profile(self, profile: Profile) -> ResolvedProfile:
        roles: List[ResolvedRole] = []
        for role_id in profile.assigned_role_ids:
            role = self.roles.get(role_id)
            if not role:
                continue
            grants = tuple(
                ResolvedGrant(
                    permission=resolve_permission_record(self.permissions[rp.permission_id]),
                    allowed_actions=frozenset(rp.allowed_actions),
                )
                for rp in role.permissions
                if rp.permission_id in self.permissions
            )
            roles.append(
                ResolvedRole(
                    id=role.id,
                    name=role.name,
                    level=role.level,
                    is_active=role.is_active,
                    grants=grants,
                )
            )
        overrides = tuple(
            ResolvedOverride(
                permission=resolve_permission_record(self.permissions[o.permission_id]),
                allowed_actions=frozenset(o.allowed_actions),
                is_revoked=o.is_revoked,
            )
            for o in profile.custom_permissions
            if o.permission_id in self.permissions
        )
        return ResolvedProfile(
            id=profile.id,
            staff_id=profile.staff_id,
            display_name=profile.display_name,
            designation=profile.designation,
            roles=tuple(roles),
            overrides=overrides,
            is_active=profile.is_active,
            last_login=profile.last_login,
        )

    def get_profile(self, profile_id: str) -> Optional[ResolvedProfile]:
        with self._data_lock:
            profile = self.profiles.get(profile_id)
            return self._resolve_profile(profile) if profile else None

    def get_profile_by_staff_id(self, staff_id: str) -> Optional[ResolvedProfile]:
        with self._data_lock:
            for profile in self.profiles.values():
                if profile.staff_id == staff_id:
                    return self._resolve_profile(profile)
            return None

    def touch_last_login(self, profile_id: str, when: datetime) -> None:
        with self._data_lock:
            profile = self.profiles.get(profile_id)
            if profile:
                profile.last_login = when

    # -- credentials --------------------------------------------------------

    def create_credential(self, email: str, password_hash: str, profile_id: str) -> Credential:
        email = normalize_email(email)
        with self._data_lock:
            if email in self.credentials:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if profile_id not in self.profiles:
                raise MissingReference("profile not found", {"profile_id": profile_id})
            if any(c.profile_id == profile_id for c in self.credentials.values()):
                raise ConstraintViolation("profile already has a credential", {"field": "profile_id"})
            credential = Credential(
                id=new_id(),
                email=email,
                profile_id=profile_id,
                password_changed_at=utcnow(),
            )
            self.credentials[email] = credential
            self.password_hashes[email] = password_hash
            return copy.deepcopy(credential)

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
    ) -> Tuple[Credential, Profile]:
        """Create a profile and its credential together, or neither."""
        email = normalize_email(email)
        with self._data_lock:
            if email in self.credentials:
                raise ConstraintViolation("email already exists", {"field": "email"})
            profile = self.create_profile(
                staff_id,
                display_name,
                designation=designation,
                role_ids=role_ids,
                custom_permissions=custom_permissions,
            )
            try:
                credential = self.create_credential(email, password_hash, profile.id)
            except ConstraintViolation:
                self.profiles.pop(profile.id, None)
                raise
            return credential, profile

    def get_credential(self, email: str) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(normalize_email(email))
            return copy.deepcopy(credential) if credential else None

    def get_password_hash(self, email: str) -> Optional[str]:
        with self._data_lock:
            return self.password_hashes.get(normalize_email(email))

    def update_credential(self, email: str, mutate: Callable[[Credential], T]) -> Optional[T]:
        """Apply ``mutate`` to the stored credential atomically.

        The callback works on a copy that replaces the stored record only if
        it returns normally. Returns the callback's result, or None when no
        credential exists for ``email``.
        """
        email = normalize_email(email)
        with self._data_lock:
            current = self.credentials.get(email)
            if current is None:
                return None
            working = copy.deepcopy(current)
            outcome = mutate(working)
            self.credentials[email] = working
            return outcome

    def set_password(self, email: str, password_hash: str, changed_at: datetime) -> bool:
        """Replace the password hash and revoke every refresh token in one step."""
        email = normalize_email(email)
        with self._data_lock:
            credential = self.credentials.get(email)
            if credential is None:
                return False
            self.password_hashes[email] = password_hash
            credential.password_changed_at = changed_at
            credential.refresh_tokens = []
            return True

    def consume_password_reset(self, token_digest: str, now: datetime) -> Optional[str]:
        """Mark the matching unused, unexpired reset record used; return its email."""
        with self._data_lock:
            for email, credential in self.credentials.items():
                for record in credential.password_resets:
                    if not hmac.compare_digest(record.token_digest, token_digest):
                        continue
                    if record.used or record.expires_at <= now:
                        return None
                    record.used = True
                    return email
            return None

    def consume_email_verification(self, token_digest: str, now: datetime) -> Optional[str]:
        with self._data_lock:
            for email, credential in self.credentials.items():
                digest = credential.email_verification_digest
                if digest is None or not hmac.compare_digest(digest, token_digest):
                    continue
                expires_at = credential.email_verification_expires_at
                if expires_at is None or expires_at <= now:
                    return None
                credential.is_email_verified = True
                credential.email_verification_digest = None
                credential.email_verification_expires_at = None
                return email
            return None
