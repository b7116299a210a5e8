from __future__ import annotations

from typing import Dict, List

from hrmsauth.storage.models import Action, ResolvedProfile, Resource


def role_grants(profile: ResolvedProfile, resource: Resource, action: Action) -> bool:
    """True if any active assigned role grants ``action`` on ``resource``."""
    for role in profile.roles:
        if not role.is_active:
            continue
        for grant in role.grants:
            permission = grant.permission
            if (
                permission.resource == resource
                and action in grant.allowed_actions
                and permission.is_active
            ):
                return True
    return False


def resolve_permission(profile: ResolvedProfile, resource: Resource | str, action: Action | str) -> bool:
    """Decide whether ``profile`` may perform ``action`` on ``resource``.

    Per-user overrides take precedence over role grants: a revoked override
    for the resource denies outright, a non-revoked override listing the
    action grants. Without a deciding override the role grant stands.
    """
    resource = Resource(resource)
    action = Action(action)
    for override in profile.overrides:
        if override.permission.resource != resource:
            continue
        if override.is_revoked:
            return False
        if action in override.allowed_actions:
            return True
    return role_grants(profile, resource, action)


def effective_permissions(profile: ResolvedProfile) -> Dict[str, List[str]]:
    """Every (resource, action) pair the profile is granted, grouped by resource."""
    granted: Dict[str, List[str]] = {}
    for resource in Resource:
        actions = sorted(
            action.value for action in Action if resolve_permission(profile, resource, action)
        )
        if actions:
            granted[resource.value] = actions
    return granted
