from __future__ import annotations

from fastapi import APIRouter, Depends, Path

from hrmsauth.api.dependencies import get_runtime, require_permission
from hrmsauth.api.schemas import CustomPermissionRequest, Envelope, PermissionsResponse, ok
from hrmsauth.logging import get_logger
from hrmsauth.service.errors import NotFoundError
from hrmsauth.service.gate import AuthContext
from hrmsauth.service.permissions import effective_permissions
from hrmsauth.service.runtime import Runtime
from hrmsauth.storage.errors import MissingReference
from hrmsauth.storage.models import Action, PermissionOverride, Resource

logger = get_logger(__name__)

router = APIRouter(prefix="/staff-profiles", tags=["access"])


@router.get("/{profile_id}/permissions", response_model=Envelope)
async def get_profile_permissions(
    profile_id: str = Path(..., max_length=128),
    context: AuthContext = Depends(require_permission(Resource.STAFF, Action.READ)),
    runtime: Runtime = Depends(get_runtime),
):
    """Effective permissions of a staff profile.

    Raises:
        403: Caller lacks (staff, read)
        404: Profile does not exist
    """
    profile = runtime.store.get_profile(profile_id)
    if profile is None:
        raise NotFoundError("profile not found", detail={"profile_id": profile_id})
    return ok(PermissionsResponse(profile_id=profile.id, permissions=effective_permissions(profile)))


@router.put("/{profile_id}/custom-permissions", response_model=Envelope)
async def set_custom_permission(
    body: CustomPermissionRequest,
    profile_id: str = Path(..., max_length=128),
    context: AuthContext = Depends(require_permission(Resource.STAFF, Action.UPDATE)),
    runtime: Runtime = Depends(get_runtime),
):
    """Grant or revoke a per-profile permission override.

    An existing override on the same resource is replaced.

    Raises:
        403: Caller lacks (staff, update)
        404: Profile or permission does not exist
    """
    override = PermissionOverride(
        permission_id=body.permission_id,
        allowed_actions=frozenset(body.allowed_actions),
        is_revoked=body.is_revoked,
    )
    try:
        profile = runtime.store.set_custom_permission(profile_id, override)
    except MissingReference as exc:
        raise NotFoundError(exc.message, detail=exc.detail)
    logger.info(
        "custom_permission_set",
        profile_id=profile_id,
        permission_id=body.permission_id,
        is_revoked=body.is_revoked,
        changed_by=context.profile.id,
    )
    return ok(PermissionsResponse(profile_id=profile.id, permissions=effective_permissions(profile)))
