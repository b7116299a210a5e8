from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from hrmsauth.logging import get_logger, hash_identifier
from hrmsauth.service.auth import AuthStore
from hrmsauth.service.credentials import is_locked
from hrmsauth.service.permissions import resolve_permission
from hrmsauth.service.results import ErrorKind, Result
from hrmsauth.service.tokens import TokenClaims, TokenExpired, TokenInvalid, TokenKind, TokenService
from hrmsauth.storage.models import Action, Credential, ResolvedProfile, Resource

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    claims: TokenClaims
    credential: Credential
    profile: ResolvedProfile


class AccessGate:
    """Turns a bearer header into an ``AuthContext`` and answers permission checks."""

    def __init__(self, store: AuthStore, tokens: TokenService) -> None:
        self.store = store
        self.tokens = tokens

    async def authenticate(self, authorization: Optional[str]) -> Result[AuthContext]:
        scheme, _, token = (authorization or "").partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            return Result.failure(ErrorKind.UNAUTHENTICATED, "authentication required")

        try:
            claims = self.tokens.verify(token, TokenKind.ACCESS)
        except TokenExpired:
            return Result.failure(ErrorKind.UNAUTHENTICATED, "access token has expired")
        except TokenInvalid:
            return Result.failure(ErrorKind.UNAUTHENTICATED, "access token is invalid")

        credential = self.store.get_credential(claims.email)
        if credential is None or credential.id != claims.user_id:
            return Result.failure(ErrorKind.UNAUTHENTICATED, "access token is invalid")
        if is_locked(credential, self.tokens.now()):
            return Result.failure(ErrorKind.ACCOUNT_LOCKED, "account is temporarily locked")

        profile = self.store.get_profile(credential.profile_id)
        if profile is None or not profile.is_active:
            logger.warning("access_denied_inactive_profile", email_hash=hash_identifier(claims.email))
            return Result.failure(ErrorKind.FORBIDDEN, "account is inactive")
        return Result.success(AuthContext(claims=claims, credential=credential, profile=profile))

    def authorize(self, context: AuthContext, *required_roles: str) -> Result[AuthContext]:
        """Require at least one of ``required_roles`` among the caller's current roles."""
        if set(required_roles) & set(context.profile.role_names):
            return Result.success(context)
        logger.info(
            "access_denied_role",
            profile_id=context.profile.id,
            required_roles=list(required_roles),
        )
        return Result.failure(
            ErrorKind.FORBIDDEN,
            "insufficient role",
            {"required_roles": list(required_roles)},
        )

    def require_permission(
        self, context: AuthContext, resource: Resource | str, action: Action | str
    ) -> Result[AuthContext]:
        """Check ``(resource, action)`` against a freshly loaded profile.

        The profile is re-read so a revocation applies to tokens already issued.
        """
        resource = Resource(resource)
        action = Action(action)
        profile = self.store.get_profile(context.profile.id)
        if profile is not None and profile.is_active and resolve_permission(profile, resource, action):
            return Result.success(AuthContext(context.claims, context.credential, profile))
        logger.info(
            "access_denied_permission",
            profile_id=context.profile.id,
            resource=resource.value,
            action=action.value,
        )
        return Result.failure(
            ErrorKind.FORBIDDEN,
            "insufficient permissions",
            {"resource": resource.value, "action": action.value},
        )
