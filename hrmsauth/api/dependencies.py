from __future__ import annotations

from typing import Optional, TypeVar

from fastapi import Depends, Header, Request, Response

from hrmsauth.logging import bind_caller
from hrmsauth.service.errors import error_for_result
from hrmsauth.service.gate import AuthContext
from hrmsauth.service.rate_limit import RateDecision, RateLimitPolicy
from hrmsauth.service.results import Result
from hrmsauth.service.runtime import Runtime
from hrmsauth.storage.models import Action, Resource

T = TypeVar("T")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def unwrap(result: Result[T]) -> T:
    """Return the value of a successful result or raise its HTTP error."""
    if not result.ok:
        raise error_for_result(result)
    return result.value  # type: ignore[return-value]


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def apply_rate_limit_headers(response: Response, decision: RateDecision, window_seconds: int) -> None:
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, decision.remaining))
    response.headers["X-RateLimit-Reset"] = str(decision.retry_after or window_seconds)


async def enforce_rate_limit(
    runtime: Runtime, policy: RateLimitPolicy, subject: str, response: Response
) -> RateDecision:
    """Count one attempt against ``policy`` for ``subject``.

    Raises:
        RateLimitedError: 429 with Retry-After once the window is full
    """
    result = await runtime.rate_limiter.check(policy, subject)
    decision = result.value
    if result.ok and decision is not None:
        apply_rate_limit_headers(response, decision, policy.window_seconds)
        return decision
    error = error_for_result(result)
    if decision is not None:
        error.headers.update(
            {
                "X-RateLimit-Limit": str(decision.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(decision.retry_after),
            }
        )
    raise error


async def get_auth_context(
    runtime: Runtime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    context = unwrap(await runtime.gate.authenticate(authorization))
    bind_caller(context.credential.email, context.profile.id)
    return context


def require_roles(*roles: str):
    """Dependency factory: caller must hold at least one of ``roles``."""

    async def _dependency(
        runtime: Runtime = Depends(get_runtime),
        context: AuthContext = Depends(get_auth_context),
    ) -> AuthContext:
        return unwrap(runtime.gate.authorize(context, *roles))

    return _dependency


def require_permission(resource: Resource, action: Action):
    """Dependency factory: caller must be granted ``action`` on ``resource``."""

    async def _dependency(
        runtime: Runtime = Depends(get_runtime),
        context: AuthContext = Depends(get_auth_context),
    ) -> AuthContext:
        return unwrap(runtime.gate.require_permission(context, resource, action))

    return _dependency
