from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from hrmsauth.api.dependencies import (
    client_address,
    enforce_rate_limit,
    get_auth_context,
    get_runtime,
    unwrap,
)
from hrmsauth.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    ProfileResponse,
    RefreshResponse,
    RefreshTokenRequest,
    ResetPasswordRequest,
    VerifyEmailRequest,
    ok,
)
from hrmsauth.service.gate import AuthContext
from hrmsauth.service.permissions import effective_permissions
from hrmsauth.service.runtime import Runtime

router = APIRouter(prefix="/auth", tags=["auth"])

FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a password reset link has been sent."


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with email and password.

    Returns an access/refresh token pair and the caller's profile.

    Raises:
        401: If credentials are invalid
        403: If the account is locked or inactive
        429: If this client address exceeded the login rate limit
    """
    source_address = client_address(request)
    await enforce_rate_limit(runtime, runtime.login_policy, source_address, response)
    result = unwrap(
        await runtime.auth.login(
            body.email,
            body.password,
            device_info=body.device_info,
            source_address=source_address,
        )
    )
    return ok(
        LoginResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            access_expires_at=result.access_expires_at,
            refresh_expires_at=result.refresh_expires_at,
            profile=ProfileResponse.from_profile(result.profile),
        )
    )


@router.post("/refresh-token", response_model=Envelope)
async def refresh_token(body: RefreshTokenRequest, runtime: Runtime = Depends(get_runtime)):
    """Exchange a live refresh token for a new access token.

    The refresh token itself is not rotated.

    Raises:
        401: If the refresh token is invalid, expired or revoked
    """
    result = unwrap(await runtime.auth.refresh(body.refresh_token))
    return ok(
        RefreshResponse(
            access_token=result.access_token,
            token_type=result.token_type,
            access_expires_at=result.access_expires_at,
        )
    )


@router.post("/logout", response_model=Envelope)
async def logout(body: LogoutRequest, runtime: Runtime = Depends(get_runtime)):
    """Revoke one refresh token. Always succeeds."""
    await runtime.auth.logout(body.refresh_token)
    return ok(MessageResponse(message="Logged out"))


@router.post("/logout-all", response_model=Envelope)
async def logout_all(
    context: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    """Revoke every refresh token held by the caller."""
    unwrap(await runtime.auth.logout_all(context.credential.email))
    return ok(MessageResponse(message="Logged out from all devices"))


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Start a password reset.

    The response is identical whether or not the account exists and never
    carries the reset token.

    Raises:
        429: If this client address exceeded the forgot-password rate limit
    """
    await enforce_rate_limit(
        runtime, runtime.forgot_password_policy, client_address(request), response
    )
    unwrap(await runtime.auth.forgot_password(body.email))
    return ok(MessageResponse(message=FORGOT_PASSWORD_MESSAGE))


@router.post("/reset-password", response_model=Envelope)
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Complete a password reset with a one-time token.

    Raises:
        400: If the token is invalid, expired or used, or the password is weak
        429: If this client address exceeded the reset rate limit
    """
    await enforce_rate_limit(
        runtime, runtime.reset_password_policy, client_address(request), response
    )
    unwrap(await runtime.auth.reset_password(body.token, body.new_password))
    return ok(MessageResponse(message="Password has been reset"))


@router.post("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest,
    context: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    """Change the caller's password and sign out every device.

    Raises:
        400: If the new password fails the strength policy
        401: If the current password is incorrect
    """
    unwrap(
        await runtime.auth.change_password(
            context.credential.email, body.current_password, body.new_password
        )
    )
    return ok(MessageResponse(message="Password changed; please log in again"))


@router.get("/me", response_model=Envelope)
async def me(context: AuthContext = Depends(get_auth_context)):
    """Return the caller's profile, roles and effective permissions."""
    return ok(
        MeResponse(
            user_id=context.credential.id,
            email=context.credential.email,
            is_email_verified=context.credential.is_email_verified,
            profile=ProfileResponse.from_profile(context.profile),
            permissions=effective_permissions(context.profile),
        )
    )


@router.post("/request-email-verification", response_model=Envelope)
async def request_email_verification(
    context: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    """Send a fresh email verification token to the caller."""
    unwrap(await runtime.auth.request_email_verification(context.credential.email))
    return ok(MessageResponse(message="Verification email sent"))


@router.post("/verify-email", response_model=Envelope)
async def verify_email(body: VerifyEmailRequest, runtime: Runtime = Depends(get_runtime)):
    """Mark an email verified using its one-time token.

    Raises:
        400: If the token is invalid or expired
    """
    unwrap(await runtime.auth.verify_email(body.token))
    return ok(MessageResponse(message="Email verified"))
