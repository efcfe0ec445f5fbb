from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from blogauth.api.deps import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    _http_error,
    get_current_identity,
    get_optional_identity,
    request_context,
    require_admin,
)
from blogauth.api.schemas import (
    AuditEntryResponse,
    Envelope,
    ForgotPasswordRequest,
    LockAccountRequest,
    LoginPendingResponse,
    LoginRequest,
    LoginSuccessResponse,
    PublicProfileResponse,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    UserResponse,
    VerificationApprovedResponse,
    VerificationRejectedResponse,
    VerifyLoginLinkRequest,
)
from blogauth.config import Settings
from blogauth.service.audit import RequestContext
from blogauth.service.auth import (
    RESET_REQUESTED_MESSAGE,
    Identity,
    LoginPending,
    LoginRejected,
    SessionTokens,
)
from blogauth.service.errors import ValidationError
from blogauth.service.runtime import Runtime, check_rate_limit, get_runtime
from blogauth.service.tokens import IssuedToken
from blogauth.storage.models import ROLE_ADMIN, AuditFilter

router = APIRouter(prefix="/api/auth", tags=["auth"])
users_router = APIRouter(prefix="/api/users", tags=["users"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


def _set_cookie(response: Response, settings: Settings, name: str, issued: IssuedToken) -> None:
    response.set_cookie(
        name,
        issued.token,
        max_age=issued.expires_in,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        domain=settings.cookie_domain,
        path="/",
    )


def _apply_session_cookies(response: Response, settings: Settings, tokens: SessionTokens) -> None:
    _set_cookie(response, settings, ACCESS_COOKIE, tokens.access)
    _set_cookie(response, settings, REFRESH_COOKIE, tokens.refresh)


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            domain=settings.cookie_domain,
            secure=settings.cookie_secure,
            httponly=True,
            samesite="lax",
        )


async def _require_captcha(runtime: Runtime, token: Optional[str], ctx: RequestContext) -> None:
    result = await runtime.captcha.verify(token, remote_ip=ctx.ip_addr)
    if not result.success:
        raise ValidationError(
            "captcha verification failed", detail={"error_codes": result.error_codes}
        )


# -- /api/auth -----------------------------------------------------------------


@router.post("/register", response_model=Envelope, status_code=201)
async def register(
    body: RegisterRequest,
    response: Response,
    ctx: RequestContext = Depends(request_context),
):
    """Create an account and start a session.

    Registration does not record a login, so the first password login from
    any address goes through email verification.

    Raises:
        400: Invalid input, failed CAPTCHA, or duplicate email/username
        429: Too many registrations from this address
    """
    runtime = get_runtime()
    await check_rate_limit(runtime, f"register:{ctx.ip_addr}", runtime.settings.signup_rate_limit_per_minute)
    await _require_captcha(runtime, body.captcha_token, ctx)
    result = await runtime.auth.register(
        username=body.username,
        email=body.email,
        password=body.password,
        full_name=body.full_name,
        address=body.address,
        gender=body.gender,
        ctx=ctx,
    )
    _apply_session_cookies(response, runtime.settings, result.tokens)
    return Envelope(status="ok", data=RegisterResponse(user=UserResponse.from_account(result.account)))


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    response: Response,
    ctx: RequestContext = Depends(request_context),
):
    """Password login with risk-based step-up.

    Low risk sets session cookies and returns the user. High risk (first
    login, new address, or stale last login) emails approve/reject links and
    returns ``requires_verification: true`` without cookies.

    Raises:
        401: Unknown email or wrong password (indistinguishable)
        403: Account locked; ``details.locked_until`` says until when
        429: Rate limit exceeded
    """
    runtime = get_runtime()
    await check_rate_limit(
        runtime, f"login:{ctx.ip_addr}:{body.email}", runtime.settings.login_rate_limit_per_minute
    )
    await _require_captcha(runtime, body.captcha_token, ctx)
    result = await runtime.auth.login(body.email, body.password, ctx=ctx)
    if isinstance(result, LoginPending):
        return Envelope(
            status="ok",
            data=LoginPendingResponse(
                user_id=result.account_id, message=result.message, expires_at=result.expires_at
            ),
        )
    _apply_session_cookies(response, runtime.settings, result.tokens)
    return Envelope(status="ok", data=LoginSuccessResponse(user=UserResponse.from_account(result.account)))


@router.post("/verify-2fa-email", response_model=Envelope)
async def verify_login_link(
    body: VerifyLoginLinkRequest,
    response: Response,
    ctx: RequestContext = Depends(request_context),
):
    """Resolve an emailed approve/reject link. Each link works once.

    Raises:
        401: Unknown, expired or already-used token
    """
    runtime = get_runtime()
    await check_rate_limit(runtime, f"verify:{ctx.ip_addr}", runtime.settings.verify_rate_limit_per_minute)
    result = await runtime.auth.resolve_login_link(body.token, body.action, ctx=ctx)
    if isinstance(result, LoginRejected):
        return Envelope(status="ok", data=VerificationRejectedResponse(message=result.message))
    _apply_session_cookies(response, runtime.settings, result.tokens)
    return Envelope(
        status="ok", data=VerificationApprovedResponse(user=UserResponse.from_account(result.account))
    )


@router.post("/refresh", response_model=Envelope)
async def refresh(
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(request_context),
):
    """Exchange the refresh cookie for a new access cookie.

    Raises:
        400: No refresh cookie
        401: Invalid, unknown or expired refresh token
    """
    runtime = get_runtime()
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        raise _http_error("validation_error", "refresh token missing", status_code=400)
    access = await runtime.auth.refresh(refresh_token, ctx=ctx)
    _set_cookie(response, runtime.settings, ACCESS_COOKIE, access)
    return Envelope(status="ok", data=RefreshResponse(expires_in=access.expires_in))


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    response: Response,
    identity: Identity = Depends(get_current_identity),
    ctx: RequestContext = Depends(request_context),
):
    runtime = get_runtime()
    await runtime.auth.logout(identity, request.cookies.get(REFRESH_COOKIE), ctx=ctx)
    _clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/me", response_model=Envelope)
async def me(identity: Identity = Depends(get_current_identity)):
    """Return the caller's profile; an expired lock is cleared as part of the read."""
    runtime = get_runtime()
    account = runtime.auth.current_account(identity)
    return Envelope(status="ok", data=UserResponse.from_account(account))


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest, ctx: RequestContext = Depends(request_context)):
    """Email a password-reset link. The reply is identical whether or not the email is registered."""
    runtime = get_runtime()
    await check_rate_limit(runtime, f"reset:{ctx.ip_addr}", runtime.settings.reset_rate_limit_per_minute)
    await _require_captcha(runtime, body.captcha_token, ctx)
    await runtime.auth.request_password_reset(body.email, ctx=ctx)
    return Envelope(status="ok", data={"message": RESET_REQUESTED_MESSAGE})


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest, ctx: RequestContext = Depends(request_context)):
    """Set a new password from a reset link; signs out every existing session."""
    runtime = get_runtime()
    await check_rate_limit(runtime, f"reset:{ctx.ip_addr}", runtime.settings.reset_rate_limit_per_minute)
    await runtime.auth.reset_password(body.token, body.new_password, ctx=ctx)
    return Envelope(status="ok", data={"message": "password updated"})


# -- /api/users ----------------------------------------------------------------


@users_router.get("", response_model=Envelope)
async def list_users(
    locked: bool = Query(False, description="Only accounts currently locked"),
    limit: int = Query(100, ge=1, le=500),
    admin: Identity = Depends(require_admin),
):
    runtime = get_runtime()
    accounts = runtime.store.list_accounts(
        locked_as_of=runtime.clock() if locked else None, limit=limit
    )
    return Envelope(status="ok", data=[UserResponse.from_account(a) for a in accounts])


@users_router.get("/{account_id}", response_model=Envelope)
async def get_profile(
    account_id: int = Path(..., ge=1),
    viewer: Optional[Identity] = Depends(get_optional_identity),
):
    """Public profile; the owner and admins also see contact and lock details."""
    runtime = get_runtime()
    account = runtime.store.get_account_by_id(account_id)
    if account is None:
        raise _http_error("not_found", "user not found", status_code=404)
    if viewer is not None and (viewer.id == account.id or viewer.role_id == ROLE_ADMIN):
        return Envelope(status="ok", data=UserResponse.from_account(runtime.locks.reconcile(account)))
    return Envelope(status="ok", data=PublicProfileResponse.from_account(account))


@users_router.post("/{account_id}/lock", response_model=Envelope)
async def lock_user(
    body: LockAccountRequest,
    account_id: int = Path(..., ge=1),
    admin: Identity = Depends(require_admin),
    ctx: RequestContext = Depends(request_context),
):
    """Suspend an account until ``locked_until``.

    Raises:
        400: Missing fields or an expiry in the past
        404: Unknown account
    """
    runtime = get_runtime()
    account = runtime.auth.lock_account(
        admin, account_id, locked_until=body.locked_until, reason=body.lock_reason, ctx=ctx
    )
    return Envelope(status="ok", data=UserResponse.from_account(account))


@users_router.post("/{account_id}/unlock", response_model=Envelope)
async def unlock_user(
    account_id: int = Path(..., ge=1),
    admin: Identity = Depends(require_admin),
    ctx: RequestContext = Depends(request_context),
):
    runtime = get_runtime()
    account = runtime.auth.unlock_account(admin, account_id, ctx=ctx)
    return Envelope(status="ok", data=UserResponse.from_account(account))


# -- /api/admin ----------------------------------------------------------------


@admin_router.get("/audit-log", response_model=Envelope)
async def audit_log(
    account_id: Optional[int] = Query(None, ge=1),
    action: Optional[str] = Query(None, max_length=64),
    ip: Optional[str] = Query(None, max_length=64),
    status: Optional[str] = Query(None, pattern="^(success|failed|pending)$"),
    limit: int = Query(100, ge=1, le=1000),
    admin: Identity = Depends(require_admin),
):
    runtime = get_runtime()
    entries = runtime.audit.query(
        AuditFilter(account_id=account_id, action=action, ip_addr=ip, status=status, limit=limit)
    )
    return Envelope(status="ok", data=[AuditEntryResponse.from_entry(e) for e in entries])


@admin_router.get("/audit-log/stats", response_model=Envelope)
async def audit_stats(admin: Identity = Depends(require_admin)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.audit.statistics())
