from __future__ import annotations

import hashlib
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from iamprovider.api.schemas import (
    AuthResponse,
    CreateUserRequest,
    DeactivateRequest,
    Envelope,
    ForgotPasswordRequest,
    IntrospectRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    OAuthLinkRequest,
    OAuthStartResponse,
    PasskeyLoginOptionsRequest,
    PasskeyLoginVerifyRequest,
    PasskeyRegisterVerifyRequest,
    PasskeyResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    ReactivateRequest,
    RegisterRequest,
    ResendVerificationRequest,
    RevokedSessionsResponse,
    SessionListResponse,
    SessionResponse,
    SetPasswordRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    UpdateUserRequest,
    UserListResponse,
    UserResponse,
)
from iamprovider.logging import get_correlation_id, get_logger
from iamprovider.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    ServiceError,
)
from iamprovider.service.runtime import Runtime, check_rate_limit, get_runtime
from iamprovider.storage.models import SessionContext, User, UserPatch, UserSearch

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def _ok(data: Any = None) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def _no_content() -> Response:
    return Response(status_code=204)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _device_fingerprint(request: Request) -> str:
    """Stable hash of the headers a browser sends on every request."""
    parts = [
        request.headers.get("user-agent", ""),
        request.headers.get("accept-language", ""),
        request.headers.get("accept-encoding", ""),
        request.headers.get("accept", ""),
        _client_ip(request) or "",
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def _session_context(request: Request) -> SessionContext:
    return SessionContext(
        device_fingerprint=_device_fingerprint(request),
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )


async def _enforce_rate_limit(runtime: Runtime, request: Request, bucket: str) -> None:
    """Per-client token bucket for unauthenticated auth routes.

    Raises:
        RateLimitedError: if the client has exhausted its budget
    """
    key = f"{bucket}:{_client_ip(request) or 'unknown'}"
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime,
        key,
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_limit_window_seconds,
        return_remaining=True,
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", bucket=bucket, retry_after=reset_seconds)
        raise RateLimitedError(detail={"retry_after": max(1, reset_seconds)})


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("expected a Bearer access token")
    return token.strip()


async def get_user(authorization: Optional[str] = Header(None)) -> User:
    runtime = get_runtime()
    return await runtime.auth.authenticate(_bearer_token(authorization))


async def get_admin_user(user: User = Depends(get_user)) -> User:
    if not user.is_admin:
        raise ForbiddenError("admin access required")
    return user


# ---------------------------------------------------------------------------
# auth
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a password account and sign it in.

    The account cannot log in with its password until the email address is
    verified; the returned tokens cover the session opened by registration.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "register")
    result = await runtime.auth.register(
        body.email,
        body.password,
        display_name=body.display_name,
        first_name=body.first_name,
        last_name=body.last_name,
        context=_session_context(request),
    )
    verification_url = runtime.email_verification.send_verification(
        result.user, body.callback_url
    )
    return _ok(AuthResponse.from_result(result, verification_url=verification_url))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "login")
    result = await runtime.auth.login(body.email, body.password, _session_context(request))
    return _ok(AuthResponse.from_result(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "refresh")
    issued = await runtime.auth.refresh_tokens(body.refresh_token, _session_context(request))
    return _ok(
        TokenPairResponse(
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            expires_in=issued.expires_in,
        )
    )


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token)
    return _no_content()


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(user: User = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(user.id)
    return _ok(RevokedSessionsResponse(revoked_sessions=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(user: User = Depends(get_user)):
    return _ok(UserResponse.from_user(user))


@router.get("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(token: str = Query(..., min_length=1, max_length=8192)):
    runtime = get_runtime()
    user = await runtime.email_verification.verify_email(token)
    return _ok(UserResponse.from_user(user))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "resend-verification")
    await runtime.email_verification.resend(body.email, body.callback_url)
    return _ok(
        MessageResponse(
            message="If the account exists and is unverified, a verification email has been sent"
        )
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "forgot-password")
    await runtime.password_reset.request_reset(body.email, body.callback_url)
    return _ok(
        MessageResponse(message="If the account exists, a password reset email has been sent")
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "reset-password")
    await runtime.password_reset.reset_password(body.token, body.new_password)
    return _ok(MessageResponse(message="Password has been reset"))


@router.post("/auth/reactivate", response_model=Envelope, tags=["auth"])
async def reactivate(body: ReactivateRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "reactivate")
    result = await runtime.auth.reactivate(body.email, body.password, _session_context(request))
    return _ok(AuthResponse.from_result(result))


@router.post("/auth/deactivate", response_model=Envelope, tags=["auth"])
async def deactivate(body: DeactivateRequest, user: User = Depends(get_user)):
    runtime = get_runtime()
    updated = await runtime.auth.deactivate(user.id, body.password)
    return _ok(UserResponse.from_user(updated))


@router.post("/auth/set-password", response_model=Envelope, tags=["auth"])
async def set_password(body: SetPasswordRequest, user: User = Depends(get_user)):
    runtime = get_runtime()
    updated = await runtime.auth.set_password(user.id, body.password)
    return _ok(UserResponse.from_user(updated))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, user: User = Depends(get_user)):
    runtime = get_runtime()
    updated = await runtime.auth.change_password(
        user.id,
        body.current_password,
        body.new_password,
        keep_refresh_token=body.refresh_token,
    )
    return _ok(UserResponse.from_user(updated))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    user: User = Depends(get_user),
    x_refresh_token: Optional[str] = Header(None, alias="X-Refresh-Token"),
):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(user.id, x_refresh_token)
    return _ok(
        SessionListResponse(
            sessions=[SessionResponse.from_view(s) for s in sessions], total=len(sessions)
        )
    )


@router.delete("/auth/sessions/{session_id}", status_code=204, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=64), user: User = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(user.id, session_id)
    return _no_content()


@router.post("/auth/introspect", tags=["auth"])
async def introspect(body: IntrospectRequest) -> JSONResponse:
    """Token introspection for resource servers.

    The body is not wrapped in the envelope and never reveals why a token
    is inactive.
    """
    runtime = get_runtime()
    return JSONResponse(content=runtime.auth.introspect(body.token))


# ---------------------------------------------------------------------------
# passkeys
# ---------------------------------------------------------------------------


@router.post("/passkeys/register/options", response_model=Envelope, tags=["passkeys"])
async def passkey_register_options(user: User = Depends(get_user)):
    runtime = get_runtime()
    return _ok(await runtime.passkeys.registration_options(user))


@router.post(
    "/passkeys/register/verify", response_model=Envelope, status_code=201, tags=["passkeys"]
)
async def passkey_register_verify(
    body: PasskeyRegisterVerifyRequest, user: User = Depends(get_user)
):
    runtime = get_runtime()
    passkey = await runtime.passkeys.verify_registration(user, body.response, body.display_name)
    return _ok(PasskeyResponse.from_passkey(passkey))


@router.post("/passkeys/login/options", response_model=Envelope, tags=["passkeys"])
async def passkey_login_options(body: PasskeyLoginOptionsRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "passkey-login")
    return _ok(await runtime.passkeys.authentication_options(body.email))


@router.post("/passkeys/login/verify", response_model=Envelope, tags=["passkeys"])
async def passkey_login_verify(body: PasskeyLoginVerifyRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "passkey-login")
    user = await runtime.passkeys.verify_authentication(body.email, body.response)
    result = await runtime.auth.login_with_passkey(user, _session_context(request))
    return _ok(AuthResponse.from_result(result))


@router.get("/passkeys", response_model=Envelope, tags=["passkeys"])
async def list_passkeys(user: User = Depends(get_user)):
    runtime = get_runtime()
    passkeys = await runtime.passkeys.list_passkeys(user.id)
    return _ok([PasskeyResponse.from_passkey(p) for p in passkeys])


@router.delete("/passkeys/{credential_id}", status_code=204, tags=["passkeys"])
async def remove_passkey(
    credential_id: str = Path(..., max_length=1024), user: User = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.passkeys.remove_passkey(user.id, credential_id)
    return _no_content()


# ---------------------------------------------------------------------------
# oauth
# ---------------------------------------------------------------------------


def _redirect_with_fragment(params: Dict[str, str]) -> RedirectResponse:
    target = get_runtime().settings.oauth_success_redirect_url
    return RedirectResponse(f"{target}#{urlencode(params)}", status_code=302)


@router.get("/oauth/{provider}", tags=["oauth"])
async def oauth_start(provider: str = Path(..., max_length=32)):
    """Redirect the browser to the provider's consent screen."""
    runtime = get_runtime()
    start = await runtime.oauth.start(provider)
    return RedirectResponse(start["authorization_url"], status_code=302)


@router.get("/oauth/{provider}/callback", tags=["oauth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=128),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish the authorization-code flow and hand tokens to the frontend.

    Tokens travel in the URL fragment so they never reach server logs of the
    redirect target.
    """
    runtime = get_runtime()
    failure = f"{provider.capitalize()} authentication failed"
    if error or not code:
        logger.warning("oauth_callback_rejected", provider=provider, error=error)
        return _redirect_with_fragment({"error": failure})
    try:
        await _enforce_rate_limit(runtime, request, "oauth-callback")
        link_user_id = await runtime.oauth.consume_state(provider, state or "")
        profile = await runtime.oauth.exchange_code(provider, code)
        if link_user_id:
            await runtime.oauth.link(link_user_id, profile)
            return _redirect_with_fragment({"linked": provider})
        user = await runtime.oauth.resolve_user(profile)
        result = await runtime.auth.login_with_external_identity(user, _session_context(request))
    except ServiceError as exc:
        logger.warning("oauth_callback_failed", provider=provider, error_code=exc.error_code)
        return _redirect_with_fragment({"error": failure, "code": exc.error_code})
    return _redirect_with_fragment(
        {
            "access_token": result.access_token,
            "refresh_token": result.refresh_token,
            "expires_in": str(result.expires_in),
        }
    )


@router.post("/oauth/{provider}/link/start", response_model=Envelope, tags=["oauth"])
async def oauth_link_start(
    provider: str = Path(..., max_length=32), user: User = Depends(get_user)
):
    runtime = get_runtime()
    start = await runtime.oauth.start(provider, link_user_id=user.id)
    return _ok(OAuthStartResponse(**start))


@router.post("/oauth/{provider}/link", response_model=Envelope, tags=["oauth"])
async def oauth_link(
    body: OAuthLinkRequest,
    provider: str = Path(..., max_length=32),
    user: User = Depends(get_user),
):
    runtime = get_runtime()
    link_user_id = await runtime.oauth.consume_state(provider, body.state)
    if link_user_id != user.id:
        raise ForbiddenError("OAuth state was issued for a different account")
    profile = await runtime.oauth.exchange_code(provider, body.code)
    updated = await runtime.oauth.link(user.id, profile)
    return _ok(UserResponse.from_user(updated))


@router.delete("/oauth/{provider}/{provider_id}", response_model=Envelope, tags=["oauth"])
async def oauth_unlink(
    provider: str = Path(..., max_length=32),
    provider_id: str = Path(..., max_length=256),
    user: User = Depends(get_user),
):
    runtime = get_runtime()
    updated = await runtime.oauth.unlink(user.id, provider, provider_id)
    return _ok(UserResponse.from_user(updated))


# ---------------------------------------------------------------------------
# admin users
# ---------------------------------------------------------------------------


@router.get("/users", response_model=Envelope, tags=["users"])
async def search_users(
    email: Optional[str] = Query(None, max_length=254),
    is_active: Optional[bool] = Query(None),
    is_email_verified: Optional[bool] = Query(None),
    sort_by: str = Query("created_at", pattern="^(created_at|email|last_login_at)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    limit: int = Query(20, ge=1, le=100),
    skip: int = Query(0, ge=0),
    admin: User = Depends(get_admin_user),
):
    runtime = get_runtime()
    page = await runtime.users.search(
        UserSearch(
            email=email,
            is_active=is_active,
            is_email_verified=is_email_verified,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            skip=skip,
        )
    )
    return _ok(
        UserListResponse(
            users=[UserResponse.from_user(u) for u in page.users],
            total=page.total,
            limit=page.limit,
            skip=page.skip,
            has_more=page.has_more,
        )
    )


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(body: CreateUserRequest, admin: User = Depends(get_admin_user)):
    runtime = get_runtime()
    user = await runtime.users.create(
        body.email,
        password=body.password,
        display_name=body.display_name,
        first_name=body.first_name,
        last_name=body.last_name,
        is_admin=body.is_admin,
        is_email_verified=body.is_email_verified,
    )
    logger.info("admin_action", action="create_user", admin_id=admin.id, user_id=user.id)
    return _ok(UserResponse.from_user(user))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(
    user_id: str = Path(..., max_length=64), admin: User = Depends(get_admin_user)
):
    runtime = get_runtime()
    return _ok(UserResponse.from_user(await runtime.users.get(user_id)))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UpdateUserRequest,
    user_id: str = Path(..., max_length=64),
    admin: User = Depends(get_admin_user),
):
    runtime = get_runtime()
    changes = {name: getattr(body, name) for name in body.model_fields_set}
    # email and the flags cannot be cleared
    for name in ("email", "is_admin", "is_email_verified"):
        if name in changes and changes[name] is None:
            del changes[name]
    updated = await runtime.users.update(user_id, UserPatch(**changes))
    logger.info("admin_action", action="update_user", admin_id=admin.id, user_id=user_id)
    return _ok(UserResponse.from_user(updated))


@router.delete("/users/{user_id}", status_code=204, tags=["users"])
async def delete_user(
    user_id: str = Path(..., max_length=64), admin: User = Depends(get_admin_user)
):
    runtime = get_runtime()
    await runtime.users.delete(user_id)
    logger.info("admin_action", action="delete_user", admin_id=admin.id, user_id=user_id)
    return _no_content()


@router.post("/users/{user_id}/verify-email", response_model=Envelope, tags=["users"])
async def admin_verify_email(
    user_id: str = Path(..., max_length=64), admin: User = Depends(get_admin_user)
):
    runtime = get_runtime()
    return _ok(UserResponse.from_user(await runtime.users.verify_email(user_id)))


@router.post("/users/{user_id}/deactivate", response_model=Envelope, tags=["users"])
async def admin_deactivate(
    user_id: str = Path(..., max_length=64), admin: User = Depends(get_admin_user)
):
    runtime = get_runtime()
    updated = await runtime.users.deactivate(user_id)
    logger.info("admin_action", action="deactivate_user", admin_id=admin.id, user_id=user_id)
    return _ok(UserResponse.from_user(updated))


@router.post("/users/{user_id}/reactivate", response_model=Envelope, tags=["users"])
async def admin_reactivate(
    user_id: str = Path(..., max_length=64), admin: User = Depends(get_admin_user)
):
    runtime = get_runtime()
    updated = await runtime.users.reactivate(user_id)
    logger.info("admin_action", action="reactivate_user", admin_id=admin.id, user_id=user_id)
    return _ok(UserResponse.from_user(updated))
