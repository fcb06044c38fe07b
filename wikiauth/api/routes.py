from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import JSONResponse

from wikiauth.api.schemas import (
    AdminCreateUserRequest,
    AdminUpdateUserRequest,
    AuthorizeRequest,
    AuthorizeResponse,
    CSRFTokenResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserListResponse,
    UserResponse,
)
from wikiauth.logging import get_logger
from wikiauth.service.auth import RESET_REQUESTED_MESSAGE
from wikiauth.service.csrf import ClientContext
from wikiauth.service.errors import AuthenticationError
from wikiauth.service.permissions import Operation, check_permission, require_permission
from wikiauth.service.runtime import get_runtime
from wikiauth.storage.models import UserRecord

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _client_context(request: Request) -> ClientContext:
    host = request.client.host if request.client else None
    return ClientContext.from_headers(request.headers, host)


def _user_response(user: UserRecord) -> UserResponse:
    return UserResponse(**user.public_dict())


def _session_token(request: Request) -> Optional[str]:
    runtime = get_runtime()
    return request.cookies.get(runtime.settings.session_cookie_name)


async def get_optional_user(request: Request) -> Optional[UserRecord]:
    runtime = get_runtime()
    return await runtime.sessions.resolve_user(_session_token(request))


async def get_user(user: Optional[UserRecord] = Depends(get_optional_user)) -> UserRecord:
    if user is None:
        raise AuthenticationError("Not authenticated")
    return user


async def get_admin_user(user: Optional[UserRecord] = Depends(get_optional_user)) -> UserRecord:
    require_permission(Operation.MANAGE_USERS, user)
    return user  # type: ignore[return-value]


def _clear_session_cookie(response: Response) -> None:
    runtime = get_runtime()
    response.delete_cookie(**runtime.sessions.logout_cookie_params())


@router.get("/auth/csrf", response_model=Envelope, tags=["auth"])
async def issue_csrf(request: Request):
    """Issue a short-lived CSRF token bound to the caller's IP, country and user agent."""
    runtime = get_runtime()
    token = runtime.auth.issue_csrf_token(_client_context(request))
    return Envelope(
        status="ok",
        data=CSRFTokenResponse(
            csrf_token=token, expires_in=runtime.settings.csrf_token_ttl_seconds
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token"),
):
    """Create an unconfirmed account.

    Responds identically for new and already-registered emails. Bot
    submissions receive the same response without an account being created.

    Raises:
        400: Invalid fields or failed CAPTCHA
        403: Missing or invalid CSRF token
        409: Username already taken
        429: Registration rate limit exceeded
    """
    runtime = get_runtime()
    outcome = await runtime.auth.register(
        username=body.username,
        name=body.name,
        email=body.email,
        password=body.password,
        context=_client_context(request),
        csrf_token=body.csrf_token or x_csrf_token,
        turnstile_token=body.turnstile_token,
        hp_field=body.hp_field,
        form_timestamp=body.form_timestamp,
    )
    # Confirmation delivery is handled by the mailer that consumes user_created events
    return Envelope(status="ok", data=MessageResponse(message=outcome.message))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token"),
):
    """Authenticate with email and password and set the session cookie.

    Raises:
        401: Invalid credentials, or email not yet confirmed
        403: Missing or invalid CSRF token
        423: Account locked
        429: Rate limit exceeded
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        _client_context(request),
        csrf_token=body.csrf_token or x_csrf_token,
    )
    response.set_cookie(
        **runtime.sessions.session_cookie_params(result.session_token, result.expires_at)
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=_user_response(result.user),
            expires_at=result.expires_at.isoformat(),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    await runtime.auth.logout(_session_token(request))
    _clear_session_cookie(response)
    return Envelope(status="ok", data=MessageResponse(message="Logged out"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(user: UserRecord = Depends(get_user)):
    return Envelope(status="ok", data=_user_response(user))


@router.patch("/auth/me", response_model=Envelope, tags=["auth"])
async def update_me(body: ProfileUpdateRequest, user: UserRecord = Depends(get_user)):
    runtime = get_runtime()
    updated = await runtime.auth.update_profile(
        user, name=body.name, bio=body.bio, avatar=body.avatar
    )
    return Envelope(status="ok", data=_user_response(updated))


@router.get("/auth/confirm", response_model=Envelope, tags=["auth"])
async def confirm(token: Optional[str] = Query(None, max_length=256)):
    runtime = get_runtime()
    user = await runtime.auth.confirm_email(token)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Request a password reset; the response never reveals whether the email exists."""
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data=MessageResponse(message=RESET_REQUESTED_MESSAGE))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token"),
):
    runtime = get_runtime()
    await runtime.auth.reset_password(
        body.token,
        body.password,
        _client_context(request),
        csrf_token=body.csrf_token or x_csrf_token,
    )
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="Password reset successful! You can now log in with your new password."
        ),
    )


@router.get("/auth/account/export", response_model=Envelope, tags=["auth"])
async def export_account(user: UserRecord = Depends(get_user)):
    runtime = get_runtime()
    export = await runtime.auth.export_account(user)
    body = Envelope(status="ok", data=export).model_dump(mode="json")
    return JSONResponse(
        content=body,
        headers={"Content-Disposition": 'attachment; filename="account-export.json"'},
    )


@router.delete("/auth/account", response_model=Envelope, tags=["auth"])
async def delete_account(
    request: Request, response: Response, user: UserRecord = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.delete_account(user, _session_token(request))
    _clear_session_cookie(response)
    return Envelope(status="ok", data=MessageResponse(message="Account deleted"))


@router.post("/auth/authorize", response_model=Envelope, tags=["auth"])
async def authorize(
    body: AuthorizeRequest, user: Optional[UserRecord] = Depends(get_optional_user)
):
    """Evaluate a permission for the calling user (anonymous when no session)."""
    result = check_permission(body.operation, user, body.resource_owner_id, body.visibility)
    return Envelope(
        status="ok", data=AuthorizeResponse(granted=result.granted, reason=result.reason)
    )


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(admin: UserRecord = Depends(get_admin_user)):
    runtime = get_runtime()
    users = await runtime.auth.list_users(admin)
    items = [_user_response(u) for u in users]
    return Envelope(status="ok", data=UserListResponse(items=items, total=len(items)))


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest, admin: UserRecord = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await runtime.auth.admin_create_user(
        admin,
        username=body.username,
        name=body.name,
        email=body.email,
        password=body.password,
        role=body.role,
    )
    return Envelope(status="ok", data=_user_response(user))


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str = Path(..., max_length=64), admin: UserRecord = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await runtime.auth.get_user(admin, user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.put("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    body: AdminUpdateUserRequest,
    user_id: str = Path(..., max_length=64),
    admin: UserRecord = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.admin_update_user(
        admin,
        user_id,
        name=body.name,
        bio=body.bio,
        role=body.role,
        email_confirmed=body.email_confirmed,
        password=body.password,
    )
    return Envelope(status="ok", data=_user_response(user))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str = Path(..., max_length=64), admin: UserRecord = Depends(get_admin_user)
):
    runtime = get_runtime()
    await runtime.auth.admin_delete_user(admin, user_id)
    return Envelope(status="ok", data=MessageResponse(message="User deleted"))
