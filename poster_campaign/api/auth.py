# poster_campaign/api/auth.py

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel
from sqlalchemy.orm import Session

from poster_campaign.api.deps import get_request_context
from poster_campaign.api.serializers import session_out, success, user_out
from poster_campaign.auth.dependencies import get_current_user, require_employee
from poster_campaign.auth.schemas import AuthUser
from poster_campaign.auth.utils import create_token_pair, decode_refresh_token, normalize_username
from poster_campaign.config import settings
from poster_campaign.db import get_db
from poster_campaign.errors import AccountLockedError, AuthenticationError, ValidationError
from poster_campaign.models.auth import User
from poster_campaign.services.audit_service import AuditService, RequestContext
from poster_campaign.services.password_reset_service import PasswordResetService
from poster_campaign.services.security_service import LOCKED_REASON, SecurityService
from poster_campaign.services.session_service import SessionService
from poster_campaign.services.user_service import UserService

logger = logging.getLogger("poster-auth")

router = APIRouter(prefix="/auth", tags=["auth"])

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
SESSION_COOKIE = "session_token"
SESSION_HEADER = "x-session-token"


# ======================================================
# REQUEST MODELS
# ======================================================

class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = None
    session_token: Optional[str] = None


class LogoutRequest(BaseModel):
    session_token: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class ResetRequest(BaseModel):
    user_id: int


class ResetVerify(BaseModel):
    token: str


class ResetConfirm(BaseModel):
    token: str
    new_password: str


# ======================================================
# HELPERS
# ======================================================

def _set_auth_cookies(response: Response, tokens: dict, session_token: Optional[str] = None) -> None:
    options = {"httponly": True, "secure": settings.is_production, "samesite": "lax"}
    response.set_cookie(
        ACCESS_COOKIE,
        tokens["access_token"],
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        **options,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens["refresh_token"],
        max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 3600,
        **options,
    )
    if session_token:
        response.set_cookie(
            SESSION_COOKIE,
            session_token,
            max_age=settings.SESSION_TIMEOUT_HOURS * 3600,
            **options,
        )


def _clear_auth_cookies(response: Response) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE, SESSION_COOKIE):
        response.delete_cookie(name)


def _session_token(request: Request, explicit: Optional[str] = None) -> Optional[str]:
    return explicit or request.cookies.get(SESSION_COOKIE) or request.headers.get(SESSION_HEADER)


def _token_response(tokens: dict, session_token: Optional[str] = None) -> dict:
    data = {
        "access_token": tokens["access_token"],
        "refresh_token": tokens["refresh_token"],
        "token_type": "bearer",
        "expires_in": settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    }
    if session_token:
        data["session_token"] = session_token
    return data


# ======================================================
# LOGIN / REFRESH / LOGOUT
# ======================================================

@router.post("/login")
def login(
    response: Response,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    username = normalize_username(form_data.username or "")
    if not username or not form_data.password:
        raise ValidationError("Username and password are required")

    security = SecurityService(db)
    audit = AuditService(db)

    try:
        security.check_account_lockout(username)
    except AccountLockedError:
        security.log_login_attempt(
            username,
            False,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            failure_reason=LOCKED_REASON,
        )
        raise

    user, failure_reason = UserService(db).authenticate(username, form_data.password)
    if user is None:
        security.log_login_attempt(
            username,
            False,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            failure_reason=failure_reason,
        )
        audit.log_action(
            "login_failed",
            "auth",
            new_values={"username": username, "reason": failure_reason},
            context=context,
        )
        raise AuthenticationError("Invalid username or password")

    security.log_login_attempt(
        username, True, ip_address=context.ip_address, user_agent=context.user_agent
    )
    security.clear_failed_attempts(username)

    tokens = create_token_pair(user)
    session = SessionService(db).create_session(
        user.id,
        tokens["refresh_token"],
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )

    audit.log_action(
        "login",
        "auth",
        user_id=user.id,
        resource_id=user.id,
        new_values={"session_id": session.id},
        context=context,
    )

    _set_auth_cookies(response, tokens, session.session_token)
    data = _token_response(tokens, session.session_token)
    data["user"] = user_out(user)
    return success(data, "Login successful")


@router.post("/refresh")
def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    body = body or RefreshRequest()
    refresh_token = body.refresh_token or request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        raise AuthenticationError("Refresh token required")

    payload = decode_refresh_token(refresh_token)
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid user ID in token")

    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        raise AuthenticationError("User not found or inactive")

    sessions = SessionService(db)
    session_token = _session_token(request, body.session_token)
    session = None
    if session_token:
        session = sessions.validate_session(session_token, refresh_token)
        if session is None or session.user_id != user.id:
            raise AuthenticationError("Invalid or expired session")

    tokens = create_token_pair(user)
    if session is not None:
        sessions.rotate_refresh_token(session, tokens["refresh_token"])

    AuditService(db).log_action("token_refresh", "auth", user_id=user.id, resource_id=user.id, context=context)

    _set_auth_cookies(response, tokens, session_token if session is not None else None)
    return success(_token_response(tokens, session_token if session is not None else None))


@router.post("/logout")
def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    session_token = _session_token(request, body.session_token if body else None)
    ended = False
    if session_token:
        ended = SessionService(db).deactivate_session(session_token)

    AuditService(db).log_action(
        "logout",
        "auth",
        user_id=current_user.user_id,
        resource_id=current_user.user_id,
        new_values={"session_ended": ended},
        context=context,
    )

    _clear_auth_cookies(response)
    return success(None, "Logged out successfully")


# ======================================================
# CURRENT USER / SESSIONS
# ======================================================

@router.get("/me")
def get_me(
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return success(user_out(UserService(db).get_by_id(current_user.user_id)))


@router.get("/sessions")
def list_sessions(
    request: Request,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    current_token = _session_token(request)
    sessions = SessionService(db).get_user_sessions(current_user.user_id)
    return success([session_out(s, current_token) for s in sessions])


@router.post("/revoke-all-sessions")
def revoke_all_sessions(
    request: Request,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    revoked = SessionService(db).deactivate_all_user_sessions(
        current_user.user_id, except_token=_session_token(request)
    )

    AuditService(db).log_action(
        "sessions_revoked",
        "auth",
        user_id=current_user.user_id,
        resource_id=current_user.user_id,
        new_values={"revoked": revoked},
        context=context,
    )
    return success({"revoked_sessions": revoked}, "Other sessions revoked")


@router.post("/change-password")
def change_password(
    data: ChangePasswordRequest,
    request: Request,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    UserService(db).change_password(current_user.user_id, data.current_password, data.new_password)
    revoked = SessionService(db).deactivate_all_user_sessions(
        current_user.user_id, except_token=_session_token(request)
    )

    AuditService(db).log_action(
        "password_changed",
        "user",
        user_id=current_user.user_id,
        resource_id=current_user.user_id,
        new_values={"revoked_sessions": revoked},
        context=context,
    )
    return success(None, "Password changed successfully")


# ======================================================
# PASSWORD RESET
# ======================================================

@router.post("/password-reset/request")
def request_password_reset(
    data: ResetRequest,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    raw_token, record = PasswordResetService(db).create_reset_token(data.user_id)

    AuditService(db).log_action(
        "password_reset_requested",
        "user",
        user_id=current_user.user_id,
        resource_id=data.user_id,
        context=context,
    )
    return success(
        {"user_id": data.user_id, "reset_token": raw_token, "expires_at": record.expires_at},
        "Password reset token issued",
    )


@router.post("/password-reset/verify")
def verify_password_reset(data: ResetVerify, db: Session = Depends(get_db)):
    record = PasswordResetService(db).verify_reset_token(data.token)
    if record is None:
        return success({"valid": False})
    return success({"valid": True, "expires_at": record.expires_at})


@router.post("/password-reset/confirm")
def confirm_password_reset(
    data: ResetConfirm,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    user = PasswordResetService(db).reset_password(data.token, data.new_password)

    AuditService(db).log_action(
        "password_reset_completed",
        "user",
        user_id=user.id,
        resource_id=user.id,
        new_values={"completed_at": datetime.utcnow()},
        context=context,
    )
    return success(None, "Password has been reset successfully")
