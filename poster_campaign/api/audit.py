import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from poster_campaign.api.deps import get_request_context
from poster_campaign.api.serializers import audit_log_out, success
from poster_campaign.auth.dependencies import require_employee
from poster_campaign.auth.schemas import AuthUser
from poster_campaign.db import get_db
from poster_campaign.services.audit_service import AuditService, RequestContext
from poster_campaign.services.password_reset_service import PasswordResetService
from poster_campaign.services.security_service import SecurityService
from poster_campaign.services.session_service import SessionService
from poster_campaign.services.storage import storage_service
from poster_campaign.services.user_service import UserService

logger = logging.getLogger("poster-audit")

router = APIRouter(prefix="/audit", tags=["audit"])


class CleanupRequest(BaseModel):
    audit_retention_days: int = Field(365, ge=1)
    session_retention_days: int = Field(90, ge=1)
    reset_token_retention_days: int = Field(30, ge=1)
    login_attempt_retention_days: int = Field(90, ge=1)
    temp_file_max_age_hours: int = Field(24, ge=1)


@router.get("/logs")
def audit_logs(
    user_id: Optional[int] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    _: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    entries = AuditService(db).get_audit_logs(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    return success([audit_log_out(e) for e in entries])


@router.get("/stats")
def audit_stats(
    days: int = Query(30, ge=1, le=365),
    _: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    stats = AuditService(db).get_audit_stats(days)
    stats["recent_activity"] = [audit_log_out(e) for e in stats["recent_activity"]]
    return success(stats)


@router.get("/security/login-stats")
def login_stats(
    days: int = Query(7, ge=1, le=365),
    _: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    return success(SecurityService(db).get_login_stats(days))


@router.get("/security/session-stats")
def session_stats(
    _: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    return success(SessionService(db).get_session_stats())


@router.get("/security/password-reset-stats")
def password_reset_stats(
    days: int = Query(30, ge=1, le=365),
    _: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    return success(PasswordResetService(db).get_reset_stats(days))


@router.get("/user/{user_id}/activity")
def user_activity(
    user_id: int,
    limit: int = Query(50, ge=1, le=1000),
    _: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    user = UserService(db).get_by_id(user_id)
    entries = AuditService(db).get_audit_logs(user_id=user.id, limit=limit)
    return success([audit_log_out(e) for e in entries])


@router.post("/cleanup")
def cleanup(
    data: Optional[CleanupRequest] = None,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    data = data or CleanupRequest()
    audit = AuditService(db)

    results = {
        "audit_logs": audit.cleanup_old_logs(data.audit_retention_days),
        "sessions": SessionService(db).cleanup_old_sessions(data.session_retention_days),
        "password_reset_tokens": PasswordResetService(db).cleanup_expired_tokens(
            data.reset_token_retention_days
        ),
        "login_attempts": SecurityService(db).cleanup_old_attempts(data.login_attempt_retention_days),
        "temp_files": storage_service.cleanup_temp_files(data.temp_file_max_age_hours),
    }
    logger.info("Maintenance cleanup by user %s: %s", current_user.user_id, results)

    audit.log_action(
        "maintenance_cleanup",
        "system",
        user_id=current_user.user_id,
        new_values=results,
        context=context,
    )
    return success(results, "Cleanup completed")
