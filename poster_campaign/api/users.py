from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from poster_campaign.api.deps import get_request_context
from poster_campaign.api.serializers import success, user_out
from poster_campaign.auth.dependencies import get_current_user, require_employee
from poster_campaign.auth.schemas import AuthUser
from poster_campaign.db import get_db
from poster_campaign.errors import PermissionDeniedError
from poster_campaign.services.audit_service import AuditService, RequestContext
from poster_campaign.services.user_service import UserService

router = APIRouter(prefix="/users", tags=["users"])


# ======================================================
# REQUEST MODELS
# ======================================================

class UserCreate(BaseModel):
    username: str
    password: str
    first_name: str
    last_name: str
    role: str
    company_id: Optional[int] = None


class UserUpdate(BaseModel):
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None
    company_id: Optional[int] = None


class UserStatusUpdate(BaseModel):
    is_active: bool


# ======================================================
# ROUTES
# ======================================================

@router.get("")
def list_users(
    role: Optional[str] = None,
    company_id: Optional[int] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    _: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    users = UserService(db).list_users(
        role=role, company_id=company_id, is_active=is_active, search=search
    )
    return success([user_out(u) for u in users])


@router.get("/stats")
def user_stats(
    _: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    return success(UserService(db).get_stats())


@router.get("/company/{company_id}")
def users_by_company(
    company_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not current_user.is_employee and current_user.company_id != company_id:
        raise PermissionDeniedError("You can only view users from your own company")

    users = UserService(db).list_by_company(company_id)
    return success([user_out(u) for u in users])


@router.get("/{user_id}")
def get_user(
    user_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not current_user.is_employee and current_user.user_id != user_id:
        raise PermissionDeniedError("Insufficient permissions to view this user")

    return success(user_out(UserService(db).get_by_id(user_id)))


@router.post("", status_code=201)
def create_user(
    data: UserCreate,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    user = UserService(db).create_user(data.model_dump())

    AuditService(db).log_action(
        "user_created",
        "user",
        user_id=current_user.user_id,
        resource_id=user.id,
        new_values={"username": user.username, "role": user.role.value, "company_id": user.company_id},
        context=context,
    )
    return success(user_out(user), "User created successfully")


@router.put("/{user_id}")
def update_user(
    user_id: int,
    data: UserUpdate,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    user, before = UserService(db).update_user(
        user_id, data.model_dump(exclude_unset=True), current_user
    )

    AuditService(db).log_action(
        "user_updated",
        "user",
        user_id=current_user.user_id,
        resource_id=user.id,
        old_values=before,
        new_values=data.model_dump(exclude_unset=True),
        context=context,
    )
    return success(user_out(user), "User updated successfully")


@router.delete("/{user_id}")
def delete_user(
    user_id: int,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    user = UserService(db).delete_user(user_id, current_user)

    AuditService(db).log_action(
        "user_deleted",
        "user",
        user_id=current_user.user_id,
        resource_id=user.id,
        old_values={"is_active": True},
        new_values={"is_active": False},
        context=context,
    )
    return success(None, "User deactivated successfully")


@router.patch("/{user_id}/status")
def set_user_status(
    user_id: int,
    data: UserStatusUpdate,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    user = UserService(db).set_active(user_id, data.is_active, current_user)

    AuditService(db).log_action(
        "user_activated" if data.is_active else "user_deactivated",
        "user",
        user_id=current_user.user_id,
        resource_id=user.id,
        new_values={"is_active": user.is_active},
        context=context,
    )
    return success(user_out(user))
