from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from poster_campaign.api.deps import get_request_context
from poster_campaign.api.serializers import company_out, success, user_out
from poster_campaign.auth.dependencies import get_current_user, require_employee
from poster_campaign.auth.schemas import AuthUser
from poster_campaign.db import get_db
from poster_campaign.errors import PermissionDeniedError
from poster_campaign.services.audit_service import AuditService, RequestContext
from poster_campaign.services.company_service import CompanyService

router = APIRouter(prefix="/companies", tags=["companies"])


class CompanyCreate(BaseModel):
    name: str
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    address: Optional[str] = None


class CompanyUpdate(BaseModel):
    name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    address: Optional[str] = None


@router.get("")
def list_companies(
    include_user_count: bool = False,
    _: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    service = CompanyService(db)
    if include_user_count:
        rows = service.list_with_user_counts()
        return success([company_out(company, count) for company, count in rows])

    return success([company_out(c) for c in service.list_companies()])


@router.get("/active")
def list_active_companies(
    _: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    return success([company_out(c) for c in CompanyService(db).list_active()])


@router.get("/{company_id}")
def get_company(
    company_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not current_user.is_employee and current_user.company_id != company_id:
        raise PermissionDeniedError("You can only view your own company")

    service = CompanyService(db)
    company = service.get_by_id(company_id)
    data = company_out(company)
    if current_user.is_employee:
        data["users"] = [user_out(u) for u in service.get_users(company.id)]
    return success(data)


@router.post("", status_code=201)
def create_company(
    data: CompanyCreate,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    company = CompanyService(db).create_company(data.model_dump())

    AuditService(db).log_action(
        "company_created",
        "company",
        user_id=current_user.user_id,
        resource_id=company.id,
        new_values=data.model_dump(),
        context=context,
    )
    return success(company_out(company), "Company created successfully")


@router.put("/{company_id}")
def update_company(
    company_id: int,
    data: CompanyUpdate,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    changes = data.model_dump(exclude_unset=True)
    company, before = CompanyService(db).update_company(company_id, changes)

    AuditService(db).log_action(
        "company_updated",
        "company",
        user_id=current_user.user_id,
        resource_id=company.id,
        old_values=before,
        new_values=changes,
        context=context,
    )
    return success(company_out(company), "Company updated successfully")


def _set_company_active(
    company_id: int,
    is_active: bool,
    current_user: AuthUser,
    db: Session,
    context: RequestContext,
):
    company = CompanyService(db).set_active(company_id, is_active)

    AuditService(db).log_action(
        "company_activated" if is_active else "company_deactivated",
        "company",
        user_id=current_user.user_id,
        resource_id=company.id,
        old_values={"is_active": not is_active},
        new_values={"is_active": is_active},
        context=context,
    )
    return success(company_out(company))


@router.put("/{company_id}/activate")
def activate_company(
    company_id: int,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return _set_company_active(company_id, True, current_user, db, context)


@router.put("/{company_id}/deactivate")
def deactivate_company(
    company_id: int,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    return _set_company_active(company_id, False, current_user, db, context)


@router.delete("/{company_id}")
def delete_company(
    company_id: int,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    before = CompanyService(db).delete_company(company_id)

    AuditService(db).log_action(
        "company_deleted",
        "company",
        user_id=current_user.user_id,
        resource_id=company_id,
        old_values=before,
        context=context,
    )
    return success(None, "Company deleted successfully")
