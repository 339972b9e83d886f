from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from poster_campaign.api.deps import get_request_context
from poster_campaign.api.serializers import assignment_out, campaign_out, paginated, success
from poster_campaign.auth.dependencies import get_current_user, require_employee
from poster_campaign.auth.schemas import AuthUser
from poster_campaign.db import get_db
from poster_campaign.services.audit_service import AuditService, RequestContext
from poster_campaign.services.campaign_service import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    CampaignFilters,
    CampaignService,
)

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


# ======================================================
# REQUEST MODELS
# ======================================================

class CampaignCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    company_id: int
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class CampaignUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str


class ContractorAssign(BaseModel):
    contractor_id: int


# ======================================================
# READS
# ======================================================

@router.get("")
def list_campaigns(
    status: Optional[str] = None,
    company_id: Optional[int] = None,
    search: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    filters = CampaignFilters(
        status=status,
        company_id=company_id,
        search=search,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    items, total = CampaignService(db).list_campaigns(current_user, filters)
    return success(paginated([campaign_out(c) for c in items], total, page, limit))


@router.get("/stats")
def campaign_stats(
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    return success(CampaignService(db).get_stats(current_user))


@router.get("/company/{company_id}")
def campaigns_by_company(
    company_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    campaigns = CampaignService(db).list_by_company(company_id, current_user)
    return success([campaign_out(c) for c in campaigns])


@router.get("/contractor/{contractor_id}")
def campaigns_by_contractor(
    contractor_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    campaigns = CampaignService(db).list_by_contractor(contractor_id, current_user)
    return success([campaign_out(c) for c in campaigns])


@router.get("/{campaign_id}")
def get_campaign(
    campaign_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service = CampaignService(db)
    campaign = service.get_campaign(campaign_id, current_user)

    data = campaign_out(campaign)
    data["assigned_contractors"] = [
        assignment_out(a) for a in service.get_assignments(campaign.id, current_user)
    ]
    data["progress"] = service.get_progress(campaign.id, current_user)
    return success(data)


@router.get("/{campaign_id}/progress")
def campaign_progress(
    campaign_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return success(CampaignService(db).get_progress(campaign_id, current_user))


@router.get("/{campaign_id}/contractors")
def campaign_contractors(
    campaign_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    assignments = CampaignService(db).get_assignments(campaign_id, current_user)
    return success([assignment_out(a) for a in assignments])


# ======================================================
# WRITES
# ======================================================

@router.post("", status_code=201)
def create_campaign(
    data: CampaignCreate,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    campaign = CampaignService(db).create_campaign(data.model_dump(), current_user)

    AuditService(db).log_action(
        "campaign_created",
        "campaign",
        user_id=current_user.user_id,
        resource_id=campaign.id,
        new_values=data.model_dump(),
        context=context,
    )
    return success(campaign_out(campaign), "Campaign created successfully")


@router.put("/{campaign_id}")
def update_campaign(
    campaign_id: int,
    data: CampaignUpdate,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    changes = data.model_dump(exclude_unset=True)
    campaign, before = CampaignService(db).update_campaign(campaign_id, changes, current_user)

    AuditService(db).log_action(
        "campaign_updated",
        "campaign",
        user_id=current_user.user_id,
        resource_id=campaign.id,
        old_values=before,
        new_values=changes,
        context=context,
    )
    return success(campaign_out(campaign), "Campaign updated successfully")


@router.put("/{campaign_id}/status")
def update_campaign_status(
    campaign_id: int,
    data: StatusUpdate,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    campaign, previous = CampaignService(db).update_status(campaign_id, data.status, current_user)

    AuditService(db).log_action(
        "campaign_status_changed",
        "campaign",
        user_id=current_user.user_id,
        resource_id=campaign.id,
        old_values={"status": previous.value},
        new_values={"status": campaign.status.value, "completed_at": campaign.completed_at},
        context=context,
    )
    return success(campaign_out(campaign), "Campaign status updated successfully")


@router.delete("/{campaign_id}")
def delete_campaign(
    campaign_id: int,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    before = CampaignService(db).delete_campaign(campaign_id, current_user)

    AuditService(db).log_action(
        "campaign_deleted",
        "campaign",
        user_id=current_user.user_id,
        resource_id=campaign_id,
        old_values=before,
        context=context,
    )
    return success(None, "Campaign deleted successfully")


@router.post("/{campaign_id}/contractors", status_code=201)
def assign_contractor(
    campaign_id: int,
    data: ContractorAssign,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    assignment = CampaignService(db).assign_contractor(campaign_id, data.contractor_id, current_user)

    AuditService(db).log_action(
        "contractor_assigned",
        "campaign",
        user_id=current_user.user_id,
        resource_id=campaign_id,
        new_values={"contractor_id": data.contractor_id},
        context=context,
    )
    return success(assignment_out(assignment), "Contractor assigned successfully")


@router.delete("/{campaign_id}/contractors/{contractor_id}")
def remove_contractor(
    campaign_id: int,
    contractor_id: int,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    CampaignService(db).remove_contractor(campaign_id, contractor_id, current_user)

    AuditService(db).log_action(
        "contractor_removed",
        "campaign",
        user_id=current_user.user_id,
        resource_id=campaign_id,
        old_values={"contractor_id": contractor_id},
        context=context,
    )
    return success(None, "Contractor removed successfully")
