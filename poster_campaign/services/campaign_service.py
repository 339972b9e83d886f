import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session, joinedload

from poster_campaign.auth.schemas import AuthUser
from poster_campaign.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    translate_integrity_error,
)
from poster_campaign.models.auth import Company, User, UserRole
from poster_campaign.models.campaign import (
    STATUS_TRANSITIONS,
    Campaign,
    CampaignAssignment,
    CampaignStatus,
)
from poster_campaign.models.image import Image, ImageStatus
from poster_campaign.services.storage import storage_service

logger = logging.getLogger("poster-campaigns")

CLIENT_COMPLETED_WINDOW = timedelta(days=30)
ASSIGNABLE_STATUSES = (CampaignStatus.NEW, CampaignStatus.IN_PROGRESS)
EDITABLE_FIELDS = ("name", "description", "start_date", "end_date", "status")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass
class CampaignFilters:
    status: Optional[str] = None
    company_id: Optional[int] = None
    search: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE


def parse_status(value: Any) -> CampaignStatus:
    try:
        return CampaignStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid campaign status: {value}")


def check_transition(current: CampaignStatus, target: CampaignStatus) -> None:
    if target not in STATUS_TRANSITIONS[current]:
        raise ValidationError(
            f"Invalid status transition from {current.value} to {target.value}"
        )


def _snapshot(campaign: Campaign) -> Dict[str, Any]:
    return {
        "name": campaign.name,
        "description": campaign.description,
        "company_id": campaign.company_id,
        "status": campaign.status.value,
        "start_date": campaign.start_date,
        "end_date": campaign.end_date,
        "completed_at": campaign.completed_at,
    }


class CampaignService:
    def __init__(self, db: Session):
        self.db = db

    # ======================================================
    # ACCESS CONTROL
    # ======================================================

    def is_assigned(self, campaign_id: int, contractor_id: int) -> bool:
        return (
            self.db.query(CampaignAssignment.id)
            .filter(
                CampaignAssignment.campaign_id == campaign_id,
                CampaignAssignment.contractor_id == contractor_id,
            )
            .first()
            is not None
        )

    def can_access(self, campaign: Campaign, user: AuthUser) -> bool:
        if user.is_employee:
            return True
        if user.role == UserRole.CLIENT.value:
            return user.company_id is not None and campaign.company_id == user.company_id
        if user.role == UserRole.CONTRACTOR.value:
            return self.is_assigned(campaign.id, user.user_id)
        return False

    def scope_query(self, query: Query, user: AuthUser) -> Query:
        """Restrict a Campaign query to what ``user`` may see."""
        if user.is_employee:
            return query

        if user.role == UserRole.CLIENT.value:
            if not user.company_id:
                raise PermissionDeniedError("Client users must be associated with a company")
            recent_cutoff = datetime.utcnow() - CLIENT_COMPLETED_WINDOW
            return query.filter(
                Campaign.company_id == user.company_id,
                or_(
                    Campaign.status != CampaignStatus.COMPLETED,
                    and_(Campaign.completed_at.isnot(None), Campaign.completed_at >= recent_cutoff),
                ),
            )

        if user.role == UserRole.CONTRACTOR.value:
            assigned = select(CampaignAssignment.campaign_id).where(
                CampaignAssignment.contractor_id == user.user_id
            )
            return query.filter(Campaign.id.in_(assigned))

        raise PermissionDeniedError("Invalid user role")

    @staticmethod
    def require_employee(user: AuthUser, action: str) -> None:
        if not user.is_employee:
            raise PermissionDeniedError(f"Only company employees can {action}")

    # ======================================================
    # READS
    # ======================================================

    def _base_query(self) -> Query:
        return self.db.query(Campaign).options(
            joinedload(Campaign.company),
            joinedload(Campaign.creator),
        )

    def get_campaign(self, campaign_id: int, user: AuthUser) -> Campaign:
        campaign = self._base_query().filter(Campaign.id == campaign_id).first()
        if not campaign:
            raise NotFoundError("Campaign not found")
        if not self.can_access(campaign, user):
            raise PermissionDeniedError("Insufficient permissions to access this campaign")
        return campaign

    def list_campaigns(self, user: AuthUser, filters: CampaignFilters) -> Tuple[List[Campaign], int]:
        query = self.scope_query(self.db.query(Campaign), user)

        if filters.status:
            query = query.filter(Campaign.status == parse_status(filters.status))
        if filters.company_id is not None:
            query = query.filter(Campaign.company_id == filters.company_id)
        if filters.search:
            term = f"%{filters.search.strip().lower()}%"
            query = query.filter(
                or_(
                    func.lower(Campaign.name).like(term),
                    func.lower(func.coalesce(Campaign.description, "")).like(term),
                )
            )
        if filters.start_date:
            query = query.filter(Campaign.start_date >= filters.start_date)
        if filters.end_date:
            query = query.filter(Campaign.end_date <= filters.end_date)

        page = max(1, filters.page or 1)
        limit = min(max(1, filters.limit or DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        total = query.count()
        items = (
            query.options(joinedload(Campaign.company), joinedload(Campaign.creator))
            .order_by(Campaign.created_at.desc(), Campaign.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def list_by_company(self, company_id: int, user: AuthUser) -> List[Campaign]:
        if user.role == UserRole.CLIENT.value and user.company_id != company_id:
            raise PermissionDeniedError("Clients can only access campaigns from their own company")

        query = self.scope_query(self._base_query(), user).filter(Campaign.company_id == company_id)
        return query.order_by(Campaign.created_at.desc(), Campaign.id.desc()).all()

    def list_by_contractor(self, contractor_id: int, user: AuthUser) -> List[Campaign]:
        if user.role == UserRole.CONTRACTOR.value and user.user_id != contractor_id:
            raise PermissionDeniedError("Contractors can only access their own assigned campaigns")

        assigned = select(CampaignAssignment.campaign_id).where(
            CampaignAssignment.contractor_id == contractor_id
        )
        query = self.scope_query(self._base_query(), user).filter(Campaign.id.in_(assigned))
        return query.order_by(Campaign.created_at.desc(), Campaign.id.desc()).all()

    def get_assignments(self, campaign_id: int, user: AuthUser) -> List[CampaignAssignment]:
        campaign = self.get_campaign(campaign_id, user)
        return (
            self.db.query(CampaignAssignment)
            .options(joinedload(CampaignAssignment.contractor))
            .filter(CampaignAssignment.campaign_id == campaign.id)
            .order_by(CampaignAssignment.assigned_at.asc(), CampaignAssignment.id.asc())
            .all()
        )

    def get_progress(self, campaign_id: int, user: AuthUser) -> Dict[str, Any]:
        campaign = self.get_campaign(campaign_id, user)

        counts = {status.value: 0 for status in ImageStatus}
        rows = (
            self.db.query(Image.status, func.count(Image.id))
            .filter(Image.campaign_id == campaign.id)
            .group_by(Image.status)
            .all()
        )
        for status, count in rows:
            counts[status.value] = count

        total = sum(counts.values())
        contractors = (
            self.db.query(func.count(CampaignAssignment.id))
            .filter(CampaignAssignment.campaign_id == campaign.id)
            .scalar()
        )

        return {
            "campaign_id": campaign.id,
            "status": campaign.status.value,
            "total_images": total,
            "pending_images": counts[ImageStatus.PENDING.value],
            "approved_images": counts[ImageStatus.APPROVED.value],
            "rejected_images": counts[ImageStatus.REJECTED.value],
            "approval_rate": round(counts[ImageStatus.APPROVED.value] / total * 100, 2) if total else 0.0,
            "assigned_contractors": contractors or 0,
        }

    def get_stats(self, user: AuthUser) -> Dict[str, Any]:
        self.require_employee(user, "access campaign statistics")

        by_status = {status.value: 0 for status in CampaignStatus}
        for status, count in (
            self.db.query(Campaign.status, func.count(Campaign.id)).group_by(Campaign.status).all()
        ):
            by_status[status.value] = count

        return {"total": sum(by_status.values()), "by_status": by_status}

    # ======================================================
    # WRITES
    # ======================================================

    @staticmethod
    def _check_dates(start: Optional[date], end: Optional[date]) -> None:
        if start and end and end <= start:
            raise ValidationError("End date must be after start date")

    def create_campaign(self, data: Dict[str, Any], user: AuthUser) -> Campaign:
        self.require_employee(user, "create campaigns")

        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Campaign name is required")
        if len(name) > 255:
            raise ValidationError("Campaign name must be no more than 255 characters")

        company = self.db.query(Company).filter(Company.id == data.get("company_id")).first()
        if not company:
            raise ValidationError("Company not found")
        if not company.is_active:
            raise ValidationError("Cannot create campaigns for an inactive company")

        self._check_dates(data.get("start_date"), data.get("end_date"))

        campaign = Campaign(
            name=name,
            description=data.get("description"),
            company_id=company.id,
            status=CampaignStatus.NEW,
            start_date=data.get("start_date"),
            end_date=data.get("end_date"),
            created_by=user.user_id,
        )
        self.db.add(campaign)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise translate_integrity_error(exc)

        self.db.refresh(campaign)
        logger.info("Campaign %s created by user %s", campaign.id, user.user_id)
        return campaign

    def _apply_status(self, campaign: Campaign, target: CampaignStatus) -> None:
        check_transition(campaign.status, target)
        campaign.status = target
        if target == CampaignStatus.COMPLETED:
            campaign.completed_at = datetime.utcnow()

    def update_campaign(
        self, campaign_id: int, data: Dict[str, Any], user: AuthUser
    ) -> Tuple[Campaign, Dict[str, Any]]:
        """Update editable fields. Returns the campaign and its prior values."""
        self.require_employee(user, "update campaigns")
        campaign = self.get_campaign(campaign_id, user)

        updates = {key: value for key, value in data.items() if key in EDITABLE_FIELDS}

        if "name" in updates:
            updates["name"] = (updates["name"] or "").strip()
            if not updates["name"]:
                raise ValidationError("Campaign name is required")

        self._check_dates(
            updates.get("start_date", campaign.start_date),
            updates.get("end_date", campaign.end_date),
        )

        target_status = None
        if updates.get("status") is not None:
            target_status = parse_status(updates.pop("status"))
            if target_status != campaign.status:
                check_transition(campaign.status, target_status)
            else:
                target_status = None
        else:
            updates.pop("status", None)

        before = _snapshot(campaign)
        for key, value in updates.items():
            setattr(campaign, key, value)
        if target_status is not None:
            self._apply_status(campaign, target_status)

        self.db.commit()
        self.db.refresh(campaign)
        return campaign, before

    def update_status(
        self, campaign_id: int, status: str, user: AuthUser
    ) -> Tuple[Campaign, CampaignStatus]:
        """Move a campaign along its lifecycle. Returns the campaign and its previous status."""
        self.require_employee(user, "change campaign status")
        campaign = self.get_campaign(campaign_id, user)

        previous = campaign.status
        self._apply_status(campaign, parse_status(status))

        self.db.commit()
        self.db.refresh(campaign)
        logger.info(
            "Campaign %s status %s -> %s by user %s",
            campaign.id,
            previous.value,
            campaign.status.value,
            user.user_id,
        )
        return campaign, previous

    def delete_campaign(self, campaign_id: int, user: AuthUser) -> Dict[str, Any]:
        """Delete a campaign with its assignments and images. Returns its final values."""
        self.require_employee(user, "delete campaigns")
        campaign = self.get_campaign(campaign_id, user)

        before = _snapshot(campaign)
        file_paths = [image.file_path for image in campaign.images]

        self.db.delete(campaign)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise translate_integrity_error(exc)

        for file_path in file_paths:
            storage_service.delete_file(file_path)

        logger.info("Campaign %s deleted by user %s", campaign_id, user.user_id)
        return before

    def assign_contractor(self, campaign_id: int, contractor_id: int, user: AuthUser) -> CampaignAssignment:
        self.require_employee(user, "assign contractors")
        campaign = self.get_campaign(campaign_id, user)

        if campaign.status not in ASSIGNABLE_STATUSES:
            raise ValidationError("Cannot assign contractors to completed or cancelled campaigns")

        contractor = self.db.query(User).filter(User.id == contractor_id).first()
        if not contractor:
            raise NotFoundError("Contractor not found")
        if contractor.role != UserRole.CONTRACTOR:
            raise ValidationError("User is not a contractor")
        if not contractor.is_active:
            raise ValidationError("Contractor account is inactive")

        if self.is_assigned(campaign.id, contractor.id):
            raise ConflictError("Contractor is already assigned to this campaign")

        assignment = CampaignAssignment(
            campaign_id=campaign.id,
            contractor_id=contractor.id,
            assigned_by=user.user_id,
        )
        self.db.add(assignment)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise translate_integrity_error(exc, "Contractor is already assigned to this campaign")

        self.db.refresh(assignment)
        logger.info("Contractor %s assigned to campaign %s", contractor.id, campaign.id)
        return assignment

    def remove_contractor(self, campaign_id: int, contractor_id: int, user: AuthUser) -> None:
        self.require_employee(user, "remove contractor assignments")
        campaign = self.get_campaign(campaign_id, user)

        assignment = (
            self.db.query(CampaignAssignment)
            .filter(
                CampaignAssignment.campaign_id == campaign.id,
                CampaignAssignment.contractor_id == contractor_id,
            )
            .first()
        )
        if not assignment:
            raise NotFoundError("Contractor assignment not found")

        self.db.delete(assignment)
        self.db.commit()
        logger.info("Contractor %s removed from campaign %s", contractor_id, campaign.id)
