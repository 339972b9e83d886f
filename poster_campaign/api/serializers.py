# poster_campaign/api/serializers.py

from typing import Any, Dict, Optional

from poster_campaign.models.audit import AuditLog
from poster_campaign.models.auth import Company, User, UserSession
from poster_campaign.models.campaign import Campaign, CampaignAssignment
from poster_campaign.models.image import Image


def success(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def paginated(items, total: int, page: int, limit: int) -> Dict[str, Any]:
    pages = (total + limit - 1) // limit if limit else 0
    return {
        "items": items,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": pages},
    }


# ======================================================
# USERS / COMPANIES
# ======================================================

def user_summary(user: Optional[User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {
        "id": user.id,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
    }


def user_out(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role.value,
        "company_id": user.company_id,
        "company_name": user.company.name if user.company else None,
        "is_active": user.is_active,
        "created_at": user.created_at,
        "updated_at": user.updated_at,
    }


def company_out(company: Company, user_count: Optional[int] = None) -> Dict[str, Any]:
    data = {
        "id": company.id,
        "name": company.name,
        "contact_email": company.contact_email,
        "contact_phone": company.contact_phone,
        "address": company.address,
        "is_active": company.is_active,
        "created_at": company.created_at,
        "updated_at": company.updated_at,
    }
    if user_count is not None:
        data["user_count"] = user_count
    return data


def session_out(session: UserSession, current_token: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": session.id,
        "ip_address": session.ip_address,
        "user_agent": session.user_agent,
        "created_at": session.created_at,
        "last_activity": session.last_activity,
        "expires_at": session.expires_at,
        "is_current": current_token is not None and session.session_token == current_token,
    }


# ======================================================
# CAMPAIGNS / IMAGES
# ======================================================

def campaign_out(campaign: Campaign) -> Dict[str, Any]:
    return {
        "id": campaign.id,
        "name": campaign.name,
        "description": campaign.description,
        "company_id": campaign.company_id,
        "company_name": campaign.company.name if campaign.company else None,
        "status": campaign.status.value,
        "start_date": campaign.start_date,
        "end_date": campaign.end_date,
        "completed_at": campaign.completed_at,
        "created_by": user_summary(campaign.creator),
        "created_at": campaign.created_at,
        "updated_at": campaign.updated_at,
    }


def assignment_out(assignment: CampaignAssignment) -> Dict[str, Any]:
    contractor = assignment.contractor
    return {
        "id": assignment.id,
        "campaign_id": assignment.campaign_id,
        "contractor_id": assignment.contractor_id,
        "contractor": user_summary(contractor),
        "is_active": contractor.is_active if contractor else None,
        "assigned_at": assignment.assigned_at,
        "assigned_by": assignment.assigned_by,
    }


def image_out(image: Image) -> Dict[str, Any]:
    return {
        "id": image.id,
        "campaign_id": image.campaign_id,
        "campaign_name": image.campaign.name if image.campaign else None,
        "uploaded_by": user_summary(image.uploader),
        "filename": image.filename,
        "original_filename": image.original_filename,
        "file_size": image.file_size,
        "mime_type": image.mime_type,
        "status": image.status.value,
        "rejection_reason": image.rejection_reason,
        "reviewed_by": user_summary(image.reviewer),
        "reviewed_at": image.reviewed_at,
        "uploaded_at": image.uploaded_at,
        "file_url": f"/api/images/{image.id}/file",
    }


def audit_log_out(entry: AuditLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "username": entry.user.username if entry.user else None,
        "action": entry.action,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "old_values": entry.old_values,
        "new_values": entry.new_values,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "request_id": entry.request_id,
        "created_at": entry.created_at,
    }
