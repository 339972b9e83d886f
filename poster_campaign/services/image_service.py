import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fastapi import UploadFile
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session, joinedload

from poster_campaign.auth.schemas import AuthUser
from poster_campaign.config import settings
from poster_campaign.errors import (
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    translate_integrity_error,
)
from poster_campaign.models.auth import UserRole
from poster_campaign.models.campaign import Campaign, CampaignStatus
from poster_campaign.models.image import Image, ImageStatus
from poster_campaign.services.audit_service import AuditService, RequestContext
from poster_campaign.services.campaign_service import CampaignService
from poster_campaign.services.file_security import file_security_service
from poster_campaign.services.storage import storage_service

logger = logging.getLogger("poster-images")

MAX_REJECTION_REASON = 500
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

MIME_BY_EXTENSION = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


@dataclass
class ImageFilters:
    campaign_id: Optional[int] = None
    uploaded_by: Optional[int] = None
    status: Optional[str] = None
    reviewed_by: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE


def parse_image_status(value: Any) -> ImageStatus:
    try:
        return ImageStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid image status: {value}")


def _snapshot(image: Image) -> Dict[str, Any]:
    return {
        "campaign_id": image.campaign_id,
        "uploaded_by": image.uploaded_by,
        "filename": image.filename,
        "original_filename": image.original_filename,
        "status": image.status.value,
        "rejection_reason": image.rejection_reason,
        "reviewed_by": image.reviewed_by,
    }


class ImageService:
    def __init__(self, db: Session):
        self.db = db
        self.campaigns = CampaignService(db)
        self.audit = AuditService(db)

    # ======================================================
    # ACCESS CONTROL
    # ======================================================

    def can_access(self, image: Image, user: AuthUser) -> bool:
        if user.is_employee:
            return True
        if user.role == UserRole.CLIENT.value:
            return user.company_id is not None and image.campaign.company_id == user.company_id
        if user.role == UserRole.CONTRACTOR.value:
            return image.uploaded_by == user.user_id or self.campaigns.is_assigned(
                image.campaign_id, user.user_id
            )
        return False

    def _scope_query(self, query: Query, user: AuthUser) -> Query:
        if user.is_employee:
            return query
        if user.role == UserRole.CLIENT.value:
            if not user.company_id:
                raise PermissionDeniedError("Client users must be associated with a company")
            company_campaigns = select(Campaign.id).where(Campaign.company_id == user.company_id)
            return query.filter(Image.campaign_id.in_(company_campaigns))
        if user.role == UserRole.CONTRACTOR.value:
            return query.filter(Image.uploaded_by == user.user_id)
        raise PermissionDeniedError("Invalid user role")

    @staticmethod
    def _with_relations(query: Query) -> Query:
        return query.options(
            joinedload(Image.campaign),
            joinedload(Image.uploader),
            joinedload(Image.reviewer),
        )

    # ======================================================
    # READS
    # ======================================================

    def get_image(self, image_id: int, user: AuthUser) -> Image:
        image = self._with_relations(self.db.query(Image)).filter(Image.id == image_id).first()
        if not image:
            raise NotFoundError("Image not found")
        if not self.can_access(image, user):
            raise PermissionDeniedError("Insufficient permissions to access this image")
        return image

    def get_image_file(self, image_id: int, user: AuthUser) -> Tuple[Image, Path, str]:
        image = self.get_image(image_id, user)
        path = storage_service.resolve(image.file_path)
        if not path.is_file():
            logger.error("Image %s is missing its file at %s", image.id, image.file_path)
            raise NotFoundError("Image file not found")

        media_type = MIME_BY_EXTENSION.get(path.suffix.lower(), "application/octet-stream")
        return image, path, media_type

    def list_images(self, user: AuthUser, filters: ImageFilters) -> Tuple[List[Image], int]:
        if filters.campaign_id is not None and user.role == UserRole.CLIENT.value:
            campaign = self.db.query(Campaign).filter(Campaign.id == filters.campaign_id).first()
            if campaign and campaign.company_id != user.company_id:
                raise PermissionDeniedError("Access denied to images from this campaign")

        query = self._scope_query(self.db.query(Image), user)

        if filters.campaign_id is not None:
            query = query.filter(Image.campaign_id == filters.campaign_id)
        if filters.uploaded_by is not None:
            query = query.filter(Image.uploaded_by == filters.uploaded_by)
        if filters.status:
            query = query.filter(Image.status == parse_image_status(filters.status))
        if filters.reviewed_by is not None:
            query = query.filter(Image.reviewed_by == filters.reviewed_by)
        if filters.start_date:
            query = query.filter(Image.uploaded_at >= filters.start_date)
        if filters.end_date:
            query = query.filter(Image.uploaded_at <= filters.end_date)

        page = max(1, filters.page or 1)
        limit = min(max(1, filters.limit or DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        total = query.count()
        items = (
            self._with_relations(query)
            .order_by(Image.uploaded_at.desc(), Image.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def list_by_campaign(self, campaign_id: int, user: AuthUser) -> List[Image]:
        campaign = self.campaigns.get_campaign(campaign_id, user)
        query = self._scope_query(self.db.query(Image), user).filter(Image.campaign_id == campaign.id)
        return self._with_relations(query).order_by(Image.uploaded_at.desc(), Image.id.desc()).all()

    def list_by_uploader(self, uploader_id: int, user: AuthUser) -> List[Image]:
        if user.role == UserRole.CLIENT.value:
            raise PermissionDeniedError("Clients cannot access images by uploader")
        if user.role == UserRole.CONTRACTOR.value and user.user_id != uploader_id:
            raise PermissionDeniedError("Contractors can only access their own uploaded images")

        query = self.db.query(Image).filter(Image.uploaded_by == uploader_id)
        return self._with_relations(query).order_by(Image.uploaded_at.desc(), Image.id.desc()).all()

    def list_pending(self, user: AuthUser, campaign_id: Optional[int] = None) -> List[Image]:
        if not user.is_employee:
            raise PermissionDeniedError("Only company employees can access pending images for review")

        query = self.db.query(Image).filter(Image.status == ImageStatus.PENDING)
        if campaign_id is not None:
            query = query.filter(Image.campaign_id == campaign_id)
        return self._with_relations(query).order_by(Image.uploaded_at.asc(), Image.id.asc()).all()

    def get_stats(self, user: AuthUser, campaign_id: Optional[int] = None) -> Dict[str, int]:
        if not user.is_employee:
            raise PermissionDeniedError("Only company employees can access image statistics")

        query = self.db.query(Image.status, func.count(Image.id))
        if campaign_id is not None:
            query = query.filter(Image.campaign_id == campaign_id)

        stats = {status.value: 0 for status in ImageStatus}
        for status, count in query.group_by(Image.status).all():
            stats[status.value] = count
        stats["total"] = sum(stats.values())
        return stats

    # ======================================================
    # UPLOAD
    # ======================================================

    def _check_upload_allowed(self, campaign_id: int, user: AuthUser) -> Campaign:
        if user.role != UserRole.CONTRACTOR.value:
            raise PermissionDeniedError("Only contractors can upload images")

        campaign = self.db.query(Campaign).filter(Campaign.id == campaign_id).first()
        if not campaign:
            raise NotFoundError("Campaign not found")
        if campaign.status != CampaignStatus.IN_PROGRESS:
            raise ValidationError("Images can only be uploaded to campaigns that are in progress")
        if not self.campaigns.is_assigned(campaign.id, user.user_id):
            raise PermissionDeniedError("You are not assigned to this campaign")
        return campaign

    async def upload_image(
        self,
        campaign_id: int,
        upload: UploadFile,
        user: AuthUser,
        context: Optional[RequestContext] = None,
    ) -> Image:
        campaign = self._check_upload_allowed(campaign_id, user)

        original_filename = Path(upload.filename or "").name
        filename = storage_service.generate_filename(user.user_id, original_filename)
        temp_path = await storage_service.save_to_temp(upload, filename, settings.MAX_FILE_SIZE)

        try:
            check = file_security_service.validate_upload(
                original_filename, upload.content_type or "", temp_path.stat().st_size
            )
            if not check.valid:
                raise ValidationError(check.errors[0], details=check.errors)
            for warning in check.warnings:
                logger.warning("Upload %r from user %s: %s", original_filename, user.user_id, warning)

            scan = file_security_service.scan_file(temp_path)
            if not scan.is_safe:
                self.audit.log_action(
                    "file_security_threat_detected",
                    "image",
                    user_id=user.user_id,
                    new_values={
                        "campaign_id": campaign.id,
                        "original_filename": original_filename,
                        "threats": scan.threats,
                        "file_hash": scan.file_hash,
                    },
                    context=context,
                )
                raise ValidationError("File failed security scan", details=scan.threats)
        except Exception:
            storage_service.delete_path(temp_path)
            raise

        file_path = storage_service.move_to_campaign(temp_path, campaign.id, filename)

        image = Image(
            campaign_id=campaign.id,
            uploaded_by=user.user_id,
            filename=filename,
            original_filename=original_filename[:255],
            file_path=file_path,
            file_size=scan.file_size,
            mime_type=scan.detected_mime_type,
            status=ImageStatus.PENDING,
        )
        self.db.add(image)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            storage_service.delete_file(file_path)
            raise translate_integrity_error(exc)

        self.db.refresh(image)
        logger.info(
            "Image %s uploaded to campaign %s by user %s (%d bytes)",
            image.id,
            campaign.id,
            user.user_id,
            image.file_size,
        )
        return image

    # ======================================================
    # REVIEW / DELETE
    # ======================================================

    def review_image(
        self,
        image_id: int,
        status: str,
        user: AuthUser,
        rejection_reason: Optional[str] = None,
    ) -> Tuple[Image, ImageStatus]:
        """Approve or reject a pending image. Returns the image and its previous status."""
        if not user.is_employee:
            raise PermissionDeniedError("Only company employees can approve or reject images")

        target = parse_image_status(status)
        if target == ImageStatus.PENDING:
            raise ValidationError("Status must be approved or rejected")

        reason = (rejection_reason or "").strip()
        if target == ImageStatus.REJECTED:
            if not reason:
                raise ValidationError("Rejection reason is required when rejecting an image")
            if len(reason) > MAX_REJECTION_REASON:
                raise ValidationError(
                    f"Rejection reason must be no more than {MAX_REJECTION_REASON} characters"
                )

        image = self.get_image(image_id, user)
        if image.status != ImageStatus.PENDING:
            raise ValidationError(f"Image has already been {image.status.value}")

        previous = image.status
        image.status = target
        image.rejection_reason = reason if target == ImageStatus.REJECTED else None
        image.reviewed_by = user.user_id
        image.reviewed_at = datetime.utcnow()

        self.db.commit()
        self.db.refresh(image)
        logger.info("Image %s %s by user %s", image.id, target.value, user.user_id)
        return image, previous

    def delete_image(self, image_id: int, user: AuthUser) -> Dict[str, Any]:
        """Delete an image row and its file. Returns its final values."""
        image = self.get_image(image_id, user)

        if user.role == UserRole.CONTRACTOR.value:
            if image.uploaded_by != user.user_id:
                raise PermissionDeniedError("You can only delete your own images")
            if image.status != ImageStatus.PENDING:
                raise ValidationError("You can only delete images that are still pending review")
        elif not user.is_employee:
            raise PermissionDeniedError("Insufficient permissions to delete images")

        before = _snapshot(image)
        file_path = image.file_path

        self.db.delete(image)
        self.db.commit()

        storage_service.delete_file(file_path)
        logger.info("Image %s deleted by user %s", image_id, user.user_id)
        return before
