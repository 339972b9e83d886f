from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from poster_campaign.api.deps import get_request_context
from poster_campaign.api.serializers import image_out, paginated, success
from poster_campaign.auth.dependencies import get_current_user, require_employee, require_roles
from poster_campaign.auth.schemas import AuthUser
from poster_campaign.db import get_db
from poster_campaign.services.audit_service import AuditService, RequestContext
from poster_campaign.services.image_service import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    ImageFilters,
    ImageService,
)

router = APIRouter(prefix="/images", tags=["images"])


class ImageReview(BaseModel):
    status: str
    rejection_reason: Optional[str] = None


# ======================================================
# READS
# ======================================================

@router.get("")
def list_images(
    campaign_id: Optional[int] = None,
    uploaded_by: Optional[int] = None,
    status: Optional[str] = None,
    reviewed_by: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    filters = ImageFilters(
        campaign_id=campaign_id,
        uploaded_by=uploaded_by,
        status=status,
        reviewed_by=reviewed_by,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    items, total = ImageService(db).list_images(current_user, filters)
    return success(paginated([image_out(i) for i in items], total, page, limit))


@router.get("/pending")
def pending_images(
    campaign_id: Optional[int] = None,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    images = ImageService(db).list_pending(current_user, campaign_id)
    return success([image_out(i) for i in images])


@router.get("/stats")
def image_stats(
    campaign_id: Optional[int] = None,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
):
    return success(ImageService(db).get_stats(current_user, campaign_id))


@router.get("/campaign/{campaign_id}")
def images_by_campaign(
    campaign_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    images = ImageService(db).list_by_campaign(campaign_id, current_user)
    return success([image_out(i) for i in images])


@router.get("/uploader/{uploader_id}")
def images_by_uploader(
    uploader_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    images = ImageService(db).list_by_uploader(uploader_id, current_user)
    return success([image_out(i) for i in images])


@router.get("/{image_id}")
def get_image(
    image_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return success(image_out(ImageService(db).get_image(image_id, current_user)))


@router.get("/{image_id}/file")
def get_image_file(
    image_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    image, path, media_type = ImageService(db).get_image_file(image_id, current_user)
    return FileResponse(
        path,
        media_type=media_type,
        filename=image.original_filename,
        content_disposition_type="inline",
        headers={"Cache-Control": "private, max-age=3600"},
    )


# ======================================================
# UPLOAD / REVIEW / DELETE
# ======================================================

@router.post("/upload/{campaign_id}", status_code=201)
async def upload_image(
    campaign_id: int,
    file: UploadFile = File(...),
    current_user: AuthUser = Depends(require_roles("contractor")),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    image = await ImageService(db).upload_image(campaign_id, file, current_user, context)

    AuditService(db).log_action(
        "image_uploaded",
        "image",
        user_id=current_user.user_id,
        resource_id=image.id,
        new_values={
            "campaign_id": image.campaign_id,
            "original_filename": image.original_filename,
            "file_size": image.file_size,
            "mime_type": image.mime_type,
        },
        context=context,
    )
    return success(image_out(image), "Image uploaded successfully")


@router.put("/{image_id}/approve")
def review_image(
    image_id: int,
    data: ImageReview,
    current_user: AuthUser = Depends(require_employee),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    image, previous = ImageService(db).review_image(
        image_id, data.status, current_user, data.rejection_reason
    )

    AuditService(db).log_action(
        f"image_{image.status.value}",
        "image",
        user_id=current_user.user_id,
        resource_id=image.id,
        old_values={"status": previous.value},
        new_values={"status": image.status.value, "rejection_reason": image.rejection_reason},
        context=context,
    )
    return success(image_out(image), f"Image {image.status.value} successfully")


@router.delete("/{image_id}")
def delete_image(
    image_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    before = ImageService(db).delete_image(image_id, current_user)

    AuditService(db).log_action(
        "image_deleted",
        "image",
        user_id=current_user.user_id,
        resource_id=image_id,
        old_values=before,
        context=context,
    )
    return success(None, "Image deleted successfully")
