from poster_campaign.models.auth import (
    Company,
    LoginAttempt,
    PasswordResetToken,
    User,
    UserRole,
    UserSession,
)
from poster_campaign.models.campaign import (
    STATUS_TRANSITIONS,
    Campaign,
    CampaignAssignment,
    CampaignStatus,
)
from poster_campaign.models.image import Image, ImageStatus
from poster_campaign.models.audit import AuditLog

__all__ = [
    "AuditLog",
    "Campaign",
    "CampaignAssignment",
    "CampaignStatus",
    "Company",
    "Image",
    "ImageStatus",
    "LoginAttempt",
    "PasswordResetToken",
    "STATUS_TRANSITIONS",
    "User",
    "UserRole",
    "UserSession",
]
