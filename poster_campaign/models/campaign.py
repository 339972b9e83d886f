from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, Date, Enum, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from poster_campaign.db import Base
from poster_campaign.models.auth import enum_values


class CampaignStatus(str, enum.Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Forward-only lifecycle; completed and cancelled are terminal
STATUS_TRANSITIONS = {
    CampaignStatus.NEW: {CampaignStatus.IN_PROGRESS, CampaignStatus.CANCELLED},
    CampaignStatus.IN_PROGRESS: {CampaignStatus.COMPLETED, CampaignStatus.CANCELLED},
    CampaignStatus.COMPLETED: set(),
    CampaignStatus.CANCELLED: set(),
}


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(
        Enum(CampaignStatus, values_callable=enum_values, name="campaign_status"),
        default=CampaignStatus.NEW,
        nullable=False,
        index=True,
    )
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    company = relationship("Company", back_populates="campaigns")
    creator = relationship("User", foreign_keys=[created_by])
    assignments = relationship(
        "CampaignAssignment",
        back_populates="campaign",
        cascade="all, delete-orphan",
    )
    images = relationship("Image", back_populates="campaign", cascade="all, delete-orphan")


class CampaignAssignment(Base):
    __tablename__ = "campaign_assignments"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    contractor_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_at = Column(DateTime, default=datetime.utcnow)
    assigned_by = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    campaign = relationship("Campaign", back_populates="assignments")
    contractor = relationship("User", foreign_keys=[contractor_id])

    __table_args__ = (
        UniqueConstraint("campaign_id", "contractor_id", name="unique_assignment"),
    )
