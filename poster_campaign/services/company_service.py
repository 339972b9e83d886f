import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from poster_campaign.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
    translate_integrity_error,
)
from poster_campaign.models.auth import Company, User
from poster_campaign.services.storage import storage_service

logger = logging.getLogger("poster-companies")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^[\+]?[\d\s\-\(\)]{10,}$")

EDITABLE_FIELDS = ("name", "contact_email", "contact_phone", "address")


def _snapshot(company: Company) -> Dict[str, Any]:
    return {
        "name": company.name,
        "contact_email": company.contact_email,
        "contact_phone": company.contact_phone,
        "address": company.address,
        "is_active": company.is_active,
    }


class CompanyService:
    def __init__(self, db: Session):
        self.db = db

    # ======================================================
    # VALIDATION
    # ======================================================

    @staticmethod
    def validate_fields(data: Dict[str, Any], creating: bool) -> None:
        errors: List[str] = []

        if creating or "name" in data:
            name = (data.get("name") or "").strip()
            if not name:
                errors.append("Company name is required")
            elif len(name) > 255:
                errors.append("Company name must be no more than 255 characters")

        email = data.get("contact_email")
        if email and not EMAIL_PATTERN.match(email):
            errors.append("Invalid contact email format")

        phone = data.get("contact_phone")
        if phone and not PHONE_PATTERN.match(phone):
            errors.append("Invalid contact phone format")

        if errors:
            raise ValidationError(errors[0], details=errors)

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        query = self.db.query(Company.id).filter(func.lower(Company.name) == name.lower())
        if exclude_id is not None:
            query = query.filter(Company.id != exclude_id)
        return query.first() is not None

    # ======================================================
    # READS
    # ======================================================

    def get_by_id(self, company_id: int) -> Company:
        company = self.db.query(Company).filter(Company.id == company_id).first()
        if not company:
            raise NotFoundError("Company not found")
        return company

    def list_companies(self, include_inactive: bool = True) -> List[Company]:
        query = self.db.query(Company)
        if not include_inactive:
            query = query.filter(Company.is_active.is_(True))
        return query.order_by(Company.name.asc()).all()

    def list_with_user_counts(self) -> List[Tuple[Company, int]]:
        return (
            self.db.query(Company, func.count(User.id))
            .outerjoin(User, User.company_id == Company.id)
            .group_by(Company.id)
            .order_by(Company.name.asc())
            .all()
        )

    def list_active(self) -> List[Company]:
        return self.list_companies(include_inactive=False)

    def get_users(self, company_id: int) -> List[User]:
        return (
            self.db.query(User)
            .filter(User.company_id == company_id)
            .order_by(User.last_name.asc(), User.first_name.asc())
            .all()
        )

    # ======================================================
    # WRITES
    # ======================================================

    def create_company(self, data: Dict[str, Any]) -> Company:
        self.validate_fields(data, creating=True)

        name = data["name"].strip()
        if self._name_taken(name):
            raise ConflictError("Company name already exists")

        company = Company(
            name=name,
            contact_email=data.get("contact_email"),
            contact_phone=data.get("contact_phone"),
            address=data.get("address"),
            is_active=True,
        )
        self.db.add(company)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise translate_integrity_error(exc, "Company name already exists")

        self.db.refresh(company)
        logger.info("Created company %s (%s)", company.id, company.name)
        return company

    def update_company(self, company_id: int, data: Dict[str, Any]) -> Tuple[Company, Dict[str, Any]]:
        """Apply the editable fields in ``data``. Returns the company and its prior values."""
        company = self.get_by_id(company_id)
        self.validate_fields(data, creating=False)

        updates = {key: value for key, value in data.items() if key in EDITABLE_FIELDS}
        if "name" in updates:
            updates["name"] = updates["name"].strip()
            if self._name_taken(updates["name"], exclude_id=company.id):
                raise ConflictError("Company name already exists")

        before = _snapshot(company)
        for key, value in updates.items():
            setattr(company, key, value)

        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise translate_integrity_error(exc, "Company name already exists")

        self.db.refresh(company)
        return company, before

    def set_active(self, company_id: int, is_active: bool) -> Company:
        company = self.get_by_id(company_id)

        if not is_active:
            active_users = (
                self.db.query(func.count(User.id))
                .filter(User.company_id == company.id, User.is_active.is_(True))
                .scalar()
            )
            if active_users:
                raise ValidationError(
                    "Cannot deactivate company with active users. Deactivate users first."
                )

        company.is_active = is_active
        self.db.commit()
        self.db.refresh(company)
        logger.info("Company %s %s", company.id, "activated" if is_active else "deactivated")
        return company

    def delete_company(self, company_id: int) -> Dict[str, Any]:
        """Delete a company with no users, campaign image files included. Returns its final values."""
        company = self.get_by_id(company_id)

        user_count = (
            self.db.query(func.count(User.id)).filter(User.company_id == company.id).scalar()
        )
        if user_count:
            raise ValidationError(
                "Cannot delete company with existing users. Remove users first."
            )

        before = _snapshot(company)
        file_paths = [image.file_path for campaign in company.campaigns for image in campaign.images]

        self.db.delete(company)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise translate_integrity_error(exc)

        for file_path in file_paths:
            storage_service.delete_file(file_path)

        logger.info("Deleted company %s", company_id)
        return before
