import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from poster_campaign.auth.schemas import AuthUser
from poster_campaign.auth.utils import (
    get_password_hash,
    normalize_username,
    password_strength_error,
    username_validation_error,
    verify_password,
)
from poster_campaign.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    translate_integrity_error,
)
from poster_campaign.models.auth import Company, User, UserRole
from poster_campaign.models.campaign import CampaignAssignment

logger = logging.getLogger("poster-users")

SELF_EDITABLE_FIELDS = {"first_name", "last_name"}
EMPLOYEE_EDITABLE_FIELDS = {"username", "first_name", "last_name", "role", "company_id", "is_active"}


def _snapshot(user: User) -> Dict[str, Any]:
    return {
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role.value,
        "company_id": user.company_id,
        "is_active": user.is_active,
    }


def _parse_role(value: Any) -> UserRole:
    try:
        return UserRole(value)
    except ValueError:
        raise ValidationError(f"Invalid role: {value}")


class UserService:
    def __init__(self, db: Session):
        self.db = db

    # ======================================================
    # LOOKUPS
    # ======================================================

    def get_by_id(self, user_id: int) -> User:
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError("User not found")
        return user

    def get_by_username(self, username: str) -> Optional[User]:
        return (
            self.db.query(User)
            .filter(User.username == normalize_username(username))
            .first()
        )

    def authenticate(self, username: str, password: str) -> Tuple[Optional[User], Optional[str]]:
        """Check credentials. Returns ``(user, None)`` or ``(None, failure_reason)``."""
        user = self.get_by_username(username)
        if not user:
            return None, "user_not_found"
        if not verify_password(password, user.password_hash):
            return None, "invalid_password"
        if not user.is_active:
            return None, "account_inactive"
        return user, None

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        company_id: Optional[int] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[User]:
        query = self.db.query(User)

        if role:
            query = query.filter(User.role == _parse_role(role))
        if company_id is not None:
            query = query.filter(User.company_id == company_id)
        if is_active is not None:
            query = query.filter(User.is_active.is_(is_active))
        if search:
            term = f"%{search.strip().lower()}%"
            query = query.filter(
                or_(
                    func.lower(User.username).like(term),
                    func.lower(User.first_name).like(term),
                    func.lower(User.last_name).like(term),
                )
            )

        return query.order_by(User.created_at.desc(), User.id.desc()).all()

    def list_by_company(self, company_id: int) -> List[User]:
        return self.list_users(company_id=company_id)

    def get_stats(self) -> Dict[str, Any]:
        total = self.db.query(func.count(User.id)).scalar() or 0
        active = self.db.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar() or 0
        by_role = {role.value: 0 for role in UserRole}
        for role, count in self.db.query(User.role, func.count(User.id)).group_by(User.role).all():
            by_role[role.value] = count

        return {
            "total": total,
            "by_role": by_role,
            "active": active,
            "inactive": total - active,
        }

    # ======================================================
    # INVARIANTS
    # ======================================================

    def _check_role_company(self, role: UserRole, company_id: Optional[int]) -> None:
        if role in (UserRole.CLIENT, UserRole.CONTRACTOR):
            if not company_id:
                raise ValidationError(f"Company ID is required for {role.value} role")
            company = self.db.query(Company).filter(Company.id == company_id).first()
            if not company:
                raise ValidationError("Company not found")
            if not company.is_active:
                raise ValidationError("Cannot assign users to an inactive company")
        elif company_id:
            raise ValidationError("Company employees should not be associated with a specific company")

    def _has_assignments(self, user_id: int) -> bool:
        return (
            self.db.query(CampaignAssignment.id)
            .filter(CampaignAssignment.contractor_id == user_id)
            .first()
            is not None
        )

    def _check_username(self, username: str, exclude_id: Optional[int] = None) -> str:
        username = normalize_username(username or "")
        error = username_validation_error(username)
        if error:
            raise ValidationError(error)

        query = self.db.query(User.id).filter(User.username == username)
        if exclude_id is not None:
            query = query.filter(User.id != exclude_id)
        if query.first():
            raise ConflictError("Username is already taken")
        return username

    # ======================================================
    # WRITES
    # ======================================================

    def create_user(self, data: Dict[str, Any]) -> User:
        username = self._check_username(data.get("username"))

        password = data.get("password") or ""
        error = password_strength_error(password)
        if error:
            raise ValidationError(error)

        first_name = (data.get("first_name") or "").strip()
        last_name = (data.get("last_name") or "").strip()
        if not first_name or not last_name:
            raise ValidationError("First name and last name are required")

        role = _parse_role(data.get("role"))
        company_id = data.get("company_id")
        self._check_role_company(role, company_id)

        user = User(
            username=username,
            password_hash=get_password_hash(password),
            first_name=first_name,
            last_name=last_name,
            role=role,
            company_id=company_id,
            is_active=True,
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise translate_integrity_error(exc, "Username is already taken")

        self.db.refresh(user)
        logger.info("Created user %s (%s, %s)", user.id, user.username, user.role.value)
        return user

    def update_user(
        self, user_id: int, data: Dict[str, Any], requester: AuthUser
    ) -> Tuple[User, Dict[str, Any]]:
        """Update a user. Returns the user and its prior values."""
        if not requester.is_employee and requester.user_id != user_id:
            raise PermissionDeniedError("Insufficient permissions to update this user")

        user = self.get_by_id(user_id)

        if not requester.is_employee:
            disallowed = set(data) - SELF_EDITABLE_FIELDS
            if disallowed:
                raise PermissionDeniedError("You can only update your first name and last name")

        updates = {key: value for key, value in data.items() if key in EMPLOYEE_EDITABLE_FIELDS}

        if "username" in updates:
            updates["username"] = self._check_username(updates["username"], exclude_id=user.id)

        for name_field in ("first_name", "last_name"):
            if name_field in updates:
                updates[name_field] = (updates[name_field] or "").strip()
                if not updates[name_field]:
                    raise ValidationError("First name and last name are required")

        if "role" in updates:
            updates["role"] = _parse_role(updates["role"])
            if updates["role"] != user.role:
                if user.id == requester.user_id:
                    raise ValidationError("You cannot change your own role")
                if user.role == UserRole.CONTRACTOR and self._has_assignments(user.id):
                    raise ValidationError(
                        "Cannot change the role of a contractor with campaign assignments. "
                        "Remove the assignments first."
                    )

        if "role" in updates or "company_id" in updates:
            new_role = updates.get("role", user.role)
            new_company = updates["company_id"] if "company_id" in updates else user.company_id
            self._check_role_company(new_role, new_company)

        before = _snapshot(user)
        for key, value in updates.items():
            setattr(user, key, value)

        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise translate_integrity_error(exc, "Username is already taken")

        self.db.refresh(user)
        return user, before

    def set_active(self, user_id: int, is_active: bool, requester: AuthUser) -> User:
        if not requester.is_employee:
            raise PermissionDeniedError("Insufficient permissions to change user status")
        if user_id == requester.user_id and not is_active:
            raise ValidationError("You cannot deactivate your own account")

        user = self.get_by_id(user_id)
        user.is_active = is_active
        self.db.commit()
        self.db.refresh(user)
        logger.info("User %s %s", user.id, "activated" if is_active else "deactivated")
        return user

    def delete_user(self, user_id: int, requester: AuthUser) -> User:
        """Soft delete: the row stays for audit history and foreign keys."""
        if not requester.is_employee:
            raise PermissionDeniedError("Insufficient permissions to delete users")
        if user_id == requester.user_id:
            raise ValidationError("You cannot delete your own account")
        return self.set_active(user_id, False, requester)

    def change_password(self, user_id: int, current_password: str, new_password: str) -> User:
        user = self.get_by_id(user_id)

        if not verify_password(current_password, user.password_hash):
            raise AuthenticationError("Current password is incorrect")

        error = password_strength_error(new_password)
        if error:
            raise ValidationError(error)
        if verify_password(new_password, user.password_hash):
            raise ValidationError("New password must be different from the current password")

        user.password_hash = get_password_hash(new_password)
        self.db.commit()
        logger.info("Password changed for user %s", user.id)
        return user
