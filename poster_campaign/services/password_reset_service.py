import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from poster_campaign.auth.utils import (
    generate_secure_token,
    get_password_hash,
    hash_token,
    password_strength_error,
)
from poster_campaign.errors import NotFoundError, ValidationError
from poster_campaign.models.auth import PasswordResetToken, User, UserSession

logger = logging.getLogger("poster-password-reset")

TOKEN_EXPIRY = timedelta(hours=1)
MAX_TOKENS_PER_USER = 3


class PasswordResetService:
    def __init__(self, db: Session):
        self.db = db

    def _live_tokens(self, user_id: int):
        return self.db.query(PasswordResetToken).filter(
            PasswordResetToken.user_id == user_id,
            PasswordResetToken.used.is_(False),
            PasswordResetToken.expires_at > datetime.utcnow(),
        )

    def create_reset_token(self, user_id: int) -> Tuple[str, PasswordResetToken]:
        """Issue a reset token. Returns the raw token; only its hash is stored."""
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError("User not found")
        if not user.is_active:
            raise ValidationError("Cannot reset password for an inactive user")

        live = self._live_tokens(user_id).order_by(PasswordResetToken.created_at.asc()).all()
        # Retire the oldest so at most MAX_TOKENS_PER_USER stay usable
        for old in live[: max(0, len(live) - MAX_TOKENS_PER_USER + 1)]:
            old.expires_at = datetime.utcnow()

        raw_token = generate_secure_token(32)
        record = PasswordResetToken(
            user_id=user_id,
            token=hash_token(raw_token),
            expires_at=datetime.utcnow() + TOKEN_EXPIRY,
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)

        logger.info("Issued password reset token for user %s", user_id)
        return raw_token, record

    def verify_reset_token(self, raw_token: str) -> Optional[PasswordResetToken]:
        if not raw_token:
            return None

        record = (
            self.db.query(PasswordResetToken)
            .filter(PasswordResetToken.token == hash_token(raw_token))
            .first()
        )
        if not record or record.used or record.expires_at <= datetime.utcnow():
            return None
        return record

    def reset_password(self, raw_token: str, new_password: str) -> User:
        record = self.verify_reset_token(raw_token)
        if not record:
            raise ValidationError("Invalid or expired reset token")

        error = password_strength_error(new_password)
        if error:
            raise ValidationError(error)

        user = self.db.query(User).filter(User.id == record.user_id).first()
        if not user or not user.is_active:
            raise ValidationError("Invalid or expired reset token")

        now = datetime.utcnow()
        try:
            user.password_hash = get_password_hash(new_password)
            record.used = True
            record.used_at = now

            self.db.query(PasswordResetToken).filter(
                PasswordResetToken.user_id == user.id,
                PasswordResetToken.id != record.id,
                PasswordResetToken.used.is_(False),
            ).update(
                {PasswordResetToken.used: True, PasswordResetToken.used_at: now},
                synchronize_session=False,
            )

            self.db.query(UserSession).filter(
                UserSession.user_id == user.id,
                UserSession.is_active.is_(True),
            ).update({UserSession.is_active: False}, synchronize_session=False)

            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Password reset failed for user %s", record.user_id)
            raise

        self.db.refresh(user)
        logger.info("Password reset completed for user %s", user.id)
        return user

    def get_reset_stats(self, days: int = 30) -> Dict[str, Any]:
        since = datetime.utcnow() - timedelta(days=days)
        base = self.db.query(PasswordResetToken).filter(PasswordResetToken.created_at >= since)

        total = base.count()
        used = base.filter(PasswordResetToken.used_at.isnot(None), PasswordResetToken.used.is_(True)).count()
        expired = base.filter(
            PasswordResetToken.used.is_(False),
            PasswordResetToken.expires_at <= datetime.utcnow(),
        ).count()

        return {
            "period_days": days,
            "total_requests": total,
            "used_tokens": used,
            "expired_tokens": expired,
            "active_tokens": total - used - expired,
        }

    def cleanup_expired_tokens(self, retention_days: int = 30) -> int:
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        deleted = (
            self.db.query(PasswordResetToken)
            .filter(
                PasswordResetToken.created_at < cutoff,
                or_(
                    PasswordResetToken.used.is_(True),
                    PasswordResetToken.expires_at <= datetime.utcnow(),
                ),
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Cleaned up %d old password reset tokens", deleted)
        return deleted
