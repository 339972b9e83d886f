import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from poster_campaign.auth.utils import generate_secure_token, hash_token, verify_token_hash
from poster_campaign.config import settings
from poster_campaign.models.auth import UserSession

logger = logging.getLogger("poster-sessions")


class SessionService:
    """Server-side login sessions bound to a refresh token hash."""

    def __init__(self, db: Session):
        self.db = db
        self.session_timeout = timedelta(hours=settings.SESSION_TIMEOUT_HOURS)
        self.max_sessions = settings.MAX_SESSIONS_PER_USER

    def create_session(
        self,
        user_id: int,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> UserSession:
        self.cleanup_expired_sessions(user_id)

        active = (
            self.db.query(UserSession)
            .filter(UserSession.user_id == user_id, UserSession.is_active.is_(True))
            .order_by(UserSession.created_at.asc(), UserSession.id.asc())
            .all()
        )
        # Make room for the new one
        overflow = len(active) - self.max_sessions + 1
        for old in active[: max(0, overflow)]:
            old.is_active = False

        now = datetime.utcnow()
        session = UserSession(
            user_id=user_id,
            session_token=generate_secure_token(32),
            refresh_token_hash=hash_token(refresh_token),
            ip_address=ip_address,
            user_agent=(user_agent or "")[:500] or None,
            expires_at=now + self.session_timeout,
            last_activity=now,
            is_active=True,
        )
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)

        logger.info("Created session %s for user %s", session.id, user_id)
        return session

    def validate_session(self, session_token: str, refresh_token: Optional[str] = None) -> Optional[UserSession]:
        session = (
            self.db.query(UserSession)
            .filter(UserSession.session_token == session_token, UserSession.is_active.is_(True))
            .first()
        )
        if not session:
            return None

        if session.expires_at <= datetime.utcnow():
            session.is_active = False
            self.db.commit()
            return None

        if refresh_token is not None and not verify_token_hash(refresh_token, session.refresh_token_hash):
            logger.warning("Refresh token mismatch for session %s; deactivating", session.id)
            session.is_active = False
            self.db.commit()
            return None

        session.last_activity = datetime.utcnow()
        self.db.commit()
        return session

    def rotate_refresh_token(self, session: UserSession, refresh_token: str) -> None:
        session.refresh_token_hash = hash_token(refresh_token)
        session.last_activity = datetime.utcnow()
        self.db.commit()

    def deactivate_session(self, session_token: str) -> bool:
        updated = (
            self.db.query(UserSession)
            .filter(UserSession.session_token == session_token, UserSession.is_active.is_(True))
            .update({UserSession.is_active: False}, synchronize_session=False)
        )
        self.db.commit()
        return updated > 0

    def deactivate_all_user_sessions(self, user_id: int, except_token: Optional[str] = None) -> int:
        query = self.db.query(UserSession).filter(
            UserSession.user_id == user_id, UserSession.is_active.is_(True)
        )
        if except_token:
            query = query.filter(UserSession.session_token != except_token)

        updated = query.update({UserSession.is_active: False}, synchronize_session=False)
        self.db.commit()
        logger.info("Deactivated %d sessions for user %s", updated, user_id)
        return updated

    def get_user_sessions(self, user_id: int) -> List[UserSession]:
        return (
            self.db.query(UserSession)
            .filter(
                UserSession.user_id == user_id,
                UserSession.is_active.is_(True),
                UserSession.expires_at > datetime.utcnow(),
            )
            .order_by(UserSession.last_activity.desc())
            .all()
        )

    def cleanup_expired_sessions(self, user_id: Optional[int] = None) -> int:
        query = self.db.query(UserSession).filter(
            UserSession.is_active.is_(True),
            UserSession.expires_at <= datetime.utcnow(),
        )
        if user_id is not None:
            query = query.filter(UserSession.user_id == user_id)

        updated = query.update({UserSession.is_active: False}, synchronize_session=False)
        self.db.commit()
        return updated

    def cleanup_old_sessions(self, retention_days: int = 90) -> int:
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        deleted = (
            self.db.query(UserSession)
            .filter(
                UserSession.created_at < cutoff,
                or_(UserSession.is_active.is_(False), UserSession.expires_at <= datetime.utcnow()),
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Cleaned up %d old sessions", deleted)
        return deleted

    def get_session_stats(self) -> Dict[str, Any]:
        now = datetime.utcnow()
        active_filter = (UserSession.is_active.is_(True), UserSession.expires_at > now)

        total = self.db.query(func.count(UserSession.id)).scalar() or 0
        active = self.db.query(func.count(UserSession.id)).filter(*active_filter).scalar() or 0
        users_with_sessions = (
            self.db.query(func.count(func.distinct(UserSession.user_id)))
            .filter(*active_filter)
            .scalar()
            or 0
        )
        last_24h = (
            self.db.query(func.count(UserSession.id))
            .filter(UserSession.created_at >= now - timedelta(hours=24))
            .scalar()
            or 0
        )

        return {
            "total_sessions": total,
            "active_sessions": active,
            "users_with_active_sessions": users_with_sessions,
            "sessions_created_last_24h": last_24h,
        }
