import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from poster_campaign.models.audit import AuditLog
from poster_campaign.models.auth import User

logger = logging.getLogger("poster-audit")


@dataclass
class RequestContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None


class AuditService:
    def __init__(self, db: Session):
        self.db = db

    def log_action(
        self,
        action: str,
        resource_type: str,
        *,
        user_id: Optional[int] = None,
        resource_id: Optional[int] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> None:
        """Record an audit entry.

        Called after the audited change has been committed; a failing audit
        write is rolled back and logged so it never undoes the operation.
        """
        context = context or RequestContext()
        entry = AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            old_values=jsonable_encoder(old_values) if old_values else None,
            new_values=jsonable_encoder(new_values) if new_values else None,
            ip_address=context.ip_address,
            user_agent=(context.user_agent or "")[:500] or None,
            request_id=context.request_id,
        )

        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to write audit entry: %s", action)
            return

        logger.info(
            "Audit: %s resource=%s:%s user=%s request=%s",
            action,
            resource_type,
            resource_id,
            user_id,
            context.request_id,
        )

    def get_audit_logs(
        self,
        *,
        user_id: Optional[int] = None,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLog]:
        query = self.db.query(AuditLog).options(joinedload(AuditLog.user))

        if user_id:
            query = query.filter(AuditLog.user_id == user_id)
        if action:
            query = query.filter(AuditLog.action == action)
        if resource_type:
            query = query.filter(AuditLog.resource_type == resource_type)
        if resource_id:
            query = query.filter(AuditLog.resource_id == resource_id)
        if start_date:
            query = query.filter(AuditLog.created_at >= start_date)
        if end_date:
            query = query.filter(AuditLog.created_at <= end_date)

        return (
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_audit_stats(self, days: int = 30) -> Dict[str, Any]:
        start_date = datetime.utcnow() - timedelta(days=days)

        total = (
            self.db.query(func.count(AuditLog.id))
            .filter(AuditLog.created_at >= start_date)
            .scalar()
        )

        by_action = (
            self.db.query(AuditLog.action, func.count(AuditLog.id))
            .filter(AuditLog.created_at >= start_date)
            .group_by(AuditLog.action)
            .order_by(func.count(AuditLog.id).desc())
            .all()
        )

        by_user = (
            self.db.query(User.username, func.count(AuditLog.id))
            .outerjoin(User, AuditLog.user_id == User.id)
            .filter(AuditLog.created_at >= start_date)
            .group_by(User.id, User.username)
            .order_by(func.count(AuditLog.id).desc())
            .limit(10)
            .all()
        )

        return {
            "total_actions": total or 0,
            "actions_by_type": {action: count for action, count in by_action},
            "actions_by_user": {(username or "unknown"): count for username, count in by_user},
            "recent_activity": self.get_audit_logs(limit=20),
        }

    def cleanup_old_logs(self, retention_days: int = 365) -> int:
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        deleted = (
            self.db.query(AuditLog)
            .filter(AuditLog.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Cleaned up %d old audit log entries", deleted)
        return deleted
