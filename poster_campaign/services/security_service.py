import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from poster_campaign.errors import AccountLockedError
from poster_campaign.models.auth import LoginAttempt

logger = logging.getLogger("poster-security")

MAX_LOGIN_ATTEMPTS = 5
ATTEMPT_WINDOW = timedelta(minutes=15)
LOCKOUT_DURATION = timedelta(minutes=30)
LOCKED_REASON = "account_locked"


class SecurityService:
    """Login attempt bookkeeping and account lockout."""

    def __init__(self, db: Session):
        self.db = db

    def _recent_failures(self, username: str, since: datetime):
        # Blocked attempts during a lockout do not extend it
        return self.db.query(LoginAttempt).filter(
            LoginAttempt.username == username,
            LoginAttempt.success.is_(False),
            LoginAttempt.attempted_at >= since,
            or_(LoginAttempt.failure_reason.is_(None), LoginAttempt.failure_reason != LOCKED_REASON),
        )

    def lockout_remaining(self, username: str) -> Optional[timedelta]:
        """Time left on a lockout for ``username``, or None when not locked.

        An account locks when MAX_LOGIN_ATTEMPTS failures fall inside one
        ATTEMPT_WINDOW; the lock runs for LOCKOUT_DURATION after the last of them.
        """
        now = datetime.utcnow()
        failures = (
            self._recent_failures(username, now - ATTEMPT_WINDOW - LOCKOUT_DURATION)
            .order_by(LoginAttempt.attempted_at.desc())
            .all()
        )

        for i in range(len(failures) - MAX_LOGIN_ATTEMPTS + 1):
            newest = failures[i].attempted_at
            oldest = failures[i + MAX_LOGIN_ATTEMPTS - 1].attempted_at
            if newest - oldest <= ATTEMPT_WINDOW:
                locked_until = newest + LOCKOUT_DURATION
                return locked_until - now if locked_until > now else None

        return None

    def check_account_lockout(self, username: str) -> None:
        remaining = self.lockout_remaining(username)
        if remaining is None:
            return

        minutes = max(1, int(remaining.total_seconds() // 60) + 1)
        logger.warning("Login blocked for locked account: %s", username)
        raise AccountLockedError(
            f"Account temporarily locked due to too many failed login attempts. "
            f"Try again in {minutes} minutes.",
            details={"retry_after_minutes": minutes},
        )

    def log_login_attempt(
        self,
        username: str,
        success: bool,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> None:
        self.db.add(
            LoginAttempt(
                username=username[:30],
                success=success,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:500] or None,
                failure_reason=failure_reason,
            )
        )
        self.db.commit()

        if not success:
            logger.warning(
                "Failed login for %s from %s (%s)", username, ip_address, failure_reason
            )

    def clear_failed_attempts(self, username: str) -> int:
        cleared = (
            self._recent_failures(username, datetime.utcnow() - ATTEMPT_WINDOW)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return cleared

    def get_login_stats(self, days: int = 7) -> Dict[str, Any]:
        since = datetime.utcnow() - timedelta(days=days)
        base = self.db.query(LoginAttempt).filter(LoginAttempt.attempted_at >= since)

        total = base.count()
        successful = base.filter(LoginAttempt.success.is_(True)).count()
        failed = total - successful

        failure_reasons = (
            self.db.query(LoginAttempt.failure_reason, func.count(LoginAttempt.id))
            .filter(LoginAttempt.attempted_at >= since, LoginAttempt.success.is_(False))
            .group_by(LoginAttempt.failure_reason)
            .all()
        )

        top_failed = (
            self.db.query(LoginAttempt.username, func.count(LoginAttempt.id))
            .filter(LoginAttempt.attempted_at >= since, LoginAttempt.success.is_(False))
            .group_by(LoginAttempt.username)
            .order_by(func.count(LoginAttempt.id).desc())
            .limit(10)
            .all()
        )

        return {
            "period_days": days,
            "total_attempts": total,
            "successful_attempts": successful,
            "failed_attempts": failed,
            "success_rate": round(successful / total * 100, 2) if total else 0.0,
            "failure_reasons": {(reason or "unknown"): count for reason, count in failure_reasons},
            "top_failed_usernames": [
                {"username": username, "failed_attempts": count} for username, count in top_failed
            ],
        }

    def cleanup_old_attempts(self, retention_days: int = 90) -> int:
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        deleted = (
            self.db.query(LoginAttempt)
            .filter(LoginAttempt.attempted_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Cleaned up %d old login attempts", deleted)
        return deleted
