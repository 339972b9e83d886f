# poster_campaign/auth/dependencies.py

from typing import Callable

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from poster_campaign.auth.schemas import AuthUser
from poster_campaign.auth.utils import decode_access_token
from poster_campaign.db import get_db
from poster_campaign.errors import AuthenticationError, PermissionDeniedError
from poster_campaign.models.auth import User

security = HTTPBearer(auto_error=False)


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> AuthUser:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Access token required")

    payload = decode_access_token(credentials.credentials)

    user_id_str = payload.get("sub")
    if not user_id_str:
        raise AuthenticationError("Malformed token: missing sub")

    try:
        user_id = int(user_id_str)
    except ValueError:
        raise AuthenticationError("Invalid user ID in token")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise AuthenticationError("User not found")

    if not user.is_active:
        raise AuthenticationError("Inactive user")

    # Picked up by the request logging middleware
    request.state.user_id = user.id

    return AuthUser(
        user_id=user.id,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role.value,
        company_id=user.company_id,
        is_active=user.is_active,
    )


def require_roles(*roles: str) -> Callable[..., AuthUser]:
    """Dependency factory: authenticated user whose role is one of ``roles``."""

    def checker(current_user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if current_user.role not in roles:
            raise PermissionDeniedError("Insufficient permissions")
        return current_user

    return checker


require_employee = require_roles("company_employee")
