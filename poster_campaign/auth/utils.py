# poster_campaign/auth/utils.py

import hashlib
import hmac
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from poster_campaign.config import settings
from poster_campaign.errors import AuthenticationError

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
PASSWORD_PATTERN = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?])"
)


# ======================================================
# PASSWORDS
# ======================================================

def get_password_hash(password: str) -> str:
    if not password or not password.strip():
        raise ValueError("Password cannot be empty")
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not plain_password or not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def password_strength_error(password: str) -> Optional[str]:
    if len(password) < 8:
        return "Password must be at least 8 characters long"
    if not PASSWORD_PATTERN.match(password):
        return (
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "one number, and one special character"
        )
    return None


# ======================================================
# USERNAMES
# ======================================================

def normalize_username(username: str) -> str:
    return username.strip().lower()


def username_validation_error(username: str) -> Optional[str]:
    if not username:
        return "Username is required"
    if len(username) < 3:
        return "Username must be at least 3 characters long"
    if len(username) > 30:
        return "Username must be no more than 30 characters long"
    if not USERNAME_PATTERN.match(username):
        return "Username must contain only letters, numbers, underscores, and hyphens"
    return None


# ======================================================
# JWT
# ======================================================

def _token_claims(user) -> Dict[str, Any]:
    return {
        # "sub" must be a string
        "sub": str(user.id),
        "username": user.username,
        "role": user.role.value if hasattr(user.role, "value") else user.role,
        "company_id": user.company_id,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
    }


def create_access_token(user, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = _token_claims(user)
    expire = datetime.utcnow() + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "type": ACCESS_TOKEN_TYPE})

    return jwt.encode(
        to_encode,
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


def create_refresh_token(user, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = _token_claims(user)
    expire = datetime.utcnow() + (
        expires_delta or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    )
    # jti keeps two refresh tokens minted in the same second distinct
    to_encode.update({"exp": expire, "type": REFRESH_TOKEN_TYPE, "jti": secrets.token_hex(8)})

    return jwt.encode(
        to_encode,
        settings.JWT_REFRESH_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


def create_token_pair(user) -> Dict[str, str]:
    return {
        "access_token": create_access_token(user),
        "refresh_token": create_refresh_token(user),
    }


def _decode(token: str, secret: str, expected_type: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
        )
    except JWTError:
        raise AuthenticationError("Invalid or expired token")

    if payload.get("type") != expected_type:
        raise AuthenticationError("Invalid token type")

    return payload


def decode_access_token(token: str) -> Dict[str, Any]:
    return _decode(token, settings.JWT_SECRET_KEY, ACCESS_TOKEN_TYPE)


def decode_refresh_token(token: str) -> Dict[str, Any]:
    return _decode(token, settings.JWT_REFRESH_SECRET_KEY, REFRESH_TOKEN_TYPE)


# ======================================================
# OPAQUE TOKENS (sessions, password resets)
# ======================================================

def generate_secure_token(length: int = 32) -> str:
    return secrets.token_hex(length)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_token_hash(token: str, token_hash: str) -> bool:
    return hmac.compare_digest(hash_token(token), token_hash)
