"""
Security Utilities
Password hashing, session JWTs and time-limited reset tokens
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from jose import ExpiredSignatureError, JWTError
from jose import jwt as jose_jwt
from passlib.context import CryptContext

from .config import JWT_ALGORITHM, JWT_EXPIRE_DAYS, PASSWORD_RESET_MAX_AGE_SECONDS, SECRET_KEY

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

PASSWORD_RESET_SALT = "password-reset"


class TokenExpiredError(Exception):
    pass


class InvalidTokenError(Exception):
    pass


# ============================================================================
# PASSWORD SECURITY
# ============================================================================


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verify password against bcrypt hash"""
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError as e:
        logger.error(f"Password verification error: {e}")
        return False


# ============================================================================
# SESSION TOKENS
# ============================================================================


def create_jwt_token(data: dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a session JWT

    Args:
        data: Claims to encode ({"userId", "email", "role"})
        expires_delta: Token lifetime (default JWT_EXPIRE_DAYS)
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=JWT_EXPIRE_DAYS))
    to_encode.update({"exp": expire})
    return jose_jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_jwt_token(token: str) -> dict[str, Any]:
    """
    Decode a session JWT

    Raises:
        TokenExpiredError: signature valid but token past its exp
        InvalidTokenError: anything else wrong with the token
    """
    try:
        return jose_jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError as e:
        raise TokenExpiredError("Token expired") from e
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise InvalidTokenError("Invalid token") from e


# ============================================================================
# PASSWORD RESET TOKENS
# ============================================================================


def generate_password_reset_token(user_id: str, email: str) -> str:
    serializer = URLSafeTimedSerializer(SECRET_KEY)
    return serializer.dumps({"user_id": user_id, "email": email}, salt=PASSWORD_RESET_SALT)


def verify_password_reset_token(token: str, max_age: int = PASSWORD_RESET_MAX_AGE_SECONDS) -> Optional[dict[str, Any]]:
    """
    Verify and decode a password reset token

    Returns:
        Decoded data if valid, None if invalid or expired
    """
    serializer = URLSafeTimedSerializer(SECRET_KEY)
    try:
        return serializer.loads(token, salt=PASSWORD_RESET_SALT, max_age=max_age)
    except SignatureExpired:
        logger.warning("Password reset token expired")
        return None
    except BadSignature:
        logger.warning("Invalid password reset token signature")
        return None


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================


def mask_email(email: str) -> str:
    """Mask an e-mail for logs: j***@example.com"""
    if "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"
