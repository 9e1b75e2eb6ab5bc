from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from cryptopay_core.config import get_settings
from cryptopay_core.exceptions import AuthenticationError

# Password hashing context
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

ALGORITHM = "HS256"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against a hash."""
    return pwd_context.verify(plain_password, hashed_password)


def hash_password(plain_password: str) -> str:
    return pwd_context.hash(plain_password)


def create_access_token(
    data: dict[str, Any],
    expires_delta: Optional[timedelta] = None,
    secret_key: Optional[str] = None,
) -> str:
    """Create a JWT access token."""
    settings = get_settings()
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, secret_key or settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str, secret_key: Optional[str] = None) -> dict[str, Any]:
    """Decode and verify a JWT; raises AuthenticationError if invalid or expired."""
    try:
        return jwt.decode(token, secret_key or get_settings().secret_key, algorithms=[ALGORITHM])
    except JWTError as e:
        raise AuthenticationError("Invalid or expired token") from e
