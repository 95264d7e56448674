from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import jwt

from beliyo.core.config import get_settings


def decode_access_token(token: str) -> Dict[str, Any]:
    # raises jose.JWTError on a bad signature or an expired token
    settings = get_settings()
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def create_access_token(subject: str, expires_minutes: int = 60) -> str:
    """Issue a token the way the auth provider does; used by tooling and tests."""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode({"sub": subject, "exp": expire}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
