"""
Bearer token validation.

Tokens are issued elsewhere; this module only verifies them and maps their
claims onto a UserIdentity.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from shipyard.core.config import settings
from shipyard.core.exceptions import AuthError
from shipyard.core.logging_config import set_user_id

# auto_error=False so a missing header goes through AuthError like every other failure
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class UserIdentity:
    """Authenticated caller"""
    user_id: str
    github_username: Optional[str] = None
    github_access_token: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_elevated(self) -> bool:
        return self.role is not None and self.role in settings.ELEVATED_ROLES


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token (development and tests)"""
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(hours=24))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode JWT token"""
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise AuthError("Could not validate credentials")


def validate(token: Optional[str]) -> UserIdentity:
    """Resolve a raw bearer token into a UserIdentity or raise AuthError"""
    if not token:
        raise AuthError("Missing bearer token")

    payload = decode_token(token)
    if payload.get("type", "access") != "access":
        raise AuthError("Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token payload")

    return UserIdentity(
        user_id=str(user_id),
        github_username=payload.get("github_username"),
        github_access_token=payload.get("github_access_token"),
        email=payload.get("email"),
        role=payload.get("role"),
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> UserIdentity:
    """FastAPI dependency returning the authenticated caller"""
    user = validate(credentials.credentials if credentials else None)
    set_user_id(user.user_id)
    return user
