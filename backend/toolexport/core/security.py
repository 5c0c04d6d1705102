"""
Security Utilities
==================

JWT token handling for the export API.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError
from pydantic import BaseModel

from toolexport.core.config import settings


class TokenPayload(BaseModel):
    """JWT token payload schema."""
    
    sub: str  # Subject (user_id)
    role: str = "user"
    exp: datetime
    iat: datetime
    type: str = "access"


class TokenData(BaseModel):
    """Decoded token data for request context."""
    
    user_id: str
    role: str = "user"


def create_access_token(
    user_id: str,
    role: str = "user",
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.
    
    Args:
        user_id: User identifier
        role: Role name ("admin" grants access to every job)
        expires_delta: Optional custom expiration time
    
    Returns:
        str: Encoded JWT access token
    """
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
        )
    
    payload = {
        "sub": user_id,
        "role": role,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "type": "access",
    }
    
    return jwt.encode(
        payload,
        settings.SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_token(token: str) -> Optional[TokenPayload]:
    """
    Decode and validate a JWT token.
    
    Returns:
        TokenPayload if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return TokenPayload(
            sub=payload["sub"],
            role=payload.get("role", "user"),
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            type=payload.get("type", "access"),
        )
    except (JWTError, KeyError):
        return None


def verify_token(token: str, token_type: str = "access") -> Optional[TokenData]:
    """
    Verify a token and extract user data.
    
    Args:
        token: The JWT token to verify
        token_type: Expected token type
    
    Returns:
        TokenData if valid, None otherwise
    """
    payload = decode_token(token)
    
    if payload is None:
        return None
    
    if payload.type != token_type:
        return None
    
    if payload.exp < datetime.now(timezone.utc):
        return None
    
    return TokenData(user_id=payload.sub, role=payload.role)
