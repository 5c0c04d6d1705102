"""
Auth Context Dependency
=======================

FastAPI dependency that turns a Bearer JWT into the caller identity used
for ownership checks on export jobs.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from toolexport.core.config import settings
from toolexport.core.errors import AuthenticationError
from toolexport.core.security import verify_token


# Security scheme for Bearer tokens
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller for the current request."""

    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == settings.ADMIN_ROLE


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    """
    Resolve the caller from the Authorization header.

    Raises:
        AuthenticationError: header missing, token invalid or expired
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authentication required")

    token_data = verify_token(credentials.credentials)
    if token_data is None:
        raise AuthenticationError("Invalid or expired token")

    return AuthContext(user_id=token_data.user_id, role=token_data.role)
