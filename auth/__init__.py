"""Authentication module for session tokens.

This module provides:
1. Session token issuing and verification (HS256 JWT, shared with the session system)
2. Middleware for protecting routes
3. Token verification for the chat websocket handshake
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError, ExpiredSignatureError
from pydantic import BaseModel

from config import settings_conf

# Configure logging
logger = logging.getLogger(__name__)

# Constants
SESSION_EXPIRY_DAYS = 7
JWT_ALGORITHM = "HS256"

class AuthError(Exception):
    """Base exception for authentication errors."""
    pass

class SessionExpiredError(AuthError):
    """Raised when a session token has expired."""
    pass

class CurrentUser(BaseModel):
    """Identity carried by a verified session token."""
    id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

def _secret(secret: Optional[str]) -> str:
    return secret or settings_conf['jwt_secret']

def create_access_token(
    user_id: str,
    role: str = "user",
    expires_delta: Optional[timedelta] = None,
    secret: Optional[str] = None
) -> str:
    """Issue a session token.

    Args:
        user_id: Identity stored in the ``id`` claim
        role: User role, ``admin`` unlocks admin endpoints
        expires_delta: Token lifetime, defaults to SESSION_EXPIRY_DAYS
        secret: Signing secret, defaults to the configured secret

    Returns:
        Encoded JWT
    """
    expires_at = datetime.now(timezone.utc) + (expires_delta or timedelta(days=SESSION_EXPIRY_DAYS))
    return jwt.encode(
        {
            'id': user_id,
            'role': role,
            'exp': int(expires_at.timestamp())
        },
        _secret(secret),
        algorithm=JWT_ALGORITHM
    )

def decode_token(token: str, secret: Optional[str] = None) -> Dict[str, Any]:
    """Verify signature and expiry and return the token claims.

    Raises:
        SessionExpiredError: If the token has expired
        AuthError: If the token is malformed, badly signed or has no identity
    """
    if not token or not isinstance(token, str):
        raise AuthError("Token required")
    try:
        payload = jwt.decode(token, _secret(secret), algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise SessionExpiredError("Session has expired")
    except JWTError as e:
        raise AuthError(f"Invalid token: {str(e)}")

    user_id = payload.get('id') or payload.get('sub')
    if not user_id:
        raise AuthError("Token has no user identity")
    payload['id'] = str(user_id)
    return payload

def verify_token(token: str, secret: Optional[str] = None) -> CurrentUser:
    """Verify a session token and return the user it identifies."""
    payload = decode_token(token, secret)
    return CurrentUser(id=payload['id'], role=payload.get('role') or 'user')

# FastAPI security scheme
auth_scheme = HTTPBearer(
    auto_error=True,  # Return 401 automatically if token is missing
    description="JWT Bearer token required"
)

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)
) -> CurrentUser:
    """FastAPI dependency for getting authenticated user.

    Args:
        credentials: Bearer token credentials

    Returns:
        The authenticated user

    Raises:
        HTTPException: If authentication fails
    """
    try:
        return verify_token(credentials.credentials)
    except SessionExpiredError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session has expired"
        )
    except AuthError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid token"
        )

async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """FastAPI dependency allowing only admin users."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return user

# Export public interface
__all__ = [
    'create_access_token',
    'decode_token',
    'verify_token',
    'get_current_user',
    'require_admin',
    'CurrentUser',
    'AuthError',
    'SessionExpiredError'
]
