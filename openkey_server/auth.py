"""
Authentication module for JWT token management.

Issues and verifies bearer tokens for the reference chat service.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt


# Secret key for JWT - set OPENKEY_JWT_SECRET outside development
SECRET_KEY = os.environ.get("OPENKEY_JWT_SECRET", "dev_secret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, username: str,
                        expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        user_id: Id of the authenticated user
        username: Username, carried for convenience
        expires_delta: Token expiration time

    Returns:
        Encoded JWT token
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"sub": user_id, "username": username, "exp": expire}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> Optional[str]:
    """
    Verify a JWT token and extract the user id.

    Args:
        token: JWT token to verify

    Returns:
        User id if valid, None otherwise
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub")


def current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> int:
    """FastAPI dependency resolving the caller from the bearer token"""
    if credentials is None:
        raise HTTPException(status_code=401, detail="No token")
    user_id = verify_token(credentials.credentials)
    if user_id is None:
        raise HTTPException(status_code=403, detail="Invalid token")
    try:
        return int(user_id)
    except ValueError:
        raise HTTPException(status_code=403, detail="Invalid token")
