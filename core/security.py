"""
Netyora Chat - Security & JWT Authentication
Bearer tokens are issued by the identity service and verified locally
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from .config import settings
from .logging import log_security_event

# Bearer token scheme, missing headers are reported as 401 below
security = HTTPBearer(auto_error=False)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token (used by tests and service-to-service calls)"""
    to_encode = data.copy()
    if "sub" not in to_encode and to_encode.get("id"):
        to_encode["sub"] = str(to_encode["id"])
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire, "iat": datetime.utcnow()})
    return jwt.encode(to_encode, settings.IDENTITY_SIGNING_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode and verify a bearer token, None when invalid or expired"""
    try:
        return jwt.decode(token, settings.IDENTITY_SIGNING_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


def user_from_payload(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Build the request user dict from token claims"""
    user_id = payload.get("sub") or payload.get("user_id") or payload.get("id")
    if not user_id:
        return None
    user_id = str(user_id)
    return {
        "id": user_id,
        "user_id": user_id,
        "username": payload.get("username"),
        "name": payload.get("name") or payload.get("first_name") or payload.get("username"),
        "email": payload.get("email"),
        "avatar": payload.get("avatar"),
    }


def authenticate_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Resolve a raw bearer token to a user dict"""
    if not token:
        return None
    payload = decode_token(token)
    if payload is None:
        return None
    return user_from_payload(payload)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict[str, Any]:
    """Get current authenticated user from the bearer token"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    user = authenticate_token(credentials.credentials)
    if user is None:
        log_security_event("token_rejected", success=False)
        raise credentials_exception

    return user


def get_user_context(current_user: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract user context (user_id, name, avatar) from current_user.
    Handles different token payload structures.
    """
    user_id = current_user.get("id") or current_user.get("user_id")
    name = (
        current_user.get("name") or
        (current_user.get("username") or "").split("@")[0] or
        "User"
    )
    return {
        "user_id": str(user_id),
        "name": name,
        "avatar": current_user.get("avatar"),
    }
