"""
Expensync Authentication

The identity provider issues HS256 JWTs; this module turns the bearer token
into a `SessionUser` and guards admin-only endpoints.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

import jwt

from expensync.core.config import get_app_config

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60

# Bearer token security
security = HTTPBearer(auto_error=False)


class SessionUser(BaseModel):
    """Authenticated caller as supplied by the identity provider."""
    user_id: str
    role: str = "employee"
    department_id: Optional[str] = None
    must_change_password: bool = False

    @property
    def sees_own_requests_only(self) -> bool:
        return self.role in ("employee", "intern")


def create_access_token(
    user_id: str,
    role: str = "employee",
    department_id: Optional[str] = None,
    must_change_password: bool = False,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a JWT access token."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "dept": department_id,
        "mcp": must_change_password,
        "exp": now + expires_delta,
        "iat": now,
        "type": "access",
    }

    return jwt.encode(payload, get_app_config().secret_key, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, get_app_config().secret_key, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> SessionUser:
    """Resolve the session from `Authorization: Bearer <jwt>`."""
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = decode_token(credentials.credentials)
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    return SessionUser(
        user_id=payload["sub"],
        role=payload.get("role", "employee"),
        department_id=payload.get("dept"),
        must_change_password=bool(payload.get("mcp", False)),
    )


def require_admin(user: SessionUser = Depends(get_current_user)) -> SessionUser:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail=f"Role '{user.role}' not authorized")
    return user


def require_admin_or_executive(user: SessionUser = Depends(get_current_user)) -> SessionUser:
    if user.role not in ("admin", "executive"):
        raise HTTPException(status_code=403, detail=f"Role '{user.role}' not authorized")
    return user
