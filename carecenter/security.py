from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
import logging

from .config import get_settings
from .database import get_db
from .exceptions import ForbiddenError, ValidationError
from . import models, crud

security_logger = logging.getLogger("security")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v1/auth/token", auto_error=False)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str, token_type: str = "access") -> Optional[Dict[str, Any]]:
    """Verify and decode JWT token"""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if payload.get("type") != token_type:
        return None
    return payload


def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> models.User:
    """Resolve the calling user from a bearer token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception

    payload = verify_token(token, "access")
    if not payload or not payload.get("user_id"):
        raise credentials_exception

    user = crud.get_user(db, user_id=payload["user_id"])
    if not user:
        raise credentials_exception

    if user.status != "active":
        security_logger.warning(f"Inactive user {user.id} attempted access")
        raise ForbiddenError("User account is inactive", "INACTIVE_USER")
    return user


def require_role(*allowed_roles: str):
    """Dependency factory for role-based access control"""
    def role_dependency(current_user: models.User = Depends(get_current_user)) -> models.User:
        if current_user.role.value not in allowed_roles:
            raise ForbiddenError(f"Access denied. Required roles: {', '.join(allowed_roles)}", "INSUFFICIENT_ROLE")
        return current_user

    return role_dependency


def resolve_center_scope(user: models.User, requested_center_id: Optional[str] = None) -> Optional[int]:
    """
    Work out which center a request is scoped to.

    Non-superadmins are pinned to their own center and must have one.
    A superadmin may name a center explicitly; omitting it means all centers (None).
    """
    if user.role != models.UserRole.superadmin:
        if not user.center_id:
            raise ValidationError(
                "User must be assigned to a center to access billing data. "
                "Please contact administrator to assign a center.",
                "MISSING_CENTER_ASSIGNMENT",
            )
        return user.center_id

    if requested_center_id in (None, ""):
        return None
    try:
        center_id = int(str(requested_center_id).strip())
    except ValueError:
        raise ValidationError("Invalid centerId format", "INVALID_CENTER_ID")
    if center_id <= 0:
        raise ValidationError("Invalid centerId format", "INVALID_CENTER_ID")
    return center_id


def require_center(user: models.User) -> int:
    """Calendar operations always run against the caller's own center."""
    if not user.center_id:
        raise ValidationError("Center ID is required", "MISSING_CENTER_ID")
    return user.center_id


require_billing_staff = require_role("superadmin", "centeradmin", "accountant", "receptionist")
require_center_admin = require_role("centeradmin")
require_front_desk = require_role("centeradmin", "receptionist")
