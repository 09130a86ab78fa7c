# clinic_scheduler/security.py
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from . import models
from .config import get_settings
from .context import RequestContext
from .database import get_db

security_logger = logging.getLogger("security")

# Tokens are issued by the clinic's identity provider; this service only verifies them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v1/auth/token", auto_error=True)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token. Expects `sub` (user id) and `tenant_id` claims."""
    settings = get_settings()
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({
        "exp": expire,
        "type": "access",
        "iat": datetime.now(timezone.utc),
        "jti": secrets.token_urlsafe(16),
    })
    if "sub" in to_encode:
        to_encode["sub"] = str(to_encode["sub"])

    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str, token_type: str = "access") -> Optional[Dict[str, Any]]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as e:
        security_logger.warning(f"Rejected token: {e}")
        return None
    if payload.get("type") != token_type:
        return None
    return payload


def get_request_context(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> RequestContext:
    """Resolve the acting user and tenant for a request."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = verify_token(token, "access")
    if not payload:
        raise credentials_exception
    try:
        user_id = int(payload.get("sub"))
        tenant_id = int(payload.get("tenant_id"))
    except (TypeError, ValueError):
        raise credentials_exception

    user = db.query(models.User).join(models.Tenant).filter(
        models.User.id == user_id,
        models.User.tenant_id == tenant_id,
        models.User.is_active.is_(True),
        models.Tenant.is_active.is_(True),
    ).first()
    if user is None:
        security_logger.warning(f"Token for unknown or inactive user {user_id} in tenant {tenant_id}")
        raise credentials_exception

    return RequestContext(tenant_id=user.tenant_id, user_id=user.id, role=models.UserRole(user.role))


def require_role(*allowed_roles: models.UserRole):
    """Dependency factory: the acting user must have one of the roles."""
    def role_dependency(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        if ctx.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to access this resource.",
            )
        return ctx
    return role_dependency
