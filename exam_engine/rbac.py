"""
exam_engine/rbac.py
Bearer-token identity and role checks.

Tokens are issued by the external auth service (HS256, shared secret).
The engine only reads the `sub` and `role` claims; there is no local user
table.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from exam_engine.config.settings import settings
from exam_engine.errors import ErrorCode
from exam_engine.orm.roles import UserRole

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 30

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: UserRole


# ================= TOKEN UTILS =================

def create_access_token(user_id: str, role: UserRole, expires_delta: Optional[timedelta] = None) -> str:
    """Mint an access token; used by tests and local tooling."""
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user_id),
        "role": UserRole(role).value,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate JWT token"""
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


# ================= AUTH DEPENDENCIES =================

async def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    """
    Resolve the caller from the bearer token.
    Returns 401 if the token is invalid, expired or lacks a known role.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "success": False,
            "error": "Unauthorized",
            "message": "Invalid or expired token",
            "code": ErrorCode.AUTH_INVALID
        },
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(token)
    if not payload or payload.get("type", "access") != "access":
        raise credentials_exception

    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception

    try:
        role = UserRole(payload.get("role"))
    except ValueError:
        raise credentials_exception

    return CurrentUser(id=str(user_id), role=role)


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory: require one of the given roles.
    Usage: current_user: CurrentUser = Depends(require_role([UserRole.admin]))
    """
    async def dependency(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in allowed_roles:
            logger.warning(
                f"Access denied: User {current_user.id} with role {current_user.role.value} "
                f"attempted to access resource requiring {[r.value for r in allowed_roles]}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "success": False,
                    "error": "Forbidden",
                    "message": f"This action requires one of: {[r.value for r in allowed_roles]}",
                    "code": ErrorCode.FORBIDDEN,
                    "details": {"current_role": current_user.role.value},
                }
            )
        return current_user
    return dependency
