# backend/clinicdb/security.py

"""
Security helpers for clinicdb.

Responsibilities:
- JWT access token creation and decoding
- FastAPI dependency resolving the caller's clinic context
- Role-based access helper for router dependencies

User accounts live outside this service; the token carries everything the
supply core needs: the user id, the clinic the user acts for, and a role.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Set, Union

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

# ---------------------------------------------------------------------------
# CONFIG
# ---------------------------------------------------------------------------

# In production, ALWAYS override these via environment variables.
SECRET_KEY = os.getenv("SECRET_KEY", "CHANGE_ME_IN_PRODUCTION")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

try:
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(
        os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60")
    )
except ValueError:
    ACCESS_TOKEN_EXPIRE_MINUTES = 60

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class Role(str, enum.Enum):
    SYSTEM_ADMIN = "system_admin"
    CLINIC_ADMIN = "clinic_admin"
    CLINIC_USER = "clinic_user"


@dataclass(frozen=True)
class CurrentContext:
    user_id: str
    clinic_id: str
    role: Role


# ---------------------------------------------------------------------------
# JWT TOKENS
# ---------------------------------------------------------------------------


def create_access_token(
    *,
    data: dict,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed JWT.

    The `data` dict should already include the subject and clinic, e.g.:
        {"sub": user_id, "clinic_id": clinic.id, "role": "clinic_user"}
    """
    to_encode = data.copy()

    expire = datetime.now(timezone.utc) + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})

    return jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


# ---------------------------------------------------------------------------
# FASTAPI DEPENDENCIES
# ---------------------------------------------------------------------------


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_context(token: str) -> CurrentContext:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise _credentials_exception()

    user_id = payload.get("sub")
    clinic_id = payload.get("clinic_id")
    if not user_id or not clinic_id:
        raise _credentials_exception()
    try:
        role = Role(payload.get("role") or Role.CLINIC_USER.value)
    except ValueError:
        raise _credentials_exception()

    return CurrentContext(user_id=str(user_id), clinic_id=str(clinic_id), role=role)


def get_current_context(token: str = Depends(oauth2_scheme)) -> CurrentContext:
    return decode_context(token)


# ---------------------------------------------------------------------------
# ROLE-BASED ACCESS HELPER
# ---------------------------------------------------------------------------


def require_roles(
    *allowed_roles: Union[Role, str],
) -> Callable[[CurrentContext], CurrentContext]:
    """
    Dependency factory to enforce that the caller has one of the given roles.

    SYSTEM_ADMIN always passes, even if not explicitly listed.
    """
    normalised_roles: Set[Role] = set()
    for r in allowed_roles:
        if isinstance(r, Role):
            normalised_roles.add(r)
        else:
            try:
                normalised_roles.add(Role(r))
            except ValueError:
                raise ValueError(f"Unknown role {r!r} passed to require_roles()")

    def dependency(
        current: CurrentContext = Depends(get_current_context),
    ) -> CurrentContext:
        if current.role == Role.SYSTEM_ADMIN:
            return current

        if current.role not in normalised_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions for this operation",
            )
        return current

    return dependency
