"""
Requester identity and the owner-or-admin capability checks.

Tokens are issued by the sign-in service; this module only verifies them.
"""
import logging
from typing import Optional

import jwt
from fastapi import HTTPException, Request
from pydantic import BaseModel, ConfigDict

import config

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "access_token"


class CurrentUser(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    is_admin: bool = False


def create_access_token(user_id: str, is_admin: bool = False) -> str:
    payload = {"id": user_id, "isAdmin": is_admin}
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def _read_token(request: Request) -> Optional[str]:
    token = request.cookies.get(TOKEN_COOKIE)
    if token:
        return token
    header = request.headers.get("Authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


def get_current_user(request: Request) -> Optional[CurrentUser]:
    """Return the requester, or None for anonymous requests."""
    token = _read_token(request)
    if not token:
        return None
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Token is not valid")
    user_id = payload.get("id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token is not valid")
    return CurrentUser(id=str(user_id), is_admin=bool(payload.get("isAdmin", False)))


def require_user(user: Optional[CurrentUser]) -> CurrentUser:
    if user is None:
        raise HTTPException(status_code=401, detail="You are not logged in")
    return user


def is_owner_or_admin(user: Optional[CurrentUser], owner_id: Optional[str]) -> bool:
    if user is None:
        return False
    return user.is_admin or (owner_id is not None and user.id == str(owner_id))


def ensure_owner_or_admin(user, owner_id, message: str, status_code: int = 403) -> CurrentUser:
    user = require_user(user)
    if not is_owner_or_admin(user, owner_id):
        logger.warning("User %s denied access to resource owned by %s", user.id, owner_id)
        raise HTTPException(status_code=status_code, detail=message)
    return user


def ensure_self(user, user_id, message: str, status_code: int = 403) -> CurrentUser:
    """Like ensure_owner_or_admin, but without the admin override."""
    user = require_user(user)
    if user.id != str(user_id):
        logger.warning("User %s denied acting as %s", user.id, user_id)
        raise HTTPException(status_code=status_code, detail=message)
    return user


def ensure_admin(user, message: str, status_code: int = 401) -> CurrentUser:
    user = require_user(user)
    if not user.is_admin:
        logger.warning("Non-admin user %s denied admin action", user.id)
        raise HTTPException(status_code=status_code, detail=message)
    return user
