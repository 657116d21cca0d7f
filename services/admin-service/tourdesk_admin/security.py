from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .backend import BackendClient, Session, get_backend
from .errors import NetworkError, NotFoundError, PermissionDenied, ValidationError
from .permissions import PermissionMatrix, normalize_role
from .system_settings import SettingsService

__all__ = ["Session", "issue_token", "decode_token", "get_session", "require_permission"]

bearer = HTTPBearer(auto_error=False)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"

logger = logging.getLogger(__name__)


def issue_token(sub: str, role: str, ttl_minutes: int = 60) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": sub,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")


def get_session(
    creds: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer)],
) -> Session:
    if creds is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    claims = decode_token(creds.credentials)
    return Session(
        token=creds.credentials,
        user_id=claims.get("sub"),
        role=normalize_role(claims.get("role")),
    )


async def _stored_matrix(backend: BackendClient, session: Session) -> PermissionMatrix:
    """
    The admin-edited role table. ADMIN keeps canManageSettings whatever the
    document says. If the document cannot be fetched or parsed for this
    caller, the built-in defaults apply.
    """
    try:
        return (await SettingsService(backend).load(session)).permissions
    except (NetworkError, NotFoundError, PermissionDenied, ValidationError) as e:
        logger.warning("Permission table unavailable, using defaults: %s", e)
        return PermissionMatrix.defaults()


def require_permission(permission: str):
    async def _dep(
        session: Annotated[Session, Depends(get_session)],
        backend: Annotated[BackendClient, Depends(get_backend)],
    ) -> Session:
        matrix = await _stored_matrix(backend, session)
        if not matrix.is_permitted(session.role, permission):
            raise HTTPException(status_code=403, detail="Forbidden")
        return session

    return _dep
