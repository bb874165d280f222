from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from fastapi import Header, HTTPException
from sqlalchemy import select

from pfm_backend.config import settings
from pfm_backend.db import engine, users

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def create_access_token(user_id: int, email: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "user_id": str(user_id),
        "email": email,
        "iat": now,
        "exp": now + timedelta(minutes=settings.access_token_ttl_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> int | None:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as exc:
        logger.warning("token verification failed: %s", exc)
        return None
    raw_user_id = payload.get("user_id") or payload.get("sub")
    try:
        return int(raw_user_id)
    except (TypeError, ValueError):
        return None


def get_current_user_id(authorization: str | None = Header(None)) -> int:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")
    user_id = decode_token(authorization.split(" ", 1)[1].strip())
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    with engine.begin() as conn:
        exists = conn.execute(
            select(users.c.id).where(users.c.id == user_id, users.c.deleted_at.is_(None))
        ).first()
    if not exists:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user_id


def require_user(path_user_id: int, current_user_id: int) -> int:
    # Another user's id is reported as missing, never as forbidden.
    if path_user_id != current_user_id:
        raise HTTPException(status_code=404, detail="User not found")
    return current_user_id
