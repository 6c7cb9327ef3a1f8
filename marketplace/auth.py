"""Session cookie authentication resolving the calling account."""
from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Optional

import psycopg2.extras
from fastapi import Cookie, HTTPException, status
from jose import JWTError, jwt
from pydantic import BaseModel

from . import app_context

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
JWT_EXP_MINUTES = int(os.getenv("JWT_EXP_MINUTES", str(60 * 24 * 7)))  # default: 7 days
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")

logger = logging.getLogger("auth")


class CurrentAccount(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


def create_access_token(*, subject: str, expires_delta: Optional[timedelta] = None) -> str:
    payload = {"sub": subject}
    if expires_delta is None:
        expires_delta = timedelta(minutes=JWT_EXP_MINUTES)
    payload["exp"] = datetime.utcnow() + expires_delta
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def get_account_by_id(account_id: str) -> Optional[CurrentAccount]:
    with app_context.get_conn() as conn, conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as cur:
        cur.execute("SELECT id, email, name FROM accounts WHERE id = %s", (account_id,))
        row = cur.fetchone()
    if not row:
        return None
    return CurrentAccount(**dict(row))


def resolve_account_from_session_token(session_token: str) -> Optional[CurrentAccount]:
    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    if not subject:
        return None
    return get_account_by_id(str(subject))


def get_current_account(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> CurrentAccount:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    account = resolve_account_from_session_token(session_token)
    if account is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return account


__all__ = [
    "CurrentAccount",
    "SESSION_COOKIE_NAME",
    "create_access_token",
    "get_current_account",
    "resolve_account_from_session_token",
]
