from __future__ import annotations

import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from tripledger.core.config import settings

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

_ALGORITHM = "HS256"
_FILE_TOKEN_PURPOSE = "file"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_access_token(*, subject: str, expires_minutes: int | None = None) -> str:
    expire_minutes = expires_minutes or settings.access_token_exp_minutes
    expire = datetime.now(UTC) + timedelta(minutes=expire_minutes)
    payload: dict[str, Any] = {"sub": subject, "exp": expire}
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> str | None:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("purpose"):
        return None
    subject = payload.get("sub")
    return subject if isinstance(subject, str) else None


def create_file_token(*, key: str, expires_seconds: int) -> str:
    expire = datetime.now(UTC) + timedelta(seconds=expires_seconds)
    payload: dict[str, Any] = {"sub": key, "exp": expire, "purpose": _FILE_TOKEN_PURPOSE}
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


def decode_file_token(token: str) -> str | None:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("purpose") != _FILE_TOKEN_PURPOSE:
        return None
    key = payload.get("sub")
    return key if isinstance(key, str) else None


def generate_approval_token() -> str:
    return secrets.token_urlsafe(32)
