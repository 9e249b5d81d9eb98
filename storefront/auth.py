import hashlib
import time
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .db import get_db
from .errors import RuleError

# Use pbkdf2_sha256 as default to avoid bcrypt 72-byte limitation in some envs
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")

ALGORITHM = "HS256"
RESET_PURPOSE = "reset"


def create_access_token(user_id: int, role: str, expires_delta: Optional[int] = None) -> str:
    now = int(time.time())
    exp = now + (expires_delta or settings.jwt_exp_seconds)
    payload = {"sub": str(user_id), "role": role, "iat": now, "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    payload = jwt.decode(token, settings.jwt_secret, algorithms=[ALGORITHM])
    # reset tokens are signed with the same key and must not authenticate requests
    if payload.get("purpose"):
        raise jwt.InvalidTokenError("not an access token")
    return payload


def password_fingerprint(password_hash: str) -> str:
    return hashlib.sha256(password_hash.encode()).hexdigest()[:16]


def create_reset_token(user_id: int, password_hash: str, expires_delta: Optional[int] = None) -> str:
    now = int(time.time())
    exp = now + (expires_delta or settings.reset_token_exp_seconds)
    # bound to the current hash, so the token dies once the password changes
    payload = {
        "sub": str(user_id),
        "purpose": RESET_PURPOSE,
        "pwd": password_fingerprint(password_hash),
        "iat": now,
        "exp": exp,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


def decode_reset_token(token: str) -> tuple[int, str]:
    """Return ``(user_id, password fingerprint)`` from a reset token, or raise RuleError."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[ALGORITHM])
    except jwt.PyJWTError as e:
        raise RuleError("Invalid or expired reset token") from e
    if payload.get("purpose") != RESET_PURPOSE or not payload.get("pwd"):
        raise RuleError("Invalid or expired reset token")
    return int(payload["sub"]), payload["pwd"]


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


# -------------------- Request dependencies --------------------

def get_current_user(request: Request, db: Session = Depends(get_db)) -> models.User:
    auth = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Authentication required")
    token = auth.split(None, 1)[1]
    try:
        payload = decode_access_token(token)
        user_id = int(payload.get("sub"))
    except (jwt.PyJWTError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db.get(models.User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User no longer exists")
    return user


def require_admin(user: models.User = Depends(get_current_user)) -> models.User:
    # role is read from the database row, not the token claim
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
