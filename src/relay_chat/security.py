# security.py -- Password hashing and signed session tokens
# bcrypt for credentials, HS256 JWT carrying the user id for sessions.
# The same token authenticates REST calls and the WebSocket handshake.

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt

from .config import config
from .db import Database

log = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

# Compared against on unknown emails so login timing doesn't reveal which exist
_DUMMY_HASH = bcrypt.hashpw(b"not-a-real-password", bcrypt.gensalt(rounds=4))


class AuthError(ValueError):
    """Email/password pair did not match a stored user."""


def _secret() -> str:
    if not config.jwt_secret:
        config.jwt_secret = secrets.token_hex(32)
        log.warning("JWT_SECRET not set -- using a random key, sessions end on restart")
    return config.jwt_secret


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=config.bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        log.warning("Stored password hash is malformed")
        return False


def authenticate(db: Database, email: str, password: str) -> dict:
    """Return the user record for valid credentials, else raise AuthError."""
    creds = db.get_credentials(email)
    if creds is None:
        verify_password(password, _DUMMY_HASH.decode("utf-8"))
        raise AuthError("Invalid credentials")
    if not verify_password(password, creds["password_hash"]):
        raise AuthError("Invalid credentials")
    user = db.get_user(creds["id"])
    if user is None:
        raise AuthError("Invalid credentials")
    return user


def issue_session(user_id: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "iat": now,
        "exp": now + timedelta(days=config.session_days),
    }
    return jwt.encode(payload, _secret(), algorithm=JWT_ALGORITHM)


def verify_session(token: str | None) -> str | None:
    """Return the user id embedded in a valid token, or None."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, _secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        log.debug("Session token expired")
        return None
    except jwt.InvalidTokenError:
        return None
    user_id = payload.get("userId")
    if not isinstance(user_id, str) or not user_id:
        return None
    return user_id
