# config.py -- Chat server settings, read once from the environment
# A .env next to the project (or in the working directory) is loaded first;
# real environment variables always win over it.

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

log = logging.getLogger(__name__)

# src/relay_chat/config.py -> project root
_project_root = Path(__file__).resolve().parent.parent.parent
load_dotenv(_project_root / ".env")
load_dotenv(override=False)


def _safe_number(
    name: str,
    default: float,
    kind: type = int,
    min_val: float | None = None,
    max_val: float | None = None,
):
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = kind(raw)
    except (ValueError, TypeError):
        log.warning(
            "%s=%r is not a valid %s, falling back to %s", name, raw, kind.__name__, default
        )
        return default
    clamped = val
    if min_val is not None:
        clamped = max(clamped, kind(min_val))
    if max_val is not None:
        clamped = min(clamped, kind(max_val))
    if clamped != val:
        log.warning("%s=%s out of range, clamped to %s", name, val, clamped)
    return clamped


def _safe_int(
    name: str, default: int, min_val: int | None = None, max_val: int | None = None
) -> int:
    return _safe_number(name, default, int, min_val, max_val)


def _safe_float(
    name: str, default: float, min_val: float | None = None, max_val: float | None = None
) -> float:
    return _safe_number(name, default, float, min_val, max_val)


def _flag(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


class Config:
    # Web server
    web_host: str = os.getenv("WEB_HOST", "0.0.0.0")
    web_port: int = _safe_int("WEB_PORT", 5001, min_val=1, max_val=65535)
    cors_origin: str = os.getenv("CORS_ORIGIN", "http://localhost:5173")

    # Storage
    db_path: Path = Path(os.getenv("DB_PATH", "data/chat.db"))
    media_dir: Path = Path(os.getenv("MEDIA_DIR", "data/media"))
    media_max_bytes: int = _safe_int("MEDIA_MAX_BYTES", 5 * 1024 * 1024, min_val=1024)

    # Sessions
    jwt_secret: str = os.getenv("JWT_SECRET", "")
    session_days: int = _safe_int("SESSION_DAYS", 7, min_val=1, max_val=365)
    cookie_name: str = os.getenv("COOKIE_NAME", "jwt-chatapp")
    cookie_secure: bool = _flag("COOKIE_SECURE", False)
    bcrypt_rounds: int = _safe_int("BCRYPT_ROUNDS", 10, min_val=4, max_val=15)

    # Real-time layer: refuse WebSocket handshakes without a valid session
    ws_require_session: bool = _flag("WS_REQUIRE_SESSION", True)
    # Seconds one push may take before that socket counts as failed
    ws_send_timeout: float = _safe_float("WS_SEND_TIMEOUT", 10.0, min_val=0.1, max_val=300)


config = Config()
