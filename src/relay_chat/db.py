# db.py -- SQLite storage for users and messages
# WAL mode for concurrent reads from API threads while others write.
# Rows come back as dicts shaped like the JSON the API returns.

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

from .config import config

log = logging.getLogger(__name__)

_VALID_TABLES = frozenset({"users", "messages"})

_USER_COLS = """id AS _id, email, full_name AS fullName, profile_pic AS profilePic,
                created_at AS createdAt, updated_at AS updatedAt"""

_MESSAGE_COLS = """id AS _id, sender_id AS senderId, receiver_id AS receiverId, text, image,
                   created_at AS createdAt, updated_at AS updatedAt"""


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> dict:
    return {col[0]: row[i] for i, col in enumerate(cursor.description)}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def _new_id() -> str:
    return uuid.uuid4().hex


class Database:
    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else config.db_path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._last_write_ts: str | None = None
        self._init_schema()

    @property
    def _conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn") or self._local.conn is None:
            conn = sqlite3.connect(str(self.path), check_same_thread=False)
            conn.row_factory = _dict_factory
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return self._local.conn

    def _init_schema(self) -> None:
        conn = self._conn
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                full_name TEXT NOT NULL,
                password_hash TEXT NOT NULL,
                profile_pic TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                sender_id TEXT NOT NULL REFERENCES users(id),
                receiver_id TEXT NOT NULL REFERENCES users(id),
                text TEXT,
                image TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_msg_pair ON messages(sender_id, receiver_id, created_at);
        """)
        conn.commit()

    # -- Users --

    def create_user(self, email: str, full_name: str, password_hash: str) -> dict:
        """Insert a user. Raises sqlite3.IntegrityError if the email is taken."""
        user_id = _new_id()
        ts = _now()
        with self._conn:
            self._conn.execute(
                "INSERT INTO users (id, email, full_name, password_hash, created_at, updated_at)"
                " VALUES (?,?,?,?,?,?)",
                (user_id, email, full_name, password_hash, ts, ts),
            )
        self._last_write_ts = ts
        log.info("Created user %s", user_id)
        return self.get_user(user_id)  # type: ignore[return-value]

    def get_user(self, user_id: str) -> dict | None:
        return self._conn.execute(
            f"SELECT {_USER_COLS} FROM users WHERE id = ?", (user_id,)
        ).fetchone()

    def get_user_by_email(self, email: str) -> dict | None:
        return self._conn.execute(
            f"SELECT {_USER_COLS} FROM users WHERE email = ?", (email,)
        ).fetchone()

    def get_credentials(self, email: str) -> dict | None:
        """User id and password hash for login. Never exposed over the API."""
        return self._conn.execute(
            "SELECT id, password_hash FROM users WHERE email = ?", (email,)
        ).fetchone()

    def list_other_users(self, self_id: str) -> list[dict]:
        return self._conn.execute(
            f"SELECT {_USER_COLS} FROM users WHERE id != ? ORDER BY full_name, id", (self_id,)
        ).fetchall()

    def update_profile_pic(self, user_id: str, url: str) -> dict | None:
        ts = _now()
        with self._conn:
            self._conn.execute(
                "UPDATE users SET profile_pic = ?, updated_at = ? WHERE id = ?",
                (url, ts, user_id),
            )
        self._last_write_ts = ts
        return self.get_user(user_id)

    # -- Messages --

    def insert_message(
        self,
        sender_id: str,
        receiver_id: str,
        text: str | None = None,
        image: str | None = None,
    ) -> dict:
        message_id = _new_id()
        ts = _now()
        with self._conn:
            self._conn.execute(
                "INSERT INTO messages VALUES (?,?,?,?,?,?,?)",
                (message_id, sender_id, receiver_id, text, image, ts, ts),
            )
        self._last_write_ts = ts
        return self._conn.execute(
            f"SELECT {_MESSAGE_COLS} FROM messages WHERE id = ?", (message_id,)
        ).fetchone()

    def list_messages(self, user_a: str, user_b: str) -> list[dict]:
        """Conversation between two users in either direction, oldest first."""
        return self._conn.execute(
            f"""SELECT {_MESSAGE_COLS} FROM messages
                WHERE (sender_id = ? AND receiver_id = ?)
                   OR (sender_id = ? AND receiver_id = ?)
                ORDER BY created_at, rowid""",
            (user_a, user_b, user_b, user_a),
        ).fetchall()

    # -- Stats --

    def get_db_stats(self) -> dict:
        """Return row counts per table, DB file size, and last write timestamp."""
        stats: dict = {"last_write_ts": self._last_write_ts}
        for table in _VALID_TABLES:
            row = self._conn.execute(f"SELECT COUNT(*) as cnt FROM {table}").fetchone()
            stats[f"{table}_rows"] = row["cnt"] if row else 0
        try:
            stats["db_size_bytes"] = self.path.stat().st_size
        except OSError:
            stats["db_size_bytes"] = 0
        return stats
