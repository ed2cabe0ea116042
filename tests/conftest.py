# conftest.py -- Shared test fixtures

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from relay_chat.config import config
from relay_chat.db import Database
from relay_chat.media import MediaStore


class FakeWebSocket:
    """Minimal mock for fastapi.WebSocket."""

    def __init__(
        self,
        *,
        fail_on_send: bool = False,
        stall_on_send: bool = False,
        query: dict | None = None,
        cookies: dict | None = None,
        frames: list[dict] | None = None,
    ) -> None:
        self.accepted = False
        self.closed_with: int | None = None
        self.messages: list[dict] = []
        self.query_params = dict(query or {})
        self.cookies = dict(cookies or {})
        self._frames = list(frames or [])
        self._fail_on_send = fail_on_send
        self._stall_on_send = stall_on_send

    async def accept(self) -> None:
        self.accepted = True

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed_with = code

    async def send_json(self, data: dict) -> None:
        if self._stall_on_send:
            # A client that stopped reading: the write never completes
            await asyncio.Event().wait()
        if self._fail_on_send:
            raise RuntimeError("connection closed")
        self.messages.append(data)

    async def receive(self) -> dict:
        if self._frames:
            return self._frames.pop(0)
        return {"type": "websocket.disconnect", "code": 1000}

    def events(self, kind: str) -> list:
        return [m["data"] for m in self.messages if m["type"] == kind]


@pytest.fixture
def tmp_db(tmp_path: Path) -> Database:
    """Fresh empty database in a temp directory."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def media_store(tmp_path: Path) -> MediaStore:
    return MediaStore(tmp_path / "media", max_bytes=1024)


@pytest.fixture
def fast_auth(monkeypatch) -> None:
    """Cheap bcrypt and a fixed signing key."""
    monkeypatch.setattr(config, "bcrypt_rounds", 4)
    monkeypatch.setattr(config, "jwt_secret", "test-signing-key-0123456789abcdef0123")


@pytest.fixture
def chat_client(tmp_path: Path, monkeypatch, fast_auth) -> Iterator[TestClient]:
    """TestClient running the real lifespan against temp storage."""
    from relay_chat.app import app

    monkeypatch.setattr(config, "db_path", tmp_path / "chat.db")
    monkeypatch.setattr(config, "media_dir", tmp_path / "media")
    monkeypatch.setattr(config, "ws_require_session", True)
    with TestClient(app) as client:
        yield client
