# presence.py -- Who is online, and on which connections
# The registry is pure in-memory bookkeeping with no awaits, so each method
# runs atomically on the event loop. The hub in ws.py does the fan-out.

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from fastapi import WebSocket

log = logging.getLogger(__name__)


class Connection:
    """One live WebSocket, as seen by the registry."""

    def __init__(self, ws: WebSocket) -> None:
        self.id = uuid.uuid4().hex
        self.ws = ws
        self.user_id: str | None = None
        self.closed = False
        # Highest presence snapshot written to this socket so far
        self.presence_seq = 0
        self._send_lock = asyncio.Lock()

    async def send(self, event: str, data: Any, *, presence_seq: int | None = None) -> bool:
        """Write one event. Returns False if a newer presence snapshot already went out."""
        async with self._send_lock:
            if presence_seq is not None:
                if presence_seq < self.presence_seq:
                    return False
                self.presence_seq = presence_seq
            await self.ws.send_json({"type": event, "data": data})
        return True

    def __repr__(self) -> str:
        return f"<Connection {self.id[:8]} user={self.user_id}>"


class ConnectionRegistry:
    """Maps user ids to their live connections.

    A user is online iff it has at least one connection here. Empty sets are
    never stored, so absence and "no connections" look the same to readers.
    """

    def __init__(self) -> None:
        self._by_user: dict[str, set[Connection]] = {}
        self._owner: dict[Connection, str] = {}

    def register(self, user_id: str, conn: Connection) -> None:
        previous = self._owner.get(conn)
        if previous == user_id:
            return
        if previous is not None:
            # A connection belongs to one user at a time
            self._discard(previous, conn)
        self._by_user.setdefault(user_id, set()).add(conn)
        self._owner[conn] = user_id
        conn.user_id = user_id

    def deregister(self, user_id: str, conn: Connection) -> None:
        if self._owner.get(conn) != user_id:
            return
        self._discard(user_id, conn)
        del self._owner[conn]

    def _discard(self, user_id: str, conn: Connection) -> None:
        conns = self._by_user.get(user_id)
        if conns is None:
            return
        conns.discard(conn)
        if not conns:
            del self._by_user[user_id]

    def connections_for(self, user_id: str) -> frozenset[Connection]:
        return frozenset(self._by_user.get(user_id, ()))

    def online_user_ids(self) -> frozenset[str]:
        return frozenset(self._by_user)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._by_user

    def all_connections(self) -> list[Connection]:
        return list(self._owner)

    def __len__(self) -> int:
        return len(self._owner)
