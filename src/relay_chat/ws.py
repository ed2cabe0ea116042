# ws.py -- WebSocket hub: presence broadcast and live message delivery
# Wraps the in-memory registry. Single-process only (no Redis/pub-sub).

from __future__ import annotations

import asyncio
import logging
from typing import Any

from starlette.websockets import WebSocketDisconnect

from .config import config
from .presence import Connection, ConnectionRegistry

log = logging.getLogger(__name__)

EVENT_ONLINE_USERS = "getOnlineUsers"
EVENT_NEW_MESSAGE = "newMessage"

# Anything a dead or half-closed socket (or unserializable payload) can raise
_SEND_ERRORS = (WebSocketDisconnect, RuntimeError, ConnectionError, TypeError, ValueError)


class ConnectionHub:
    """Registers connections and pushes events to them, best-effort.

    Each push is bounded by send_timeout and runs concurrently with the
    pushes to other sockets, so a client that stops reading only delays
    itself. Per-socket ordering comes from the lock on each Connection.
    """

    def __init__(
        self, registry: ConnectionRegistry | None = None, send_timeout: float | None = None
    ) -> None:
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.send_timeout = send_timeout if send_timeout is not None else config.ws_send_timeout
        self._presence_seq = 0

    async def register(self, user_id: str, conn: Connection) -> None:
        self.registry.register(user_id, conn)
        log.debug(
            "User %s connected (%d connections, %d users online)",
            user_id, len(self.registry), len(self.registry.online_user_ids()),
        )
        await self.broadcast_presence()

    async def deregister(self, user_id: str, conn: Connection) -> None:
        self.registry.deregister(user_id, conn)
        log.debug(
            "User %s disconnected (%d connections, %d users online)",
            user_id, len(self.registry), len(self.registry.online_user_ids()),
        )
        await self.broadcast_presence()

    async def broadcast_presence(self) -> None:
        """Send the current online-user list to every registered connection."""
        # Snapshot and sequence number are taken together, before any await
        self._presence_seq += 1
        seq = self._presence_seq
        online = sorted(self.registry.online_user_ids())
        targets = self.registry.all_connections()
        await asyncio.gather(
            *(self._push(conn, EVENT_ONLINE_USERS, online, presence_seq=seq) for conn in targets)
        )

    async def route_message(self, message: dict[str, Any]) -> int:
        """Push a saved message to the receiver's live connections, if any.

        Returns how many connections it was pushed to. Offline receivers are
        not an error: they read the message from history on their next load.
        """
        receiver_id = message.get("receiverId")
        if not receiver_id:
            return 0
        targets = self.registry.connections_for(receiver_id)
        if not targets:
            log.debug("Receiver %s offline, message %s stored only", receiver_id, message.get("_id"))
            return 0
        results = await asyncio.gather(
            *(self._push(conn, EVENT_NEW_MESSAGE, message) for conn in targets)
        )
        return sum(results)

    async def _push(
        self, conn: Connection, event: str, data: Any, presence_seq: int | None = None
    ) -> bool:
        if conn.closed:
            return False
        try:
            return await asyncio.wait_for(
                conn.send(event, data, presence_seq=presence_seq), timeout=self.send_timeout
            )
        except asyncio.TimeoutError:
            log.warning(
                "Timed out sending %s to connection %s after %.1fs",
                event, conn.id, self.send_timeout,
            )
        except _SEND_ERRORS as e:
            log.warning("Failed to send %s to connection %s: %s", event, conn.id, e)
        return False

    async def close_all(self, code: int = 1001) -> None:
        """Close every live socket (server shutdown). Sessions deregister themselves."""
        for conn in self.registry.all_connections():
            try:
                await asyncio.wait_for(conn.ws.close(code=code), timeout=self.send_timeout)
            except asyncio.TimeoutError:
                log.debug("Close timed out for connection %s", conn.id)
            except _SEND_ERRORS as e:
                log.debug("Close failed for connection %s: %s", conn.id, e)
