# lifecycle.py -- Per-connection state machine for the real-time endpoint
# CONNECTING -> REGISTERED | ANONYMOUS -> CLOSED. CLOSED is terminal, and
# leaving REGISTERED deregisters exactly once however often disconnect fires.

from __future__ import annotations

import enum
import logging

from fastapi import WebSocket

from .config import config
from .presence import Connection
from .security import verify_session
from .ws import ConnectionHub

log = logging.getLogger(__name__)

CLOSE_UNAUTHORIZED = 4401
CLOSE_IDENTITY_MISMATCH = 4403


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    REGISTERED = "registered"
    ANONYMOUS = "anonymous"
    CLOSED = "closed"


class HandshakeRejected(Exception):
    def __init__(self, code: int, reason: str) -> None:
        super().__init__(reason)
        self.code = code
        self.reason = reason


def resolve_identity(ws: WebSocket) -> str | None:
    """Work out which user a handshake belongs to.

    The session token comes from ?token= if given, else from the cookie. With
    ws_require_session off, a bare ?userId= is trusted and a handshake with
    neither yields None (anonymous).
    """
    token = ws.query_params.get("token") or ws.cookies.get(config.cookie_name)
    claimed = ws.query_params.get("userId") or None
    session_user = verify_session(token)

    if config.ws_require_session:
        if session_user is None:
            raise HandshakeRejected(CLOSE_UNAUTHORIZED, "Unauthorized")
        if claimed is not None and claimed != session_user:
            raise HandshakeRejected(CLOSE_IDENTITY_MISMATCH, "userId does not match session")
        return session_user

    return session_user or claimed


class ClientSession:
    def __init__(self, ws: WebSocket, hub: ConnectionHub) -> None:
        self.ws = ws
        self.hub = hub
        self.conn = Connection(ws)
        self.state = ConnectionState.CONNECTING

    @property
    def user_id(self) -> str | None:
        return self.conn.user_id

    async def open(self) -> bool:
        """Handshake. Returns False if the connection was refused."""
        if self.state is not ConnectionState.CONNECTING:
            raise RuntimeError(f"open() called in state {self.state.value}")
        try:
            user_id = resolve_identity(self.ws)
        except HandshakeRejected as e:
            log.info("WebSocket refused (%d): %s", e.code, e.reason)
            self.state = ConnectionState.CLOSED
            self.conn.closed = True
            await self.ws.close(code=e.code, reason=e.reason)
            return False

        await self.ws.accept()
        if user_id is None:
            self.state = ConnectionState.ANONYMOUS
            log.debug("Anonymous WebSocket %s accepted, not registered", self.conn.id)
            return True

        # Registry mutation runs before the first await inside register()
        self.state = ConnectionState.REGISTERED
        try:
            await self.hub.register(user_id, self.conn)
        except BaseException:
            # Cancelled or failed mid-broadcast: don't leave the user online
            await self.close()
            raise
        return True

    async def serve(self) -> None:
        """Read (and ignore) client frames until the transport disconnects."""
        while True:
            message = await self.ws.receive()
            if message["type"] == "websocket.disconnect":
                return

    async def close(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        previous = self.state
        self.state = ConnectionState.CLOSED
        self.conn.closed = True
        if previous is ConnectionState.REGISTERED and self.conn.user_id is not None:
            await self.hub.deregister(self.conn.user_id, self.conn)
