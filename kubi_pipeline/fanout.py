"""Push fan-out: live overlay connections per recipient"""
import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Set, Union

from pydantic import BaseModel
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

logger = logging.getLogger(__name__)


class PushFanout:
    """
    Registry of open overlay connections keyed by recipient id.

    All registry access goes through the lock; the underlying map is never
    handed out. Broadcast sends outside the lock to a snapshot of the set.
    """

    def __init__(self):
        self._connections: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def register(self, recipient_id: str, connection: WebSocket) -> None:
        async with self._lock:
            self._connections[recipient_id].add(connection)
            count = len(self._connections[recipient_id])
        logger.info(f"Overlay connected for {recipient_id} ({count} open)")

    async def unregister(self, recipient_id: str, connection: WebSocket) -> None:
        async with self._lock:
            connections = self._connections.get(recipient_id)
            if connections is None:
                return
            connections.discard(connection)
            if not connections:
                del self._connections[recipient_id]
        logger.info(f"Overlay disconnected for {recipient_id}")

    async def connection_count(self, recipient_id: str = None) -> int:
        async with self._lock:
            if recipient_id is not None:
                return len(self._connections.get(recipient_id, ()))
            return sum(len(c) for c in self._connections.values())

    async def broadcast(self, recipient_id: str, payload: Union[BaseModel, Dict[str, Any]]) -> int:
        """
        Send payload to every open connection of a recipient.

        Returns:
            Number of connections the payload was delivered to; 0 when
            nobody is watching
        """
        async with self._lock:
            targets = list(self._connections.get(recipient_id, ()))
        if not targets:
            logger.debug(f"No overlay connected for {recipient_id}, skipping broadcast")
            return 0

        message = payload.model_dump(mode='json') if isinstance(payload, BaseModel) else payload
        delivered = 0
        for connection in targets:
            if connection.client_state != WebSocketState.CONNECTED:
                continue
            try:
                await connection.send_json(message)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.warning(f"Send to overlay of {recipient_id} failed, dropping connection: {e}")
                await self.unregister(recipient_id, connection)
        return delivered

    async def clear(self) -> None:
        """Close and forget every connection (shutdown)"""
        async with self._lock:
            connections = [c for group in self._connections.values() for c in group]
            self._connections.clear()
        for connection in connections:
            if connection.client_state == WebSocketState.CONNECTED:
                try:
                    await connection.close(code=1001)
                except (RuntimeError, OSError) as e:
                    logger.debug(f"Close failed: {e}")
        logger.info(f"Fan-out registry cleared ({len(connections)} connections)")
