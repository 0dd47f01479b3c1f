"""
Connection Directory: live push channel for in-app notifications.

Every open stream (SSE or WebSocket) registers here and gets a bounded
``asyncio.Queue``. The route serving the stream drains its queue; the
fan-out side only ever uses ``put_nowait`` so a slow client can never block
delivery to others. A full queue drops the payload with a warning.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from ..models import utcnow


logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100


class PushChannel(ABC):
    """Best-effort real-time delivery to connected clients."""

    @abstractmethod
    async def broadcast_to_user(self, user_id: UUID, payload: dict[str, Any]) -> int:
        """Push to every live connection of a user; returns connections reached."""
        pass

    @abstractmethod
    async def broadcast_to_tenant_room(self, tenant_id: UUID, payload: dict[str, Any]) -> int:
        pass

    @abstractmethod
    def get_connected_users_count(self, tenant_id: UUID | None = None) -> int:
        pass


@dataclass
class Connection:
    """One open stream."""
    connection_id: str
    tenant_id: UUID
    user_id: UUID
    queue: asyncio.Queue
    connected_at: datetime = field(default_factory=utcnow)


class ConnectionDirectory(PushChannel):
    """In-memory registry: tenant room -> connection ids, user -> connections."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self._queue_size = queue_size
        self._connections: dict[str, Connection] = {}
        self._tenant_rooms: dict[UUID, set[str]] = {}
        self._user_connections: dict[UUID, set[str]] = {}
        self.total_events_dispatched = 0

    def register_connection(
        self,
        tenant_id: UUID,
        user_id: UUID,
        connection_id: str | None = None,
    ) -> Connection:
        connection = Connection(
            connection_id=connection_id or uuid4().hex,
            tenant_id=tenant_id,
            user_id=user_id,
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        self._connections[connection.connection_id] = connection
        self._tenant_rooms.setdefault(tenant_id, set()).add(connection.connection_id)
        self._user_connections.setdefault(user_id, set()).add(connection.connection_id)
        logger.info(
            f"connection_id={connection.connection_id} user_id={user_id} "
            f"tenant_id={tenant_id} event=connect"
        )
        return connection

    def unregister_connection(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return

        room = self._tenant_rooms.get(connection.tenant_id)
        if room is not None:
            room.discard(connection_id)
            if not room:
                del self._tenant_rooms[connection.tenant_id]

        user_conns = self._user_connections.get(connection.user_id)
        if user_conns is not None:
            user_conns.discard(connection_id)
            if not user_conns:
                del self._user_connections[connection.user_id]

        logger.info(f"connection_id={connection_id} user_id={connection.user_id} event=disconnect")

    async def broadcast_to_user(self, user_id: UUID, payload: dict[str, Any]) -> int:
        return self._deliver(self._user_connections.get(user_id, set()), payload)

    async def broadcast_to_tenant_room(self, tenant_id: UUID, payload: dict[str, Any]) -> int:
        return self._deliver(self._tenant_rooms.get(tenant_id, set()), payload)

    def _deliver(self, connection_ids: set[str], payload: dict[str, Any]) -> int:
        delivered = 0
        for connection_id in list(connection_ids):
            connection = self._connections.get(connection_id)
            if connection is None:
                continue
            try:
                connection.queue.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"connection_id={connection_id} event=dropped reason=queue_full")
        self.total_events_dispatched += delivered
        return delivered

    def get_connected_users_count(self, tenant_id: UUID | None = None) -> int:
        """Number of open connections in a tenant room, or overall."""
        if tenant_id is None:
            return len(self._connections)
        return len(self._tenant_rooms.get(tenant_id, set()))

    def is_user_connected(self, user_id: UUID) -> bool:
        return bool(self._user_connections.get(user_id))

    def close(self) -> None:
        """Drop every registration (shutdown)."""
        count = len(self._connections)
        self._connections.clear()
        self._tenant_rooms.clear()
        self._user_connections.clear()
        if count:
            logger.info(f"Closed {count} live connections")
