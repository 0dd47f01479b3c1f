"""
Priority Index: per-tenant ordering of pending queue entries.

The index is a cache over ``queued_messages``. It carries only the message
id and its scheduled time; the durable row stays the source of truth and
any entry whose row is missing or no longer PENDING is dropped when read.

Two backends:
- ``RedisPriorityIndex``: one sorted set per tenant (``{prefix}:{tenant_id}``)
- ``InMemoryPriorityIndex``: process-local, used when Redis is disabled
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

import redis.asyncio as redis

from ..core.redis import REDIS_DISABLED_URL, create_async_redis_client
from ..models import MessagePriority


logger = logging.getLogger(__name__)

# Insertion time is folded into the fractional part of the score so members
# of one tier come back in approximately FIFO order.
_SEQUENCE_SCALE = 1e14


# =============================================================================
# ENTRIES
# =============================================================================


@dataclass(frozen=True)
class IndexEntry:
    """A pointer to a pending durable message."""
    message_id: UUID
    priority: MessagePriority
    scheduled_at: datetime

    def to_member(self) -> str:
        return json.dumps(
            {"id": str(self.message_id), "scheduled_at": self.scheduled_at.isoformat()},
            sort_keys=True,
        )

    @classmethod
    def from_member(cls, member: str, priority: MessagePriority) -> "IndexEntry":
        data = json.loads(member)
        return cls(
            message_id=UUID(data["id"]),
            priority=priority,
            scheduled_at=datetime.fromisoformat(data["scheduled_at"]),
        )


# =============================================================================
# INTERFACE
# =============================================================================


class PriorityIndex(ABC):
    """Abstract priority index keyed by (tenant, priority)."""

    @abstractmethod
    async def add(self, tenant_id: UUID, entry: IndexEntry) -> None:
        pass

    @abstractmethod
    async def fetch(
        self,
        tenant_id: UUID,
        priority: MessagePriority,
        limit: int,
        offset: int = 0,
    ) -> list[IndexEntry]:
        """Return up to ``limit`` entries of one tier, oldest first, skipping ``offset``."""
        pass

    @abstractmethod
    async def remove(self, tenant_id: UUID, entry: IndexEntry) -> None:
        pass

    @abstractmethod
    async def tenants(self) -> list[UUID]:
        """Tenants that currently have at least one entry."""
        pass

    @abstractmethod
    async def size(self, tenant_id: UUID) -> int:
        pass

    async def close(self) -> None:
        pass


# =============================================================================
# REDIS BACKEND
# =============================================================================


class RedisPriorityIndex(PriorityIndex):
    """Sorted-set index; score = priority + insertion fraction."""

    def __init__(self, client: redis.Redis, prefix: str = "email_queue"):
        self._client = client
        self._prefix = prefix

    def _key(self, tenant_id: UUID) -> str:
        return f"{self._prefix}:{tenant_id}"

    async def add(self, tenant_id: UUID, entry: IndexEntry) -> None:
        score = int(entry.priority) + (time.time() * 1000) / _SEQUENCE_SCALE
        await self._client.zadd(self._key(tenant_id), {entry.to_member(): score})

    async def fetch(
        self,
        tenant_id: UUID,
        priority: MessagePriority,
        limit: int,
        offset: int = 0,
    ) -> list[IndexEntry]:
        tier = int(priority)
        members = await self._client.zrangebyscore(
            self._key(tenant_id),
            tier,
            f"({tier + 1}",
            start=offset,
            num=limit,
        )
        entries = []
        for member in members:
            try:
                entries.append(IndexEntry.from_member(member, priority))
            except (ValueError, KeyError) as e:
                logger.warning(f"Dropping unreadable index member for tenant {tenant_id}: {e}")
                await self._client.zrem(self._key(tenant_id), member)
        return entries

    async def remove(self, tenant_id: UUID, entry: IndexEntry) -> None:
        await self._client.zrem(self._key(tenant_id), entry.to_member())

    async def tenants(self) -> list[UUID]:
        tenant_ids = []
        async for key in self._client.scan_iter(match=f"{self._prefix}:*"):
            suffix = key.split(":", 1)[1] if ":" in key else ""
            try:
                tenant_ids.append(UUID(suffix))
            except ValueError:
                logger.warning(f"Ignoring unexpected index key {key}")
        return tenant_ids

    async def size(self, tenant_id: UUID) -> int:
        return await self._client.zcard(self._key(tenant_id))

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================


class InMemoryPriorityIndex(PriorityIndex):
    """Process-local index; contents are lost on restart."""

    def __init__(self):
        self._tiers: dict[UUID, dict[MessagePriority, dict[UUID, IndexEntry]]] = {}
        self._lock = asyncio.Lock()

    async def add(self, tenant_id: UUID, entry: IndexEntry) -> None:
        async with self._lock:
            tiers = self._tiers.setdefault(tenant_id, {})
            # One entry per message across tiers
            for members in tiers.values():
                members.pop(entry.message_id, None)
            tiers.setdefault(entry.priority, {})[entry.message_id] = entry

    async def fetch(
        self,
        tenant_id: UUID,
        priority: MessagePriority,
        limit: int,
        offset: int = 0,
    ) -> list[IndexEntry]:
        async with self._lock:
            members = self._tiers.get(tenant_id, {}).get(priority, {})
            return list(members.values())[offset:offset + limit]

    async def remove(self, tenant_id: UUID, entry: IndexEntry) -> None:
        async with self._lock:
            tiers = self._tiers.get(tenant_id)
            if not tiers:
                return
            members = tiers.get(entry.priority)
            if members is not None:
                members.pop(entry.message_id, None)
                if not members:
                    del tiers[entry.priority]
            if not tiers:
                del self._tiers[tenant_id]

    async def tenants(self) -> list[UUID]:
        async with self._lock:
            return [tenant_id for tenant_id, tiers in self._tiers.items() if tiers]

    async def size(self, tenant_id: UUID) -> int:
        async with self._lock:
            return sum(len(members) for members in self._tiers.get(tenant_id, {}).values())


def build_priority_index(
    redis_url: str | None,
    prefix: str = "email_queue",
    max_connections: int = 20,
) -> PriorityIndex:
    """Pick the Redis backend when a server URL is configured."""
    if not redis_url or redis_url.strip().lower() == REDIS_DISABLED_URL:
        logger.info("Priority index running in-process (Redis disabled)")
        return InMemoryPriorityIndex()
    return RedisPriorityIndex(create_async_redis_client(redis_url.strip(), max_connections), prefix)
