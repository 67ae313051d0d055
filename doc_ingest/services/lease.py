"""
Per-document lease

Stops two deliveries of the same job from processing one document at the
same time (queue redelivery, stale-document requeue racing a slow worker).

Redis implementation:
  acquire  — SET doc_ingest:lease:<id> <token> NX PX <ttl>
  release  — compare-and-delete (Lua) so a worker never frees a lease that
             expired and was taken over by another worker

The TTL matches the Celery hard time limit, so a killed worker's lease
expires on its own. When Redis is unreachable the lease degrades to
"granted": idempotent, overwrite-by-id upserts keep a double run safe.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from doc_ingest.core.exceptions import LeaseError

logger = logging.getLogger(__name__)

LEASE_KEY_PREFIX = "doc_ingest:lease:"

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class DocumentLease(ABC):
    @abstractmethod
    async def acquire(self, document_id: str) -> str | None:
        """Return a lease token, or None if another worker holds the lease."""

    @abstractmethod
    async def release(self, document_id: str, token: str) -> None:
        """Release a lease previously returned by acquire()."""

    async def aclose(self) -> None:
        return None

    @asynccontextmanager
    async def hold(self, document_id: str) -> AsyncIterator[bool]:
        """
        Yield True while this worker holds the lease, False if it is taken.

        Backend failures are logged and treated as granted.
        """
        unleased = False
        token: str | None = None
        try:
            token = await self.acquire(document_id)
        except LeaseError as exc:
            logger.warning("Lease backend unavailable, proceeding unleased | doc=%s error=%s",
                           document_id, exc.message)
            unleased = True

        if unleased:
            yield True
            return

        if token is None:
            yield False
            return

        try:
            yield True
        finally:
            try:
                await self.release(document_id, token)
            except LeaseError as exc:
                logger.warning("Lease release failed | doc=%s error=%s", document_id, exc.message)


class NullLease(DocumentLease):
    """Always granted. Used when REDIS_URL is empty."""

    async def acquire(self, document_id: str) -> str | None:
        return "null"

    async def release(self, document_id: str, token: str) -> None:
        return None


class RedisLease(DocumentLease):
    def __init__(self, client: Any, ttl_seconds: int = 330, prefix: str = LEASE_KEY_PREFIX) -> None:
        self._redis  = client
        self._ttl_ms = int(ttl_seconds * 1000)
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 330) -> RedisLease:
        return cls(aioredis.from_url(url, decode_responses=True), ttl_seconds=ttl_seconds)

    def _key(self, document_id: str) -> str:
        return f"{self._prefix}{document_id}"

    async def acquire(self, document_id: str) -> str | None:
        token = uuid.uuid4().hex
        try:
            granted = await self._redis.set(self._key(document_id), token, nx=True, px=self._ttl_ms)
        except RedisError as exc:
            raise LeaseError(f"Lease acquire failed: {exc}", document_id=document_id, original=exc) from exc
        if not granted:
            logger.info("Lease held elsewhere | doc=%s", document_id)
            return None
        logger.debug("Lease acquired | doc=%s ttl_ms=%d", document_id, self._ttl_ms)
        return token

    async def release(self, document_id: str, token: str) -> None:
        try:
            await self._redis.eval(_RELEASE_SCRIPT, 1, self._key(document_id), token)
        except RedisError as exc:
            raise LeaseError(f"Lease release failed: {exc}", document_id=document_id, original=exc) from exc

    async def aclose(self) -> None:
        await self._redis.aclose()
