"""
Reconciliation worker.

End-node registration only enqueues the node id; this worker drains the queue
and brings each node up to parity with the provisioned user set.
"""
import asyncio
import logging
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

QUEUE_NAME = "reconcile_queue"


class ReconciliationQueue:
    async def put(self, server_id: str) -> None:
        raise NotImplementedError

    async def get(self, timeout: float = 5) -> Optional[str]:
        """Next server id, or None if nothing arrived within `timeout` seconds."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryQueue(ReconciliationQueue):
    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    async def put(self, server_id: str) -> None:
        await self._queue.put(server_id)

    async def get(self, timeout: float = 5) -> Optional[str]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()


class RedisQueue(ReconciliationQueue):
    def __init__(self, client: redis.Redis, name: str = QUEUE_NAME):
        self.client = client
        self.name = name

    @classmethod
    def from_settings(cls, settings) -> "RedisQueue":
        return cls(redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            decode_responses=True,
        ))

    async def put(self, server_id: str) -> None:
        await self.client.rpush(self.name, server_id)

    async def get(self, timeout: float = 5) -> Optional[str]:
        # blpop returns a tuple (key, value)
        item = await self.client.blpop(self.name, timeout=timeout)
        if not item:
            return None
        _, server_id = item
        return server_id

    async def close(self) -> None:
        await self.client.aclose()


class ReconciliationWorker:
    def __init__(self, queue: ReconciliationQueue, registry):
        self.queue = queue
        self.registry = registry

    async def process_next(self, timeout: float = 5):
        """Handle one queued node. Returns the ReconcileResult, or None if idle."""
        server_id = await self.queue.get(timeout=timeout)
        if server_id is None:
            return None
        return await self.registry.reconcile(server_id)

    async def run(self):
        logger.info("Reconciliation worker started")
        while True:
            try:
                await self.process_next()
            except asyncio.CancelledError:
                logger.info("Reconciliation worker stopped")
                raise
            except Exception:
                logger.exception("Reconciliation worker error")
                await asyncio.sleep(5)
