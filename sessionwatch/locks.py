"""
Per-client mutual exclusion for session assignment.

Two interchangeable backends, both keyed by client id and both with a TTL
(a crashed holder cannot wedge a client) and a bounded wait (a slow client
only ever starves itself):

- RedisClientLock: redis-py's Lock (SET NX PX + token-checked release).
- StoreClientLock: a lease row in the ClientLeases table, for deployments
  that only have the SQL store.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.exceptions import LockError, RedisError

from .exceptions import LockUnavailable, StoreUnavailable
from .store import TrafficStore

logger = logging.getLogger("sessionwatch.locks")


def _lock_key(client_ip: str) -> str:
    return f"sessionwatch:seglock:{client_ip}"


class RedisClientLock:
    def __init__(self, redis_client, *, ttl: float, wait: float) -> None:
        self.redis = redis_client
        self.ttl = ttl
        self.wait = wait

    @asynccontextmanager
    async def hold(self, client_ip: str) -> AsyncIterator[None]:
        lock = self.redis.lock(_lock_key(client_ip), timeout=self.ttl, blocking_timeout=self.wait)
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            raise LockUnavailable(f"redis lock failed for {client_ip!r}: {exc}") from exc
        if not acquired:
            raise LockUnavailable(f"timed out after {self.wait}s waiting for {client_ip!r}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # TTL ran out while we held it; someone else may own it now.
                logger.warning("segmentation lock for client=%r expired before release", client_ip)
            except RedisError:
                logger.exception("failed to release segmentation lock for client=%r", client_ip)


class StoreClientLock:
    def __init__(self, store: TrafficStore, *, ttl: float, wait: float, poll_interval: float = 0.05) -> None:
        self.store = store
        self.ttl = ttl
        self.wait = wait
        self.poll_interval = poll_interval

    @asynccontextmanager
    async def hold(self, client_ip: str) -> AsyncIterator[None]:
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.wait
        while True:
            try:
                if await self.store.try_acquire_lease(client_ip, token, self.ttl):
                    break
            except StoreUnavailable as exc:
                raise LockUnavailable(f"lease store failed for {client_ip!r}: {exc}") from exc
            if time.monotonic() >= deadline:
                raise LockUnavailable(f"timed out after {self.wait}s waiting for {client_ip!r}")
            await asyncio.sleep(self.poll_interval)

        try:
            yield
        finally:
            try:
                released = await self.store.release_lease(client_ip, token)
            except StoreUnavailable:
                logger.exception("failed to release segmentation lease for client=%r", client_ip)
            else:
                if not released:
                    logger.warning("segmentation lease for client=%r expired before release", client_ip)
