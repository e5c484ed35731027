"""
Distributed leases on top of Redis.

A lease is a set of resources held under one owner token for a bounded
TTL. Only the owner token can renew or release a lease, so a worker whose
lease expired (and was taken over) can never release someone else's lock.
Resources are always acquired in sorted order to rule out circular waits.
"""

import asyncio
import logging
import os
import random
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncContextManager, AsyncIterator, Iterable, List, Optional, Protocol, Union

logger = logging.getLogger(__name__)

# Compare-and-delete: only the owner may release
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Compare-and-expire: only the owner may renew
RENEW_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class LockUnavailableError(Exception):
    """Raised by hold() when a lease could not be acquired."""

    def __init__(self, resources: List[str]):
        super().__init__(f"Unable to acquire lock for resources: {', '.join(resources)}")
        self.resources = resources


@dataclass
class Lease:
    """A held lease: owner token plus the resources it guards."""

    resources: List[str]
    token: str
    ttl_ms: int
    priority: int = 100
    acquired_at: float = field(default_factory=time.time)

    def __bool__(self) -> bool:
        return True

    @property
    def expires_at(self) -> float:
        return self.acquired_at + self.ttl_ms / 1000


class DistributedLock(Protocol):
    """Protocol for cluster-wide mutual exclusion."""

    async def acquire(
        self,
        resources: Union[str, Iterable[str]],
        ttl_ms: int,
        max_retries: int,
        retry_delay_ms: int,
        priority: int = 100,
    ) -> Optional[Lease]:
        ...

    async def renew(self, lease: Lease, ttl_ms: Optional[int] = None) -> bool:
        ...

    async def release(self, lease: Lease) -> bool:
        ...

    def hold(
        self,
        resources: Union[str, Iterable[str]],
        ttl_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        priority: int = 100,
    ) -> AsyncContextManager[Lease]:
        ...


def _sort_resources(resources: Union[str, Iterable[str]]) -> List[str]:
    if isinstance(resources, str):
        return [resources]
    return sorted(set(resources))


class RedisDistributedLock:
    """Redis implementation of DistributedLock using SET NX PX and Lua scripts."""

    LOCK_PREFIX = "lock:"

    def __init__(
        self,
        redis_client,
        default_ttl_ms: int = 30000,
        default_max_retries: int = 50,
        default_retry_delay_ms: int = 100,
    ):
        """
        Initialize distributed lock.

        Args:
            redis_client: Async Redis client
            default_ttl_ms: Lease TTL used when callers don't pass one
            default_max_retries: Acquisition attempts used when callers don't pass one
            default_retry_delay_ms: Delay between attempts used when callers don't pass one
        """
        self.redis = redis_client
        self.default_ttl_ms = default_ttl_ms
        self.default_max_retries = default_max_retries
        self.default_retry_delay_ms = default_retry_delay_ms

    def _lock_key(self, resource: str) -> str:
        return f"{self.LOCK_PREFIX}{resource}"

    @staticmethod
    def generate_token() -> str:
        """Unique owner token: pid, wall-clock millis and random suffix."""
        return f"{os.getpid()}:{int(time.time() * 1000)}:{secrets.token_hex(8)}"

    async def acquire(
        self,
        resources: Union[str, Iterable[str]],
        ttl_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        priority: int = 100,
    ) -> Optional[Lease]:
        """
        Acquire every resource or none of them.

        Args:
            resources: Resource name or names
            ttl_ms: Lease TTL in milliseconds
            max_retries: Total number of acquisition attempts
            retry_delay_ms: Fixed delay between attempts (plus up to 10% jitter)
            priority: Caller priority, recorded on the lease (lower is more urgent)

        Returns:
            Lease when all resources were acquired, None otherwise
        """
        ttl_ms = ttl_ms or self.default_ttl_ms
        max_retries = max(1, max_retries or self.default_max_retries)
        retry_delay_ms = self.default_retry_delay_ms if retry_delay_ms is None else retry_delay_ms

        sorted_resources = _sort_resources(resources)
        token = self.generate_token()

        for attempt in range(max_retries):
            acquired: List[str] = []
            try:
                for resource in sorted_resources:
                    ok = await self.redis.set(self._lock_key(resource), token, nx=True, px=ttl_ms)
                    if not ok:
                        break
                    acquired.append(resource)
            except Exception:
                await self._release_resources(acquired, token)
                raise

            if len(acquired) == len(sorted_resources):
                logger.debug(
                    f"Acquired lock on {', '.join(sorted_resources)} "
                    f"(attempt {attempt + 1}, ttl {ttl_ms}ms, priority {priority})"
                )
                return Lease(
                    resources=sorted_resources, token=token, ttl_ms=ttl_ms, priority=priority
                )

            # Roll back the partial acquisition before waiting
            await self._release_resources(acquired, token)

            if attempt < max_retries - 1:
                jitter = random.uniform(0, retry_delay_ms * 0.1)
                await asyncio.sleep((retry_delay_ms + jitter) / 1000)

        logger.warning(
            f"Failed to acquire lock on {', '.join(sorted_resources)} after {max_retries} attempts"
        )
        return None

    async def _release_resources(self, resources: List[str], token: str) -> int:
        released = 0
        for resource in resources:
            try:
                result = await self.redis.eval(RELEASE_SCRIPT, 1, self._lock_key(resource), token)
                released += int(result)
            except Exception as e:
                logger.error(f"Error releasing lock for {resource}: {e}")
        return released

    async def release(self, lease: Lease) -> bool:
        """
        Release a lease.

        Returns:
            True if every resource was still held by this lease
        """
        released = await self._release_resources(lease.resources, lease.token)
        if released != len(lease.resources):
            logger.warning(
                f"Lease on {', '.join(lease.resources)} was partly lost before release "
                f"({released}/{len(lease.resources)} released)"
            )
            return False

        logger.debug(f"Released lock on {', '.join(lease.resources)}")
        return True

    async def renew(self, lease: Lease, ttl_ms: Optional[int] = None) -> bool:
        """
        Extend a lease's TTL.

        Returns:
            True if every resource was still held and has been extended
        """
        ttl_ms = ttl_ms or lease.ttl_ms
        for resource in lease.resources:
            result = await self.redis.eval(
                RENEW_SCRIPT, 1, self._lock_key(resource), lease.token, ttl_ms
            )
            if not int(result):
                logger.warning(f"Failed to renew lock (not owner or expired): {resource}")
                return False

        lease.ttl_ms = ttl_ms
        lease.acquired_at = time.time()
        return True

    async def exists(self, resource: str) -> bool:
        return await self.redis.exists(self._lock_key(resource)) > 0

    async def ttl_ms(self, resource: str) -> int:
        """Remaining TTL in ms; -1 means no expiry, -2 means not held."""
        return await self.redis.pttl(self._lock_key(resource))

    @asynccontextmanager
    async def hold(
        self,
        resources: Union[str, Iterable[str]],
        ttl_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        priority: int = 100,
    ) -> AsyncIterator[Lease]:
        """Run a block under a lease, releasing it on every exit path."""
        lease = await self.acquire(resources, ttl_ms, max_retries, retry_delay_ms, priority)
        if lease is None:
            raise LockUnavailableError(_sort_resources(resources))

        try:
            yield lease
        finally:
            try:
                await self.release(lease)
            except Exception as e:
                logger.error(f"Error releasing lock in finally block: {e}")
