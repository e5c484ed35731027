"""
Shared pytest fixtures for Gatekey tests.

This module provides common fixtures including:
- FakeRedis: in-memory stand-in for the redis.asyncio client surface Gatekey uses
- FakeClock: controllable wall clock for DoSGuard tests
- Fully wired ApiKeyService built on FakeRedis
"""

import asyncio
import os
import sys
import time
from typing import Any, Dict, List, Optional

import pytest
from redis.exceptions import WatchError

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gatekey.modules.audit import SecurityAudit
from gatekey.modules.auth.dos_guard import DoSGuard
from gatekey.modules.auth.hashing import HashEngine
from gatekey.modules.auth.legacy import LegacyDataAdapter
from gatekey.modules.auth.migration import MigrationCoordinator
from gatekey.modules.auth.service import ApiKeyService
from gatekey.modules.auth.validator import Validator
from gatekey.modules.lock.lock import RELEASE_SCRIPT, RENEW_SCRIPT, RedisDistributedLock
from gatekey.modules.storage import RedisKeyStore

SERVER_SECRET = "test-server-secret"

# Keep PBKDF2 cheap in tests; production uses the 10000 iteration default
TEST_ITERATIONS = 1000


# =============================================================================
# Redis double
# =============================================================================

class FakePipeline:
    """
    Queues commands and runs them on execute(), like a MULTI/EXEC pipeline.

    After watch() and before multi() commands run immediately, as in redis-py.
    """

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._commands: List[tuple] = []
        self._watched: Dict[str, int] = {}
        self._buffering = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self._reset()
        return False

    def _reset(self) -> None:
        self._commands = []
        self._watched = {}
        self._buffering = True

    def __getattr__(self, name):
        if not self._buffering:
            return getattr(self._redis, name)

        def queue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self

        return queue

    async def watch(self, *keys):
        await self._redis._op("watch")
        for key in keys:
            self._watched[key] = self._redis.versions.get(key, 0)
        self._buffering = False

    async def unwatch(self):
        await self._redis._op("unwatch")
        self._reset()
        return True

    def multi(self) -> None:
        self._buffering = True

    async def execute(self) -> List[Any]:
        await self._redis._op("execute")
        watched, self._watched = self._watched, {}
        for key, version in watched.items():
            if self._redis.versions.get(key, 0) != version:
                self._commands = []
                raise WatchError("Watched variable changed.")
        results = []
        # MULTI/EXEC: nothing else runs until the whole batch has applied
        self._redis.in_transaction = True
        try:
            for name, args, kwargs in self._commands:
                results.append(await getattr(self._redis, name)(*args, **kwargs))
        finally:
            self._redis.in_transaction = False
        self._commands = []
        return results


class FakeRedis:
    """
    In-memory async Redis with string, set, hash and list types.

    Every command is appended to .calls so tests can assert on store traffic.
    """

    def __init__(self):
        self.strings: Dict[str, str] = {}
        self.expiry: Dict[str, float] = {}
        self.sets: Dict[str, set] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.lists: Dict[str, List[str]] = {}
        self.calls: List[str] = []
        self.versions: Dict[str, int] = {}
        self.in_transaction = False

    async def _op(self, name: str) -> None:
        """Record the command and yield to the loop, as a network round trip would."""
        self.calls.append(name)
        if not self.in_transaction:
            await asyncio.sleep(0)

    def _touch(self, key: str) -> None:
        self.versions[key] = self.versions.get(key, 0) + 1

    def _expired(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and time.monotonic() >= deadline:
            self.strings.pop(key, None)
            self.expiry.pop(key, None)
            self._touch(key)
            return True
        return False

    def _get(self, key: str) -> Optional[str]:
        if self._expired(key):
            return None
        return self.strings.get(key)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def get(self, key):
        await self._op("get")
        return self._get(key)

    async def set(self, key, value, nx: bool = False, px: Optional[int] = None):
        await self._op("set")
        if nx and self._get(key) is not None:
            return None
        self.strings[key] = value
        self._touch(key)
        if px is not None:
            self.expiry[key] = time.monotonic() + px / 1000
        else:
            self.expiry.pop(key, None)
        return True

    async def mget(self, keys):
        await self._op("mget")
        return [self._get(key) for key in keys]

    async def delete(self, *keys):
        await self._op("delete")
        removed = 0
        for key in keys:
            if self._get(key) is not None:
                removed += 1
                self._touch(key)
            self.strings.pop(key, None)
            self.expiry.pop(key, None)
        return removed

    async def exists(self, key):
        await self._op("exists")
        return 1 if self._get(key) is not None else 0

    async def pttl(self, key):
        await self._op("pttl")
        if self._get(key) is None:
            return -2
        deadline = self.expiry.get(key)
        if deadline is None:
            return -1
        return int((deadline - time.monotonic()) * 1000)

    async def sadd(self, key, *members):
        await self._op("sadd")
        bucket = self.sets.setdefault(key, set())
        added = len(set(members) - bucket)
        bucket.update(members)
        return added

    async def srem(self, key, *members):
        await self._op("srem")
        bucket = self.sets.get(key, set())
        removed = len(bucket & set(members))
        bucket.difference_update(members)
        return removed

    async def smembers(self, key):
        await self._op("smembers")
        return set(self.sets.get(key, set()))

    async def hget(self, name, key):
        await self._op("hget")
        return self.hashes.get(name, {}).get(key)

    async def hset(self, name, key, value):
        await self._op("hset")
        bucket = self.hashes.setdefault(name, {})
        created = key not in bucket
        bucket[key] = value
        return int(created)

    async def hdel(self, name, *keys):
        await self._op("hdel")
        bucket = self.hashes.get(name, {})
        return sum(1 for key in keys if bucket.pop(key, None) is not None)

    async def lpush(self, key, *values):
        await self._op("lpush")
        bucket = self.lists.setdefault(key, [])
        for value in values:
            bucket.insert(0, value)
        return len(bucket)

    async def ltrim(self, key, start, end):
        await self._op("ltrim")
        bucket = self.lists.get(key, [])
        self.lists[key] = bucket[start:end + 1]
        return True

    async def lrange(self, key, start, end):
        await self._op("lrange")
        bucket = self.lists.get(key, [])
        return bucket[start:end + 1]

    async def eval(self, script, numkeys, *keys_and_args):
        await self._op("eval")
        key, token = keys_and_args[0], keys_and_args[1]
        if self._get(key) != token:
            return 0
        if script == RELEASE_SCRIPT:
            self._touch(key)
            self.strings.pop(key, None)
            self.expiry.pop(key, None)
            return 1
        if script == RENEW_SCRIPT:
            self.expiry[key] = time.monotonic() + int(keys_and_args[2]) / 1000
            return 1
        raise NotImplementedError("Unknown script")

    async def aclose(self):
        await self._op("aclose")


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hash_engine():
    return HashEngine(SERVER_SECRET, iterations=TEST_ITERATIONS)


@pytest.fixture
def store(fake_redis):
    return RedisKeyStore(fake_redis)


@pytest.fixture
def audit(fake_redis):
    return SecurityAudit(fake_redis)


@pytest.fixture
def dos_guard(clock):
    return DoSGuard(clock=clock)


@pytest.fixture
def lock(fake_redis):
    return RedisDistributedLock(fake_redis, default_max_retries=3, default_retry_delay_ms=10)


@pytest.fixture
def legacy_adapter(audit):
    return LegacyDataAdapter(audit=audit)


@pytest.fixture
def coordinator(store, hash_engine, lock, audit):
    return MigrationCoordinator(
        store=store,
        hash_engine=hash_engine,
        lock=lock,
        audit=audit,
        lock_retry_delay_ms=10,
    )


@pytest.fixture
def validator(store, hash_engine, dos_guard, legacy_adapter, coordinator, audit):
    return Validator(
        store=store,
        hash_engine=hash_engine,
        dos_guard=dos_guard,
        legacy_adapter=legacy_adapter,
        migration=coordinator,
        audit=audit,
    )


@pytest.fixture
def service(store, hash_engine, validator, legacy_adapter, coordinator, audit):
    return ApiKeyService(
        store=store,
        hash_engine=hash_engine,
        validator=validator,
        legacy_adapter=legacy_adapter,
        migration=coordinator,
        audit=audit,
        default_token_limit=1000,
    )


@pytest.fixture
def make_record():
    """Build an ApiKeyRecord with sensible defaults."""
    from gatekey.modules.api.models import ApiKeyRecord

    def _make(key_id: str = "key-1", secret_hash: str = "v2:00:00", **fields) -> ApiKeyRecord:
        fields.setdefault("name", f"Key {key_id}")
        return ApiKeyRecord(id=key_id, secret_hash=secret_hash, **fields)

    return _make


async def drain(coordinator: MigrationCoordinator) -> None:
    """Start workers if needed and wait for every queued task."""
    if not coordinator.running:
        await coordinator.start()
    await asyncio.wait_for(coordinator.join(), timeout=5)
