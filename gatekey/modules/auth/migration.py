"""
Background upgrade of legacy API key records.

Validation hands work to the coordinator without waiting: a bounded queue
is drained by worker tasks, and every write to a record happens under the
cluster-wide lease "migration:<id>". The critical section re-reads the
record, so running it twice (or losing the race to another worker) leaves
the record exactly as one run would. Failures are logged and audited, never
propagated; the next legacy validation simply schedules the upgrade again.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..api.models import ApiKeyRecord
from ..lock.lock import DistributedLock, Lease
from ..storage.keystore import KeyStore
from .hashing import HashEngine
from .interfaces import SecurityAuditor

logger = logging.getLogger(__name__)

HASH_UPGRADE = "hash_upgrade"
OWNERSHIP = "ownership"


@dataclass
class MigrationTask:
    kind: str
    key_id: str
    secret: Optional[str] = field(default=None, repr=False)
    observed_hash: Optional[str] = field(default=None, repr=False)
    owner: Optional[str] = None
    owner_type: Optional[str] = None


@dataclass
class MigrationStats:
    migrated: int = 0
    skipped: int = 0
    failed: int = 0
    dropped: int = 0
    ownership_updates: int = 0


class MigrationCoordinator:
    """Bounded background worker for hash upgrades and ownership convergence."""

    def __init__(
        self,
        store: KeyStore,
        hash_engine: HashEngine,
        lock: DistributedLock,
        audit: Optional[SecurityAuditor] = None,
        lock_ttl_ms: int = 30000,
        lock_max_retries: int = 3,
        lock_retry_delay_ms: int = 1000,
        queue_size: int = 1000,
        workers: int = 2,
    ):
        """
        Initialize migration coordinator.

        Args:
            store: API key store
            hash_engine: Produces the current-format hash
            lock: Distributed lease provider
            audit: Security audit sink
            lock_ttl_ms: Lease TTL; must exceed the worst-case critical section
            lock_max_retries: Lease acquisition attempts before skipping
            lock_retry_delay_ms: Fixed delay between attempts
            queue_size: Pending tasks kept before new ones are dropped
            workers: Number of worker tasks
        """
        self.store = store
        self.hash_engine = hash_engine
        self.lock = lock
        self.audit = audit
        self.lock_ttl_ms = lock_ttl_ms
        self.lock_max_retries = lock_max_retries
        self.lock_retry_delay_ms = lock_retry_delay_ms
        self.queue_size = queue_size
        self.worker_count = max(1, workers)

        self.stats = MigrationStats()
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

    @staticmethod
    def lock_resource(key_id: str) -> str:
        return f"migration:{key_id}"

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def _ensure_queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.queue_size)
        return self._queue

    async def start(self) -> None:
        """Start the worker tasks on the running event loop."""
        if self._workers:
            return
        queue = self._ensure_queue()
        self._workers = [
            asyncio.create_task(self._worker(queue), name=f"gatekey-migration-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"Migration coordinator started with {self.worker_count} workers")

    async def stop(self) -> None:
        """Cancel workers. Pending tasks are discarded; they are retried on next validation."""
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        if workers:
            logger.info("Migration coordinator stopped")

    async def join(self) -> None:
        """Wait until every submitted task has been processed."""
        if self._queue is not None:
            await self._queue.join()

    def _enqueue(self, task: MigrationTask) -> bool:
        try:
            self._ensure_queue().put_nowait(task)
            return True
        except asyncio.QueueFull:
            self.stats.dropped += 1
            logger.warning(f"Migration queue full, dropping {task.kind} for {task.key_id}")
            return False

    def submit(self, key_id: str, secret: str, observed_hash: str) -> bool:
        """
        Schedule a hash upgrade. Never blocks.

        Returns:
            True if the task was queued
        """
        if self.hash_engine.is_current(observed_hash):
            return False
        return self._enqueue(
            MigrationTask(HASH_UPGRADE, key_id, secret=secret, observed_hash=observed_hash)
        )

    def submit_ownership(
        self, key_id: str, owner: Optional[str], owner_type: Optional[str]
    ) -> bool:
        """Schedule persistence of converged ownership fields. Never blocks."""
        return self._enqueue(MigrationTask(OWNERSHIP, key_id, owner=owner, owner_type=owner_type))

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            task = await queue.get()
            try:
                if task.kind == HASH_UPGRADE:
                    await self.migrate(task.key_id, task.secret, task.observed_hash)
                else:
                    await self.converge_ownership(task.key_id, task.owner, task.owner_type)
            except Exception as e:
                # migrate() absorbs its own errors; this guards the worker loop itself
                logger.error(f"Unexpected migration worker error for {task.key_id}: {e}")
            finally:
                queue.task_done()

    async def _acquire(self, key_id: str) -> Optional[Lease]:
        return await self.lock.acquire(
            [self.lock_resource(key_id)],
            self.lock_ttl_ms,
            self.lock_max_retries,
            self.lock_retry_delay_ms,
            1,
        )

    async def _release(self, key_id: str, lease: Lease) -> None:
        try:
            await self.lock.release(lease)
        except Exception as e:
            logger.error(f"Failed to release migration lock for {key_id}: {e}")

    async def migrate(self, key_id: str, secret: str, observed_hash: str) -> bool:
        """
        Upgrade one record to the current hash format.

        Returns:
            True if this call rewrote the record
        """
        if self.hash_engine.is_current(observed_hash):
            return False

        lease = None
        try:
            lease = await self._acquire(key_id)
            if lease is None:
                logger.debug(f"Hash migration for {key_id} skipped - already in progress")
                self.stats.skipped += 1
                return False

            record = await self.store.get(key_id)
            if record is None:
                logger.debug(f"API key {key_id} not found during migration")
                self.stats.skipped += 1
                return False

            if self.hash_engine.is_current(record.secret_hash):
                logger.debug(f"API key {key_id} already migrated to v2")
                self.stats.skipped += 1
                return False

            if not self.hash_engine.verify(secret, record.secret_hash):
                # The stored hash changed under us to something this secret doesn't match
                logger.warning(f"Hash migration for {key_id} aborted - stored hash changed")
                self.stats.skipped += 1
                return False

            new_hash = self.hash_engine.hash(secret)

            if not await self.lock.renew(lease, self.lock_ttl_ms):
                logger.warning(f"Hash migration for {key_id} aborted - lease lost")
                self.stats.skipped += 1
                return False

            upgraded = record.model_copy(update={"secret_hash": new_hash})
            if not await self.store.replace(key_id, upgraded, new_index_hash=new_hash):
                logger.info(f"Hash migration for {key_id} dropped - key was deleted")
                self.stats.skipped += 1
                return False
            self.stats.migrated += 1
            logger.info(f"Successfully migrated API key hash to v2: {key_id}")
            return True
        except Exception as e:
            self.stats.failed += 1
            logger.error(f"Hash migration failed for {key_id}: {e}")
            if self.audit is not None:
                await self.audit.log_event(
                    "HASH_MIGRATION", "ERROR", {"key_id": key_id, "error": str(e)}
                )
            return False
        finally:
            if lease is not None:
                await self._release(key_id, lease)

    @staticmethod
    def _ownership_updates(
        record: ApiKeyRecord, owner: Optional[str], owner_type: Optional[str]
    ) -> dict:
        if record.owner and owner and record.owner != owner:
            return {}
        updates = {}
        if owner and not record.owner:
            updates["owner"] = owner
        if owner_type and not record.owner_type:
            updates["owner_type"] = owner_type
        return updates

    async def converge_ownership(
        self, key_id: str, owner: Optional[str], owner_type: Optional[str]
    ) -> bool:
        """
        Persist owner/owner_type produced by legacy normalization.

        Only missing fields are filled in. A stored owner that differs from
        the target wins and the task is skipped.
        """
        lease = None
        try:
            lease = await self._acquire(key_id)
            if lease is None:
                self.stats.skipped += 1
                return False

            record = await self.store.get(key_id)
            updates = {} if record is None else self._ownership_updates(record, owner, owner_type)
            if not updates:
                self.stats.skipped += 1
                return False

            if not await self.store.replace(key_id, record.model_copy(update=updates)):
                self.stats.skipped += 1
                return False
            self.stats.ownership_updates += 1
            logger.info(f"Persisted converged ownership for API key {key_id}")
            return True
        except Exception as e:
            self.stats.failed += 1
            logger.error(f"Ownership convergence failed for {key_id}: {e}")
            return False
        finally:
            if lease is not None:
                await self._release(key_id, lease)
