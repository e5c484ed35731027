"""
API key persistence.

Records are stored as JSON documents keyed by id, with a secondary
hash -> id index so validation can look a key up by its derived hash
without scanning. A single set() is atomic with respect to its own
record and index update, and replace() never writes a record that has
been deleted. Cross-record consistency is the caller's job.
"""

import logging
from typing import List, Optional, Protocol

from pydantic import ValidationError

from ..api.models import ApiKeyRecord

logger = logging.getLogger(__name__)


class KeyStore(Protocol):
    """Protocol for API key storage backends."""

    async def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        ...

    async def set(
        self, key_id: str, record: ApiKeyRecord, new_index_hash: Optional[str] = None
    ) -> None:
        """
        Upsert a record.

        When new_index_hash is given the hash index is repointed to it and
        the entry for the previously stored hash is removed.
        """
        ...

    async def replace(
        self, key_id: str, record: ApiKeyRecord, new_index_hash: Optional[str] = None
    ) -> bool:
        """
        Overwrite a record only if it still exists.

        Returns False when the record is gone, so a stale read-modify-write
        can never bring a deleted key back.
        """
        ...

    async def delete(self, key_id: str) -> bool:
        ...

    async def find_by_hash(self, secret_hash: str) -> Optional[ApiKeyRecord]:
        ...

    async def list_all(self) -> List[ApiKeyRecord]:
        ...


class RedisKeyStore:
    """
    Redis-backed KeyStore.

    Layout:
        apikey:<id>      JSON document of the record
        apikey:ids       set of all record ids
        apikey:hash_map  hash of secret_hash -> id
    """

    RECORD_PREFIX = "apikey:"
    IDS_KEY = "apikey:ids"
    HASH_INDEX_KEY = "apikey:hash_map"

    def __init__(self, redis_client):
        """
        Initialize key store.

        Args:
            redis_client: Async Redis client (decode_responses=True)
        """
        self.redis = redis_client

    def _record_key(self, key_id: str) -> str:
        return f"{self.RECORD_PREFIX}{key_id}"

    def _decode(self, key_id: str, data: Optional[str]) -> Optional[ApiKeyRecord]:
        if not data:
            return None
        try:
            return ApiKeyRecord.model_validate_json(data)
        except ValidationError as e:
            # A corrupt row must never be trusted for authentication
            logger.error(f"Discarding unreadable API key record {key_id}: {e}")
            return None

    async def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        data = await self.redis.get(self._record_key(key_id))
        return self._decode(key_id, data)

    async def set(
        self, key_id: str, record: ApiKeyRecord, new_index_hash: Optional[str] = None
    ) -> None:
        if record.id != key_id:
            raise ValueError(f"Record id {record.id} does not match key id {key_id}")

        stale_hash = None
        if new_index_hash:
            previous = await self.get(key_id)
            stale_hash = await self._stale_hash(self.redis, key_id, previous, new_index_hash)

        async with self.redis.pipeline(transaction=True) as pipe:
            self._queue_write(pipe, key_id, record, new_index_hash, stale_hash)
            await pipe.execute()

    async def replace(
        self, key_id: str, record: ApiKeyRecord, new_index_hash: Optional[str] = None
    ) -> bool:
        """
        Overwrite an existing record under WATCH/MULTI.

        Raises:
            WatchError: The record was deleted or rewritten between read and write
        """
        if record.id != key_id:
            raise ValueError(f"Record id {record.id} does not match key id {key_id}")

        record_key = self._record_key(key_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            await pipe.watch(record_key)
            previous = self._decode(key_id, await pipe.get(record_key))
            if previous is None:
                await pipe.unwatch()
                logger.debug(f"API key {key_id} no longer exists, write dropped")
                return False

            stale_hash = None
            if new_index_hash:
                stale_hash = await self._stale_hash(pipe, key_id, previous, new_index_hash)

            pipe.multi()
            self._queue_write(pipe, key_id, record, new_index_hash, stale_hash)
            await pipe.execute()
        return True

    def _queue_write(
        self,
        pipe,
        key_id: str,
        record: ApiKeyRecord,
        new_index_hash: Optional[str],
        stale_hash: Optional[str],
    ) -> None:
        pipe.set(self._record_key(key_id), record.model_dump_json())
        pipe.sadd(self.IDS_KEY, key_id)
        if new_index_hash:
            pipe.hset(self.HASH_INDEX_KEY, new_index_hash, key_id)
        if stale_hash:
            pipe.hdel(self.HASH_INDEX_KEY, stale_hash)

    async def _stale_hash(
        self, client, key_id: str, previous: Optional[ApiKeyRecord], new_index_hash: str
    ) -> Optional[str]:
        """Previous index entry to drop, unless a colliding record owns it."""
        if previous is None or previous.secret_hash == new_index_hash:
            return None
        if await client.hget(self.HASH_INDEX_KEY, previous.secret_hash) == key_id:
            return previous.secret_hash
        return None

    async def delete(self, key_id: str) -> bool:
        record = await self.get(key_id)
        # Leave the index alone if a colliding record owns the entry
        owns_index = bool(record) and await self._indexed_id(record.secret_hash) == key_id

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._record_key(key_id))
            pipe.srem(self.IDS_KEY, key_id)
            if owns_index:
                pipe.hdel(self.HASH_INDEX_KEY, record.secret_hash)
            results = await pipe.execute()

        return bool(results and results[0])

    async def _indexed_id(self, secret_hash: str) -> Optional[str]:
        return await self.redis.hget(self.HASH_INDEX_KEY, secret_hash)

    async def find_by_hash(self, secret_hash: str) -> Optional[ApiKeyRecord]:
        key_id = await self._indexed_id(secret_hash)
        if not key_id:
            return None

        record = await self.get(key_id)
        if record is None:
            # Index points at a deleted record; drop the dangling entry
            logger.warning(f"Removing dangling hash index entry for key {key_id}")
            await self.redis.hdel(self.HASH_INDEX_KEY, secret_hash)
            return None

        return record

    async def list_all(self) -> List[ApiKeyRecord]:
        key_ids = sorted(await self.redis.smembers(self.IDS_KEY))
        if not key_ids:
            return []

        rows = await self.redis.mget([self._record_key(key_id) for key_id in key_ids])

        records = []
        for key_id, data in zip(key_ids, rows):
            record = self._decode(key_id, data)
            if record is not None:
                records.append(record)
            elif data is None:
                # Clean up stale entry
                await self.redis.srem(self.IDS_KEY, key_id)
        return records
