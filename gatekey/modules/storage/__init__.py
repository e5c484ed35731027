"""
Storage Module - Black Box Interface

Purpose: Abstract all data persistence
Interface: StorageModule.connect(), KeyStore (get, set, delete, find_by_hash, list_all)
Hidden: Redis specifics, connection pooling, serialization, index layout

Can be replaced with any storage backend without affecting other modules.
"""

import os
from typing import Optional

import redis.asyncio as redis

from .keystore import KeyStore, RedisKeyStore


class StorageModule:
    """Black box storage abstraction."""

    def __init__(self, connection_url: Optional[str] = None, password: Optional[str] = None):
        """Initialize storage with connection URL."""
        self.url = connection_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.password = password
        self._client = None

    @classmethod
    def from_config(cls, config) -> "StorageModule":
        """Build from a ConfigModule (redis_url plus separately passed password)."""
        return cls(config.redis_url, password=config.get("redis_password"))

    async def connect(self) -> redis.Redis:
        """Get storage connection."""
        if not self._client:
            self._client = redis.from_url(
                self.url,
                password=self.password,  # Passed separately to avoid URL encoding issues
                decode_responses=True,
            )
        return self._client

    async def disconnect(self):
        """Close storage connection."""
        if self._client:
            await self._client.aclose()
            self._client = None


__all__ = ["StorageModule", "KeyStore", "RedisKeyStore"]
