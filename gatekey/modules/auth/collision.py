"""Periodic audit for API key hash collisions."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..api.models import ApiKeyRecord
from ..storage.keystore import KeyStore
from .interfaces import SecurityAuditor

logger = logging.getLogger(__name__)


@dataclass
class HashCollision:
    """A stored hash shared by more than one record."""
    hash_prefix: str
    count: int
    keys: List[Dict[str, str]] = field(default_factory=list)

    @property
    def key_ids(self) -> List[str]:
        return [key["id"] for key in self.keys]


class CollisionDetector:
    """
    Flags records that share a stored hash.

    Detection only: fixing a collision means re-issuing a secret, which
    needs an operator.
    """

    def __init__(self, store: KeyStore, audit: Optional[SecurityAuditor] = None):
        self.store = store
        self.audit = audit

    async def scan(self) -> List[HashCollision]:
        try:
            records = await self.store.list_all()
        except Exception as e:
            logger.error(f"Hash collision detection error: {e}")
            return []

        by_hash: Dict[str, List[ApiKeyRecord]] = defaultdict(list)
        for record in records:
            by_hash[record.secret_hash].append(record)

        collisions = [
            HashCollision(
                hash_prefix=f"{secret_hash[:16]}...",  # never log full hashes
                count=len(group),
                keys=[{"id": r.id, "name": r.name} for r in group],
            )
            for secret_hash, group in by_hash.items()
            if len(group) > 1
        ]

        if collisions:
            logger.error(
                f"Hash collisions detected: {len(collisions)} cases "
                f"({', '.join(','.join(c.key_ids) for c in collisions)})"
            )
            if self.audit is not None:
                await self.audit.log_security_violation(
                    "HASH_COLLISION",
                    "API key hash collision detected",
                    "LOGGED",
                    {
                        "collision_count": len(collisions),
                        "details": [
                            {"hash": c.hash_prefix, "count": c.count, "keys": c.keys}
                            for c in collisions
                        ],
                    },
                )

        return collisions
