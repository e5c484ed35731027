"""
Lock Module - Black Box Interface

Purpose: Cluster-wide mutual exclusion for critical sections
Interface: acquire(), renew(), release(), hold()
Hidden: Lock key layout, owner tokens, Redis scripts

Can be replaced with any lease provider (etcd, ZooKeeper, database advisory locks).
"""

from .lock import DistributedLock, Lease, LockUnavailableError, RedisDistributedLock

__all__ = ["DistributedLock", "Lease", "LockUnavailableError", "RedisDistributedLock"]
