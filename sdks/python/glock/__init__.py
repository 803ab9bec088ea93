"""glock - distributed locks on top of a shared key-value store."""

import logging

from .base import Client, Lock, DEFAULT_NAMESPACE
from .config import new_client
from .etcd_lock import EtcdClient, EtcdLock, EtcdOptions
from .exceptions import (
    GlockError,
    ValidationError,
    InvalidTTLError,
    LockError,
    LockHeldError,
    LockNotOwnedError,
    StoreError,
    StoreConnectionError,
)
from .memory_lock import MemoryClient, MemoryLock, MemoryOptions, MemoryStore
from .models import LockInfo
from .redis_lock import RedisClient, RedisLock, RedisOptions

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "1.0.0"
__all__ = [
    "Client",
    "Lock",
    "DEFAULT_NAMESPACE",
    "new_client",
    "RedisClient",
    "RedisLock",
    "RedisOptions",
    "EtcdClient",
    "EtcdLock",
    "EtcdOptions",
    "MemoryClient",
    "MemoryLock",
    "MemoryOptions",
    "MemoryStore",
    "GlockError",
    "ValidationError",
    "InvalidTTLError",
    "LockError",
    "LockHeldError",
    "LockNotOwnedError",
    "StoreError",
    "StoreConnectionError",
    "LockInfo",
]
