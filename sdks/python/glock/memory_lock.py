"""In-process lock backend, for tests and single-host coordination."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Callable, Dict, Optional, Tuple

from .base import (
    DEFAULT_NAMESPACE,
    TTL,
    Client,
    Lock,
    data_key,
    generate_client_id,
    owner_key,
    ttl_to_milliseconds,
    validate_lock_name,
)
from .exceptions import LockHeldError, LockNotOwnedError, StoreConnectionError
from .models import LockInfo

logger = logging.getLogger(__name__)


class MemoryStore:
    """A tiny key-value store with millisecond expiry.

    Every public method runs under one mutex, so each compare-and-act
    operation is atomic with respect to all clients sharing the store.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._mutex = threading.Lock()
        # key -> (value, deadline in clock seconds or None)
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        deadline = entry[1]
        if deadline is not None and deadline <= self._clock():
            del self._entries[key]
            return None
        return entry

    def _deadline(self, ttl_ms: int) -> float:
        return self._clock() + ttl_ms / 1000.0

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> Optional[str]:
        with self._mutex:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str) -> None:
        with self._mutex:
            self._entries[key] = (value, None)

    def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        with self._mutex:
            if self._live(key) is not None:
                return False
            self._entries[key] = (value, self._deadline(ttl_ms))
            return True

    def compare_and_delete(self, key: str, extra_key: str, expected: str) -> bool:
        """Delete key and extra_key if key currently holds expected."""
        with self._mutex:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            del self._entries[key]
            self._entries.pop(extra_key, None)
            return True

    def compare_and_refresh(
        self, key: str, extra_key: str, expected: str, ttl_ms: int, extra_value: str
    ) -> bool:
        """Re-arm key's expiry and overwrite extra_key if key holds expected."""
        with self._mutex:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            self._entries[key] = (expected, self._deadline(ttl_ms))
            self._entries[extra_key] = (extra_value, None)
            return True

    def snapshot(self, key: str, extra_key: str) -> Tuple[Optional[str], int, Optional[str]]:
        """Return (value, remaining ms, extra value) read at one instant.

        Remaining ms is -2 for a missing key and -1 for a key with no expiry.
        """
        with self._mutex:
            entry = self._live(key)
            extra = self._live(extra_key)
            if entry is None:
                remaining = -2
            elif entry[1] is None:
                remaining = -1
            else:
                remaining = max(int((entry[1] - self._clock()) * 1000), 0)
            return (
                entry[0] if entry else None,
                remaining,
                extra[0] if extra else None,
            )

    def clear(self) -> None:
        with self._mutex:
            self._entries.clear()


_default_store = MemoryStore()


def default_store() -> MemoryStore:
    """The process-wide store used when MemoryOptions.store is not set."""
    return _default_store


@dataclass
class MemoryOptions:
    """Options for the in-process backend."""
    # Defaults to the process-wide store
    store: Optional[MemoryStore] = None
    # Autogenerated when empty
    client_id: str = ""
    namespace: str = DEFAULT_NAMESPACE
    # Called as connect(options) and must return a MemoryStore
    connect: Optional[Callable[["MemoryOptions"], MemoryStore]] = None


def _connect_store(options: MemoryOptions) -> MemoryStore:
    return options.store if options.store is not None else default_store()


class MemoryClient(Client):
    """Manages locks in a MemoryStore shared by clients of this process."""

    def __init__(self, options: Optional[MemoryOptions] = None, *, connect: bool = True):
        opts = replace(options) if options is not None else MemoryOptions()
        if not opts.client_id:
            opts.client_id = generate_client_id()
        if not opts.namespace:
            opts.namespace = DEFAULT_NAMESPACE
        if opts.connect is None:
            opts.connect = _connect_store
        self.options = opts
        self.conn: Optional[MemoryStore] = None
        if connect:
            self.reconnect()

    def clone(self) -> "MemoryClient":
        return MemoryClient(self.options, connect=False)

    def close(self) -> None:
        self.conn = None

    def reconnect(self) -> None:
        self.close()
        store = self.options.connect(self.options)
        if store is None or not store.ping():
            raise StoreConnectionError("Memory store is not available")
        self.conn = store

    def set_id(self, client_id: str) -> None:
        self.options.client_id = client_id

    @property
    def id(self) -> str:
        return self.options.client_id

    def new_lock(self, name: str) -> "MemoryLock":
        validate_lock_name(name)
        return MemoryLock(name, self)

    def _connection(self) -> MemoryStore:
        if self.conn is None:
            raise StoreConnectionError("Memory client is not connected")
        return self.conn


class MemoryLock(Lock):
    """Lock kept in a MemoryStore under the same key layout as redis."""

    def __init__(self, name: str, client: MemoryClient) -> None:
        super().__init__(name)
        self.client = client

    @property
    def key(self) -> str:
        return owner_key(self.client.options.namespace, self.name)

    @property
    def data_key(self) -> str:
        return data_key(self.client.options.namespace, self.name)

    def acquire(self, ttl: TTL) -> None:
        ms = ttl_to_milliseconds(ttl)
        self.ttl = ttl
        store = self.client._connection()
        if not store.set_if_absent(self.key, self.client.id, ms):
            raise LockHeldError(f"Lock '{self.name}' is held by another client", name=self.name)
        store.set(self.data_key, self.data)
        logger.debug(f"Lock '{self.name}' acquired by '{self.client.id}' for {ms}ms")

    def release(self) -> None:
        store = self.client._connection()
        if not store.compare_and_delete(self.key, self.data_key, self.client.id):
            raise LockNotOwnedError(f"Lock '{self.name}' is not owned by this client", name=self.name)
        logger.debug(f"Lock '{self.name}' released by '{self.client.id}'")

    def refresh(self) -> None:
        ms = ttl_to_milliseconds(self.ttl)
        store = self.client._connection()
        if not store.compare_and_refresh(self.key, self.data_key, self.client.id, ms, self.data):
            raise LockNotOwnedError(f"Lock '{self.name}' is not owned by this client", name=self.name)
        logger.debug(f"Lock '{self.name}' refreshed by '{self.client.id}' for {ms}ms")

    def info(self) -> LockInfo:
        owner, remaining, data = self.client._connection().snapshot(self.key, self.data_key)
        if owner is None:
            return LockInfo(name=self.name)
        ttl = timedelta(milliseconds=max(remaining, 0))
        return LockInfo(
            name=self.name,
            acquired=ttl > timedelta(0),
            owner=owner,
            ttl=ttl,
            data=data or "",
        )
