"""Redis-backed locks using SET NX PX and Lua compare-and-act scripts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

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
from .exceptions import (
    LockHeldError,
    LockNotOwnedError,
    StoreConnectionError,
    StoreError,
)
from .models import LockInfo

logger = logging.getLogger(__name__)

# KEYS[1] owner key, KEYS[2] data key, ARGV[1] expected owner
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    redis.call("del", KEYS[1])
    redis.call("del", KEYS[2])
    return 1
end
return 0
"""

# ARGV[2] new ttl in milliseconds, ARGV[3] new data payload
REFRESH_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    redis.call("set", KEYS[1], ARGV[1], "PX", ARGV[2])
    redis.call("set", KEYS[2], ARGV[3])
    return 1
end
return 0
"""

ConnectFunc = Callable[..., "redis.Redis"]


def dial(network: str, address: str, **kwargs: Any) -> "redis.Redis":
    """Open a redis connection the way ``RedisOptions`` describes it."""
    kwargs.setdefault("decode_responses", True)
    if network == "unix":
        return redis.Redis(unix_socket_path=address, **kwargs)
    host, _, port = address.rpartition(":")
    if not host:
        host, port = address or "localhost", "6379"
    return redis.Redis(host=host, port=int(port), **kwargs)


@dataclass
class RedisOptions:
    """Options to connect to redis."""
    # "tcp" or "unix"
    network: str = "tcp"
    # "localhost:6379", or a socket path for unix
    address: str = "localhost:6379"
    # Autogenerated when empty
    client_id: str = ""
    namespace: str = DEFAULT_NAMESPACE
    # Extra keyword arguments for redis.Redis (db, password, socket_timeout, ...)
    connection_kwargs: Dict[str, Any] = field(default_factory=dict)
    # Called as connect(network, address, **connection_kwargs); defaults to dial
    connect: Optional[ConnectFunc] = None


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisClient(Client):
    """Manages locks stored in a single redis instance."""

    def __init__(self, options: Optional[RedisOptions] = None, *, connect: bool = True):
        """Initialize the client and, unless told otherwise, connect to redis.

        Args:
            options: Connection and identity options
            connect: Open and PING the connection immediately

        Raises:
            StoreConnectionError: redis is unreachable or does not answer PING
        """
        opts = replace(options) if options is not None else RedisOptions()
        if not opts.client_id:
            opts.client_id = generate_client_id()
        if not opts.network:
            opts.network = "tcp"
        if not opts.namespace:
            opts.namespace = DEFAULT_NAMESPACE
        if opts.connect is None:
            opts.connect = dial
        opts.connection_kwargs = dict(opts.connection_kwargs)
        self.options = opts
        self.conn: Optional[redis.Redis] = None
        self._release_script = None
        self._refresh_script = None
        if connect:
            self.reconnect()

    def clone(self) -> "RedisClient":
        """Return a disconnected copy of the current client."""
        return RedisClient(self.options, connect=False)

    def close(self) -> None:
        """Close the connection to redis."""
        conn, self.conn = self.conn, None
        self._release_script = self._refresh_script = None
        if conn is None:
            return
        try:
            conn.close()
        except RedisError as e:
            logger.debug(f"Ignoring error while closing redis connection: {e}")

    def reconnect(self) -> None:
        """Reconnect to redis, or connect if not connected."""
        self.close()
        opts = self.options
        try:
            conn = opts.connect(opts.network, opts.address, **opts.connection_kwargs)
        except RedisError as e:
            raise StoreConnectionError(f"Cannot connect to redis at {opts.address}: {e}") from e
        try:
            conn.ping()
        except RedisError as e:
            try:
                conn.close()
            except RedisError as close_error:
                logger.debug(f"Ignoring error while closing redis connection: {close_error}")
            raise StoreConnectionError(f"Cannot connect to redis at {opts.address}: {e}") from e
        self.conn = conn
        self._release_script = conn.register_script(RELEASE_SCRIPT)
        self._refresh_script = conn.register_script(REFRESH_SCRIPT)
        logger.debug(f"Connected to redis at {opts.address} as '{opts.client_id}'")

    def set_id(self, client_id: str) -> None:
        self.options.client_id = client_id

    @property
    def id(self) -> str:
        return self.options.client_id

    def new_lock(self, name: str) -> "RedisLock":
        """Create a new lock. The lock is not acquired."""
        validate_lock_name(name)
        return RedisLock(name, self)

    def _connection(self) -> "redis.Redis":
        if self.conn is None:
            raise StoreConnectionError("Redis client is not connected")
        return self.conn


def _store_error(action: str, name: str, exc: RedisError) -> StoreError:
    if isinstance(exc, (RedisConnectionError, RedisTimeoutError)):
        return StoreConnectionError(f"Redis connection error {action} lock '{name}': {exc}")
    return StoreError(f"Redis error {action} lock '{name}': {exc}")


class RedisLock(Lock):
    """Lock held in redis as two keys: owner (with PX expiry) and data."""

    def __init__(self, name: str, client: RedisClient) -> None:
        super().__init__(name)
        self.client = client

    @property
    def key(self) -> str:
        return owner_key(self.client.options.namespace, self.name)

    @property
    def data_key(self) -> str:
        return data_key(self.client.options.namespace, self.name)

    def acquire(self, ttl: TTL) -> None:
        """Acquire the lock for ttl, returning immediately if it is taken.

        The data key write that follows a successful acquire is best effort:
        a failure there is logged and the lock stays acquired.
        """
        ms = ttl_to_milliseconds(ttl)
        self.ttl = ttl
        conn = self.client._connection()
        try:
            ok = conn.set(self.key, self.client.id, px=ms, nx=True)
        except RedisError as e:
            raise _store_error("acquiring", self.name, e) from e
        if not ok:
            raise LockHeldError(f"Lock '{self.name}' is held by another client", name=self.name)

        try:
            conn.set(self.data_key, self.data)
        except RedisError as e:
            logger.warning(f"Lock '{self.name}' acquired but its data was not stored: {e}")
        logger.debug(f"Lock '{self.name}' acquired by '{self.client.id}' for {ms}ms")

    def release(self) -> None:
        """Release the lock if owned by this client."""
        self.client._connection()
        try:
            res = self.client._release_script(
                keys=[self.key, self.data_key], args=[self.client.id]
            )
        except RedisError as e:
            raise _store_error("releasing", self.name, e) from e
        if not res:
            raise LockNotOwnedError(f"Lock '{self.name}' is not owned by this client", name=self.name)
        logger.debug(f"Lock '{self.name}' released by '{self.client.id}'")

    def refresh(self) -> None:
        """Extend the lock to the current ttl and store the current data."""
        ms = ttl_to_milliseconds(self.ttl)
        self.client._connection()
        try:
            res = self.client._refresh_script(
                keys=[self.key, self.data_key], args=[self.client.id, ms, self.data]
            )
        except RedisError as e:
            raise _store_error("refreshing", self.name, e) from e
        if not res:
            raise LockNotOwnedError(f"Lock '{self.name}' is not owned by this client", name=self.name)
        logger.debug(f"Lock '{self.name}' refreshed by '{self.client.id}' for {ms}ms")

    def info(self) -> LockInfo:
        """Return information about the lock, read in one MULTI/EXEC."""
        conn = self.client._connection()
        try:
            pipe = conn.pipeline(transaction=True)
            pipe.get(self.key)
            pipe.pttl(self.key)
            pipe.get(self.data_key)
            owner, expire, data = pipe.execute()
        except RedisError as e:
            raise _store_error("reading", self.name, e) from e

        # PTTL is -2 for a missing key
        if owner is None:
            return LockInfo(name=self.name)
        try:
            ttl = timedelta(milliseconds=max(int(expire), 0))
        except (TypeError, ValueError) as e:
            raise StoreError(f"Unexpected PTTL reply for lock '{self.name}': {expire!r}") from e
        return LockInfo(
            name=self.name,
            acquired=ttl > timedelta(0),
            owner=_text(owner),
            ttl=ttl,
            data=_text(data),
        )
