"""etcd v3 backed locks, using the etcd3 client.

Ownership is the owner key attached to a lease. Acquire, release and
refresh are each a single etcd transaction that compares before acting,
so they are atomic against every other client of the cluster. Leases
have whole-second granularity: ttls are rounded down to whole seconds and
anything under one second is rejected, so a lease never outlives the ttl
the holder asked for.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Callable, List, Optional, Tuple

import etcd3
from etcd3.exceptions import ConnectionFailedError, ConnectionTimeoutError, Etcd3Exception

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
    InvalidTTLError,
    LockHeldError,
    LockNotOwnedError,
    StoreConnectionError,
    StoreError,
)
from .models import LockInfo

logger = logging.getLogger(__name__)


def lease_seconds(ttl: Optional[TTL]) -> int:
    """Whole lease seconds for a ttl, rounded down.

    Raises InvalidTTLError for ttls shorter than one second.
    """
    seconds = ttl_to_milliseconds(ttl) // 1000
    if seconds < 1:
        raise InvalidTTLError(f"etcd leases need a TTL of at least 1 second, got {ttl!r}")
    return seconds


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _first_kv(response: Any) -> Optional[Tuple[Any, Any]]:
    # range responses come back as a list of (value, metadata)
    return response[0] if response else None


def _store_error(action: str, name: str, exc: Etcd3Exception) -> StoreError:
    if isinstance(exc, (ConnectionFailedError, ConnectionTimeoutError)):
        return StoreConnectionError(f"etcd connection error {action} lock '{name}': {exc}")
    return StoreError(f"etcd error {action} lock '{name}': {exc}")


def _grant(etcd, seconds: int, name: str, action: str):
    """Grant a lease of exactly the given seconds."""
    try:
        lease = etcd.lease(seconds)
    except Etcd3Exception as e:
        raise _store_error(action, name, e) from e
    # etcd raises ttls under its minimum lease ttl to that minimum
    if lease.ttl > seconds:
        try:
            etcd.revoke_lease(lease.id)
        except Etcd3Exception as e:
            logger.warning(f"Could not revoke etcd lease {lease.id}: {e}")
        raise InvalidTTLError(
            f"etcd granted a {lease.ttl}s lease for a {seconds}s TTL on lock '{name}'"
        )
    return lease


def default_connect(options: "EtcdOptions") -> "etcd3.Etcd3Client":
    return etcd3.client(
        host=options.host,
        port=options.port,
        ca_cert=options.ca_cert,
        cert_key=options.cert_key,
        cert_cert=options.cert_cert,
        timeout=options.timeout,
        user=options.user,
        password=options.password,
        grpc_options=options.grpc_options,
    )


@dataclass
class EtcdOptions:
    """Options to connect to an etcd cluster."""
    host: str = "localhost"
    port: int = 2379
    # Autogenerated when empty
    client_id: str = ""
    namespace: str = DEFAULT_NAMESPACE
    # Per-request deadline in seconds
    timeout: Optional[float] = 5
    # TLS is used when ca_cert is set
    ca_cert: Optional[str] = None
    cert_key: Optional[str] = None
    cert_cert: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    grpc_options: Optional[List[Tuple[str, Any]]] = None
    # Called as connect(options); defaults to etcd3.client
    connect: Optional[Callable[["EtcdOptions"], Any]] = None


class EtcdClient(Client):
    """Manages locks stored in an etcd cluster."""

    def __init__(self, options: Optional[EtcdOptions] = None, *, connect: bool = True):
        """Initialize the client and, unless told otherwise, connect to etcd.

        Args:
            options: Cluster and identity options
            connect: Open the channel and check the cluster status

        Raises:
            StoreConnectionError: etcd is unreachable or fails the status check
        """
        opts = replace(options) if options is not None else EtcdOptions()
        if not opts.client_id:
            opts.client_id = generate_client_id()
        if not opts.namespace:
            opts.namespace = DEFAULT_NAMESPACE
        if opts.connect is None:
            opts.connect = default_connect
        self.options = opts
        self.etcd = None
        if connect:
            self.reconnect()

    def clone(self) -> "EtcdClient":
        return EtcdClient(self.options, connect=False)

    def close(self) -> None:
        """Close the channel to etcd."""
        etcd, self.etcd = self.etcd, None
        if etcd is None:
            return
        try:
            etcd.close()
        except Etcd3Exception as e:
            logger.debug(f"Ignoring error while closing etcd client: {e}")

    def reconnect(self) -> None:
        self.close()
        opts = self.options
        where = f"{opts.host}:{opts.port}"
        try:
            etcd = opts.connect(opts)
        except Etcd3Exception as e:
            raise StoreConnectionError(f"Cannot connect to etcd at {where}: {e}") from e
        try:
            etcd.status()
        except Etcd3Exception as e:
            try:
                etcd.close()
            except Etcd3Exception as close_error:
                logger.debug(f"Ignoring error while closing etcd client: {close_error}")
            raise StoreConnectionError(f"Cannot connect to etcd at {where}: {e}") from e
        self.etcd = etcd
        logger.debug(f"Connected to etcd at {where} as '{opts.client_id}'")

    def set_id(self, client_id: str) -> None:
        self.options.client_id = client_id

    @property
    def id(self) -> str:
        return self.options.client_id

    def new_lock(self, name: str) -> "EtcdLock":
        validate_lock_name(name)
        return EtcdLock(name, self)

    def _connection(self):
        if self.etcd is None:
            raise StoreConnectionError("etcd client is not connected")
        return self.etcd

    def revoke_lease(self, lease_id: int) -> None:
        """Revoke a lease, logging instead of raising on failure."""
        try:
            self._connection().revoke_lease(lease_id)
        except (Etcd3Exception, StoreConnectionError) as e:
            logger.warning(f"Could not revoke etcd lease {lease_id}: {e}")


class EtcdLock(Lock):
    """Lock held in etcd as an owner key bound to a lease, plus a data key."""

    def __init__(self, name: str, client: EtcdClient) -> None:
        super().__init__(name)
        self.client = client

    @property
    def key(self) -> str:
        return owner_key(self.client.options.namespace, self.name)

    @property
    def data_key(self) -> str:
        return data_key(self.client.options.namespace, self.name)

    def acquire(self, ttl: TTL) -> None:
        """Acquire the lock; owner and data keys are written in one transaction."""
        seconds = lease_seconds(ttl)
        self.ttl = ttl
        client = self.client
        etcd = client._connection()
        ops = etcd.transactions
        lease = _grant(etcd, seconds, self.name, "acquiring")
        try:
            succeeded, _ = etcd.transaction(
                compare=[ops.create(self.key) == 0],
                success=[ops.put(self.key, client.id, lease), ops.put(self.data_key, self.data)],
                failure=[],
            )
        except Etcd3Exception as e:
            client.revoke_lease(lease.id)
            raise _store_error("acquiring", self.name, e) from e
        if not succeeded:
            client.revoke_lease(lease.id)
            raise LockHeldError(f"Lock '{self.name}' is held by another client", name=self.name)
        logger.debug(f"Lock '{self.name}' acquired by '{client.id}' for {seconds}s")

    def release(self) -> None:
        client = self.client
        etcd = client._connection()
        ops = etcd.transactions
        try:
            succeeded, responses = etcd.transaction(
                compare=[ops.value(self.key) == client.id],
                success=[ops.get(self.key), ops.delete(self.key), ops.delete(self.data_key)],
                failure=[],
            )
        except Etcd3Exception as e:
            raise _store_error("releasing", self.name, e) from e
        if not succeeded:
            raise LockNotOwnedError(f"Lock '{self.name}' is not owned by this client", name=self.name)
        kv = _first_kv(responses[0])
        if kv and kv[1].lease_id:
            client.revoke_lease(kv[1].lease_id)
        logger.debug(f"Lock '{self.name}' released by '{client.id}'")

    def refresh(self) -> None:
        """Move the owner key onto a fresh lease, with no gap in ownership."""
        seconds = lease_seconds(self.ttl)
        client = self.client
        etcd = client._connection()
        ops = etcd.transactions
        lease = _grant(etcd, seconds, self.name, "refreshing")
        try:
            succeeded, responses = etcd.transaction(
                compare=[ops.value(self.key) == client.id],
                success=[
                    ops.get(self.key),
                    ops.put(self.key, client.id, lease),
                    ops.put(self.data_key, self.data),
                ],
                failure=[],
            )
        except Etcd3Exception as e:
            client.revoke_lease(lease.id)
            raise _store_error("refreshing", self.name, e) from e
        if not succeeded:
            client.revoke_lease(lease.id)
            raise LockNotOwnedError(f"Lock '{self.name}' is not owned by this client", name=self.name)
        kv = _first_kv(responses[0])
        if kv and kv[1].lease_id and kv[1].lease_id != lease.id:
            client.revoke_lease(kv[1].lease_id)
        logger.debug(f"Lock '{self.name}' refreshed by '{client.id}' for {seconds}s")

    def info(self) -> LockInfo:
        """Read owner and data at one revision, then the owner's lease ttl."""
        etcd = self.client._connection()
        ops = etcd.transactions
        try:
            _, responses = etcd.transaction(
                compare=[],
                success=[ops.get(self.key), ops.get(self.data_key)],
                failure=[],
            )
            kv = _first_kv(responses[0])
            if kv is None:
                return LockInfo(name=self.name)
            data_kv = _first_kv(responses[1])
            remaining = 0
            if kv[1].lease_id:
                remaining = max(int(etcd.get_lease_info(kv[1].lease_id).TTL), 0)
        except Etcd3Exception as e:
            raise _store_error("reading", self.name, e) from e

        ttl = timedelta(seconds=remaining)
        return LockInfo(
            name=self.name,
            acquired=ttl > timedelta(0),
            owner=_text(kv[0]),
            ttl=ttl,
            data=_text(data_kv[0]) if data_kv else "",
        )
