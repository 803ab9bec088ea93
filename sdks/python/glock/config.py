"""Pick and build a lock client from a store URL.

Supported URLs:

    redis://[[user]:password@]host[:port][/db]
    rediss://...                  redis over TLS
    unix:///path/to/redis.sock[?db=N]
    etcd://[user:password@]host[:port][?ca_cert=..&cert_key=..&cert_cert=..&timeout=N]
    memory://                     process-wide in-memory store

Environment:
    GLOCK_STORE_URL   URL used when none is passed
    GLOCK_NAMESPACE   default key namespace
    GLOCK_CLIENT_ID   default client identity
"""

from __future__ import annotations

import os
from typing import Optional
from urllib.parse import parse_qs, unquote, urlsplit

from .base import DEFAULT_NAMESPACE, Client
from .etcd_lock import EtcdClient, EtcdOptions
from .exceptions import ValidationError
from .memory_lock import MemoryClient, MemoryOptions
from .redis_lock import RedisClient, RedisOptions

DEFAULT_STORE_URL = "redis://localhost:6379"

ENV_STORE_URL = "GLOCK_STORE_URL"
ENV_NAMESPACE = "GLOCK_NAMESPACE"
ENV_CLIENT_ID = "GLOCK_CLIENT_ID"


def _int(value: str, what: str, url) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {what} in store URL {url.geturl()!r}: {value!r}") from e


def _port(url, default: int) -> int:
    try:
        return url.port or default
    except ValueError as e:
        raise ValidationError(f"Invalid port in store URL {url.geturl()!r}") from e


def _redis_client(url, client_id: str, namespace: str, connect: bool) -> Client:
    kwargs = {}
    if url.username:
        kwargs["username"] = unquote(url.username)
    if url.password:
        kwargs["password"] = unquote(url.password)
    query = parse_qs(url.query)
    if url.scheme == "unix":
        if "db" in query:
            kwargs["db"] = _int(query["db"][0], "db", url)
        options = RedisOptions(network="unix", address=url.path)
    else:
        db = url.path.lstrip("/")
        if db:
            kwargs["db"] = _int(db, "db", url)
        if url.scheme == "rediss":
            kwargs["ssl"] = True
        options = RedisOptions(address=f"{url.hostname or 'localhost'}:{_port(url, 6379)}")
    options.client_id = client_id
    options.namespace = namespace
    options.connection_kwargs = kwargs
    return RedisClient(options, connect=connect)


def _etcd_client(url, client_id: str, namespace: str, connect: bool) -> Client:
    query = {k: v[0] for k, v in parse_qs(url.query).items()}
    options = EtcdOptions(
        host=url.hostname or "localhost",
        port=_port(url, 2379),
        client_id=client_id,
        namespace=namespace,
        user=unquote(url.username) if url.username else None,
        password=unquote(url.password) if url.password else None,
        ca_cert=query.get("ca_cert"),
        cert_key=query.get("cert_key"),
        cert_cert=query.get("cert_cert"),
    )
    if "timeout" in query:
        options.timeout = _int(query["timeout"], "timeout", url)
    return EtcdClient(options, connect=connect)


def _memory_client(url, client_id: str, namespace: str, connect: bool) -> Client:
    return MemoryClient(MemoryOptions(client_id=client_id, namespace=namespace), connect=connect)


_BACKENDS = {
    "redis": _redis_client,
    "rediss": _redis_client,
    "unix": _redis_client,
    "etcd": _etcd_client,
    "memory": _memory_client,
}


def new_client(
    url: Optional[str] = None,
    *,
    client_id: Optional[str] = None,
    namespace: Optional[str] = None,
    connect: bool = True,
) -> Client:
    """Build a client for the store named by url.

    Args:
        url: Store URL; falls back to $GLOCK_STORE_URL, then local redis
        client_id: Ownership identity; falls back to $GLOCK_CLIENT_ID, then a random id
        namespace: Key namespace; falls back to $GLOCK_NAMESPACE, then "glock"
        connect: Connect and check the store before returning

    Raises:
        ValidationError: the URL scheme is not supported or the URL is malformed
        StoreConnectionError: connect is true and the store is unreachable
    """
    url = url or os.getenv(ENV_STORE_URL) or DEFAULT_STORE_URL
    client_id = client_id or os.getenv(ENV_CLIENT_ID, "")
    namespace = namespace or os.getenv(ENV_NAMESPACE) or DEFAULT_NAMESPACE

    parsed = urlsplit(url)
    factory = _BACKENDS.get(parsed.scheme)
    if factory is None:
        raise ValidationError(f"Unsupported store URL scheme: {parsed.scheme!r}")
    return factory(parsed, client_id, namespace, connect)
