"""Client and Lock capability interfaces shared by every backend."""

from __future__ import annotations

import abc
import uuid
from datetime import timedelta
from typing import Optional, Union

from .exceptions import InvalidTTLError, ValidationError
from .models import LockInfo

DEFAULT_NAMESPACE = "glock"

TTL = Union[timedelta, int, float]


def generate_client_id() -> str:
    """Return a fresh random client identity."""
    return str(uuid.uuid4())


def ttl_to_milliseconds(ttl: Optional[TTL]) -> int:
    """Convert a ttl given as timedelta or seconds to whole milliseconds.

    Raises InvalidTTLError when the result is below one millisecond.
    """
    if ttl is None:
        raise InvalidTTLError("TTL must be set before the lock is used")
    if isinstance(ttl, (int, float)) and not isinstance(ttl, bool):
        try:
            ttl = timedelta(seconds=ttl)
        except (OverflowError, ValueError) as e:
            raise InvalidTTLError(f"TTL out of range: {ttl!r}") from e
    if not isinstance(ttl, timedelta):
        raise InvalidTTLError(f"TTL must be a timedelta or a number of seconds, got {ttl!r}")
    ms = ttl // timedelta(milliseconds=1)
    if ms < 1:
        raise InvalidTTLError(f"TTL must be at least 1 millisecond, got {ttl!r}")
    return ms


def owner_key(namespace: str, name: str) -> str:
    return f"{namespace}:{name}"


def data_key(namespace: str, name: str) -> str:
    return f"{namespace}:{name}:data"


def validate_lock_name(name: str) -> None:
    if not isinstance(name, str) or not name:
        raise ValidationError("Lock name must be a non-empty string")


class Client(abc.ABC):
    """A session against one backing store, carrying an ownership identity.

    Clients are not safe for concurrent use from several threads; use
    clone() to get an independent session sharing the same identity.
    """

    @abc.abstractmethod
    def clone(self) -> "Client":
        """Return a disconnected copy sharing configuration and identity."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the connection, if any. Never raises."""

    @abc.abstractmethod
    def reconnect(self) -> None:
        """Replace the connection with a fresh, checked one."""

    @abc.abstractmethod
    def set_id(self, client_id: str) -> None:
        """Replace the client identity.

        Locks acquired under the previous identity are not reassociated and
        can no longer be released or refreshed by this client.
        """

    @property
    @abc.abstractmethod
    def id(self) -> str:
        """The identity written into the store as the lock owner."""

    @abc.abstractmethod
    def new_lock(self, name: str) -> "Lock":
        """Return a Lock bound to this client. Does not touch the store."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class Lock(abc.ABC):
    """A named lease on one resource, scoped to the client that made it."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.ttl: Optional[TTL] = None
        self.data = ""

    @abc.abstractmethod
    def acquire(self, ttl: TTL) -> None:
        """Take the lock for ttl. Never waits: raises LockHeldError if taken."""

    @abc.abstractmethod
    def release(self) -> None:
        """Give the lock back. Raises LockNotOwnedError if not the owner."""

    @abc.abstractmethod
    def refresh(self) -> None:
        """Re-arm the lease with the current ttl and write the current data."""

    def refresh_ttl(self, ttl: TTL) -> None:
        """Set a new ttl for this and later refreshes, then refresh."""
        self.ttl = ttl
        self.refresh()

    @abc.abstractmethod
    def info(self) -> LockInfo:
        """Return a consistent snapshot of the lock state in the store."""

    def set_data(self, data: str) -> None:
        """Set the payload written on the next acquire or refresh."""
        self.data = data

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, ttl={self.ttl!r})"
