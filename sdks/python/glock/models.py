"""glock data models."""

from dataclasses import dataclass, field
from datetime import timedelta


@dataclass
class LockInfo:
    """Snapshot of a lock as seen by the store."""
    name: str
    acquired: bool = False
    owner: str = ""
    ttl: timedelta = field(default_factory=timedelta)
    data: str = ""
