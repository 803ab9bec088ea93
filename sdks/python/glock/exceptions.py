"""glock exception classes."""


class GlockError(Exception):
    """Base exception for all glock errors."""
    pass


class ValidationError(GlockError):
    """Raised when caller input is rejected before touching the store."""
    pass


class InvalidTTLError(ValidationError):
    """Raised when a ttl is below one millisecond."""
    pass


class LockError(GlockError):
    """Raised when lock operations fail."""

    def __init__(self, message: str, name: str = None):
        super().__init__(message)
        self.name = name


class LockHeldError(LockError):
    """Raised when trying to acquire a lock that's already held."""
    pass


class LockNotOwnedError(LockError):
    """Raised when releasing or refreshing a lock this client does not own."""
    pass


class StoreError(GlockError):
    """Raised when the backing store fails or returns something unexpected."""
    pass


class StoreConnectionError(StoreError):
    """Raised when the store cannot be reached or the client is closed."""
    pass
