"""Exception taxonomy for the cache layer.

Only ``increment`` lets these escape to callers; every other operation
translates them into a miss or a ``False`` result.
"""


class CacheError(Exception):
    """Base class for cache errors."""


class BackendUnavailable(CacheError):
    """The backing store could not be reached (refused, absent or timed out)."""


class SerializationError(CacheError):
    """A value could not be encoded, or a stored payload could not be decoded."""


class LockTimeout(CacheError):
    """The file backend could not acquire a write lock in time."""


class AtomicityError(CacheError):
    """An atomic update could not be guaranteed."""
