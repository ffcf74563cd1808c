"""
Error taxonomy for collection operations.

Storage failures come from the transaction helper in db.connection and are
re-exported here so callers can catch everything from one place.
"""
from db.connection import ConcurrencyConflict, PersistenceError, StorageError


class CollectionError(Exception):
    """Base class for rejected collection operations."""


class ValidationError(CollectionError):
    """Malformed request; rejected before any state changed."""


class NotFoundError(ValidationError):
    """A referenced lot or product does not exist (or is not the user's)."""


__all__ = [
    "CollectionError",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "ConcurrencyConflict",
    "PersistenceError",
]
