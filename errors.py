"""Error taxonomy for lancedb-kv.

Every failure surfaced by the store is one of the subclasses below. Each
carries a human-readable ``message``; ``str(err)`` renders ``"<Kind>: <message>"``.
"""


class LanceKVError(Exception):
    """Base exception for all store errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.__class__.__name__}: {self.message}"


class ConnectionFailed(LanceKVError):
    """The store root cannot be created or opened."""


class SchemaError(LanceKVError):
    """Invalid store configuration, e.g. a non-positive embedding dimension."""


class TableError(LanceKVError):
    """Table-level open, create or drop failure."""


class InsertError(LanceKVError):
    """Write-time failure, including embedding length mismatch."""


class QueryError(LanceKVError):
    """Search or list failure, including query vector length mismatch."""


class DeleteError(LanceKVError):
    """Predicate delete failure."""
