# dbstage/exceptions.py
"""Exceptions raised by staged bulk operations."""


class DbstageError(Exception):
    """Base class for dbstage errors."""


class UnmappedEntityError(DbstageError, LookupError):
    """No column mapping is registered for an entity type."""

    def __init__(self, entity_type):
        self.entity_type = entity_type
        name = getattr(entity_type, '__qualname__', str(entity_type))
        super().__init__(f"No entity mapping registered for {name}")


class UnsupportedDialectError(DbstageError, NotImplementedError):
    """The connected server type has no registered dialect."""

    def __init__(self, server_type: str, reason: str = None):
        self.server_type = server_type
        if reason is None:
            reason = f"No SQL dialect registered for server type '{server_type}'"
        super().__init__(reason)


class BulkOperationError(DbstageError, RuntimeError):
    """
    A bulk operation stopped part way through.

    ``result`` is the BulkResult as it stood when the operation stopped, so
    callers can see how many batches were already applied.
    """

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class KeyConversionError(BulkOperationError):
    """A generated key could not be converted to the entity attribute's type."""


class KeyResolutionError(BulkOperationError):
    """Returned key rows do not line up with the rows drained from staging."""


class BulkCancelled(BulkOperationError):
    """The operation was cancelled between batches."""
