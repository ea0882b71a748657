"""
=====================================
Error taxonomy for bulk operations.
=====================================

Every failure raised by the engine derives from BulkOperationError so
callers can catch the whole family at once. All errors are synchronous
and surface to the immediate caller; nothing is downgraded to a default
value and nothing falls back to row-by-row execution.

Classes:
    ConfigurationError: Metadata or timeout registry missing or malformed
    NotInitializedError: Operation issued before the cache was frozen
    TranslationError: Expression shape has no SQL equivalent
    ProjectionShapeError: Wrapper type does not match the target columns
    MissingPredicateError: Unbounded delete/update without explicit intent
    ForeignKeyConstraintError: Plain truncate on a referenced table
    BulkTransferError: Staging load or merge failed
    SessionInUseError: Concurrent use of one session
    TransactionError: Invalid transaction state for the requested call
    OperationTimeoutError: Statement exceeded its configured timeout
    StatementExecutionError: Any other database error during execution
"""


class BulkOperationError(Exception):
    """Base exception for all bulk engine errors."""
    pass


class ConfigurationError(BulkOperationError):
    """Raised when table metadata or timeouts are missing or malformed.

    Fatal: surfaced at startup or on first use, never recovered silently.
    """
    pass


class NotInitializedError(BulkOperationError):
    """Raised when mappings are read before the cache is frozen."""
    pass


class TranslationError(BulkOperationError):
    """Raised when an expression cannot be translated to SQL.

    Attributes:
        node: The offending expression node (if known)
    """

    def __init__(self, message: str, node=None):
        super().__init__(message)
        self.node = node


class ProjectionShapeError(TranslationError):
    """Raised when a wrapper projection does not line up with target columns."""
    pass


class MissingPredicateError(BulkOperationError):
    """Raised when a delete or update has no predicate.

    Full-table deletes go through truncate instead.
    """
    pass


class ForeignKeyConstraintError(BulkOperationError):
    """Raised when TRUNCATE is requested for a table other tables reference."""
    pass


class BulkTransferError(BulkOperationError):
    """Raised when staging, COPY, or the staging merge fails.

    The staging table has already been dropped when this propagates.
    """
    pass


class SessionInUseError(BulkOperationError):
    """Raised when a session is used from two threads at once."""
    pass


class TransactionError(BulkOperationError):
    """Raised for invalid transaction state (nested begin, foreign handle, ...)."""
    pass


class OperationTimeoutError(BulkOperationError, TimeoutError):
    """Raised when a statement exceeds its command timeout.

    The statement is aborted by the server and never retried.
    """
    pass


class StatementExecutionError(BulkOperationError):
    """Raised when the database rejects a composed statement."""
    pass
