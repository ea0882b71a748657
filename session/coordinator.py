"""
==============================================
Session and transaction coordination.
==============================================

A Session owns exactly one SQLAlchemy Connection for one unit of work.
Every bulk statement runs on that connection, in order, either inside
the transaction the caller began or, when none is active, inside its
own single-statement transaction. Multi-statement operations are never
wrapped implicitly: callers that need them atomic begin a transaction.

Sessions are not thread-safe by contract. A second thread entering a
session while another call is in flight gets SessionInUseError instead
of interleaving statements on the shared connection.

Timeouts:
    Each statement is preceded by ``set_config('statement_timeout', ..., true)``
    (transaction-local). Inside a caller's transaction the previous value
    is restored once the statement finishes. PostgreSQL cancels an
    overrunning statement with SQLSTATE 57014, surfaced as
    OperationTimeoutError. Nothing is retried.

Example:
    >>> from session.coordinator import session_scope
    >>>
    >>> with session_scope(engine) as session:
    ...     with session.begin():
    ...         ops = BulkOperations(session, cache, timeouts)
    ...         ops.truncate(OrderLine)
    ...         ops.truncate_with_foreign_keys(Order)
"""

import itertools
import threading
from contextlib import contextmanager
from typing import IO, Any, Iterator, Optional

import psycopg2
from sqlalchemy.engine import Connection, CursorResult, Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.types import String

from core.exceptions import (
    OperationTimeoutError,
    SessionInUseError,
    StatementExecutionError,
    TransactionError,
)
from core.logger import get_logger
from sql.fragments import ParameterizedSqlFragment, SqlParameter

logger = get_logger(__name__)

QUERY_CANCELED = '57014'

_session_ids = itertools.count(1)


CURRENT_TIMEOUT = ParameterizedSqlFragment("SELECT current_setting('statement_timeout')")


def _set_timeout_fragment(value: str) -> ParameterizedSqlFragment:
    return ParameterizedSqlFragment(
        "SELECT set_config('statement_timeout', :timeout_ms, true)",
        (SqlParameter('timeout_ms', value, String()),)
    )


def _timeout_fragment(seconds: float) -> ParameterizedSqlFragment:
    milliseconds = max(1, int(round(seconds * 1000)))
    return _set_timeout_fragment(str(milliseconds))


def _pgcode(error: BaseException) -> Optional[str]:
    if isinstance(error, DBAPIError):
        error = error.orig
    return getattr(error, 'pgcode', None)


class Transaction:
    """Handle for the session's active transaction.

    Commits on a clean exit from ``with``, rolls back when an exception
    escapes. A per-transaction isolation level is undone when it ends.
    """

    def __init__(self, session: 'Session', handle, restore_isolation: Optional[str] = None):
        self.session = session
        self._handle = handle
        self.restore_isolation = restore_isolation

    @property
    def is_active(self) -> bool:
        return self._handle.is_active and self.session._transaction is self

    def commit(self) -> None:
        self.session._finish(self, commit=True)

    def rollback(self) -> None:
        self.session._finish(self, commit=False)

    def __enter__(self) -> 'Transaction':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.is_active:
            return False
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        return False


class Session:
    """One connection, zero or one active transaction.

    Args:
        engine: SQLAlchemy engine to draw the connection from
        isolation_level: Isolation level for the whole session (optional)
        session_id: Identifier used in staging table names (auto-assigned)

    Example:
        >>> with Session(engine) as session:
        ...     tx = session.begin()
        ...     session.execute(fragment, timeout=30)
        ...     tx.commit()
    """

    def __init__(
        self,
        engine: Engine,
        isolation_level: Optional[str] = None,
        session_id: Optional[int] = None
    ):
        self.engine = engine
        self.isolation_level = isolation_level
        self.session_id = session_id if session_id is not None else next(_session_ids)
        self._connection: Optional[Connection] = None
        self._transaction: Optional[Transaction] = None
        self._lock = threading.RLock()
        self._sequence = itertools.count(1)

    # Lifetime

    def open(self) -> 'Session':
        with self.exclusive():
            if self._connection is None:
                connection = self.engine.connect()
                if self.isolation_level:
                    connection = connection.execution_options(isolation_level=self.isolation_level)
                self._connection = connection
                logger.debug(f"Session {self.session_id} opened")
            return self

    def close(self) -> None:
        """Release the connection, rolling back anything left uncommitted."""
        with self.exclusive():
            if self._connection is None:
                return
            try:
                if self._transaction is not None:
                    logger.warning(f"⚠️  Session {self.session_id} closed with an open transaction; rolling back")
                    self._finish(self._transaction, commit=False)
            finally:
                self._connection.close()
                self._connection = None
                self._transaction = None
                logger.debug(f"Session {self.session_id} closed")

    def __enter__(self) -> 'Session':
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            self.close()
        except SQLAlchemyError as e:
            if exc_type is None:
                raise
            # the exception leaving the block wins over the failed rollback
            logger.error(f"❌ Rollback failed while closing session {self.session_id}: {e}")
        return False

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    @property
    def connection(self) -> Connection:
        if self._connection is None:
            raise TransactionError(f"Session {self.session_id} is not open")
        return self._connection

    # Concurrency guard

    @contextmanager
    def exclusive(self) -> Iterator['Session']:
        """Hold the session for the calling thread.

        Re-entrant for the owning thread; any other thread fails fast.

        Raises:
            SessionInUseError: Another thread is using the session
        """
        if not self._lock.acquire(blocking=False):
            raise SessionInUseError(
                f"Session {self.session_id} is already in use by another thread"
            )
        try:
            yield self
        finally:
            self._lock.release()

    # Transactions

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    @property
    def transaction(self) -> Optional[Transaction]:
        return self._transaction

    def begin(self, isolation_level: Optional[str] = None) -> Transaction:
        """Begin the session's transaction.

        Raises:
            TransactionError: A transaction is already active
        """
        with self.exclusive():
            if self._transaction is not None:
                raise TransactionError(
                    f"Session {self.session_id} already has an active transaction"
                )
            connection = self.connection
            restore_isolation = None
            if isolation_level:
                restore_isolation = self.isolation_level or connection.default_isolation_level
                connection.execution_options(isolation_level=isolation_level)
            self._transaction = Transaction(self, connection.begin(), restore_isolation)
            logger.debug(f"Session {self.session_id} began a transaction")
            return self._transaction

    def commit(self) -> None:
        if self._transaction is None:
            raise TransactionError(f"Session {self.session_id} has no active transaction")
        self._transaction.commit()

    def rollback(self) -> None:
        if self._transaction is None:
            raise TransactionError(f"Session {self.session_id} has no active transaction")
        self._transaction.rollback()

    def _finish(self, transaction: Transaction, commit: bool) -> None:
        with self.exclusive():
            if transaction is not self._transaction:
                raise TransactionError("Transaction is not the session's active transaction")
            try:
                if commit:
                    transaction._handle.commit()
                else:
                    transaction._handle.rollback()
            finally:
                self._transaction = None
                if transaction.restore_isolation and not self.connection.invalidated:
                    self.connection.execution_options(isolation_level=transaction.restore_isolation)
            logger.debug(f"Session {self.session_id} {'committed' if commit else 'rolled back'}")

    def check_transaction(self, transaction: Optional[Transaction]) -> None:
        """Ensure a handle passed in by a caller is this session's active transaction.

        Raises:
            TransactionError: Foreign or finished transaction handle
        """
        if transaction is None:
            return
        if transaction is not self._transaction or not transaction.is_active:
            raise TransactionError(
                f"Transaction does not belong to session {self.session_id} or is no longer active"
            )

    @contextmanager
    def statement_scope(self) -> Iterator[Connection]:
        """Run inside the active transaction, or a single-statement one."""
        connection = self.connection
        if self._transaction is not None:
            yield connection
        else:
            with connection.begin():
                yield connection

    @contextmanager
    def savepoint(self) -> Iterator[Connection]:
        """SAVEPOINT inside the active transaction, released on success.

        Raises:
            TransactionError: No active transaction
        """
        if self._transaction is None:
            raise TransactionError("A savepoint needs an active transaction")
        with self.connection.begin_nested():
            yield self.connection

    def next_sequence(self) -> int:
        """Per-session counter used for deterministic staging table names."""
        return next(self._sequence)

    # Execution

    @contextmanager
    def _statement_timeout(self, connection: Connection, timeout: Optional[float]) -> Iterator[None]:
        """Set statement_timeout for the statement run inside the block.

        Inside a caller's transaction the previous value is put back after
        the statement so later statements in that transaction keep it.
        """
        if timeout is None:
            yield
            return
        previous = None
        if self._transaction is not None:
            previous = connection.execute(CURRENT_TIMEOUT.to_text_clause()).scalar()
        connection.execute(_timeout_fragment(timeout).to_text_clause())
        yield
        if previous is not None:
            connection.execute(_set_timeout_fragment(previous).to_text_clause())

    def execute(self, fragment: ParameterizedSqlFragment, timeout: Optional[float] = None) -> CursorResult:
        """Execute one statement with its bound parameters.

        Args:
            fragment: Statement to run
            timeout: Statement timeout in seconds (None = server default)

        Returns:
            SQLAlchemy CursorResult (buffered when the statement returns rows)

        Raises:
            SessionInUseError: Concurrent use
            OperationTimeoutError: Statement cancelled by statement_timeout
            StatementExecutionError: Any other database error
        """
        with self.exclusive():
            try:
                with self.statement_scope() as connection:
                    with self._statement_timeout(connection, timeout):
                        result = connection.execute(fragment.to_text_clause())
                        if result.returns_rows:
                            # read before a single-statement transaction ends
                            result = result.freeze()()
                    return result
            except SQLAlchemyError as e:
                raise self._translate_error(e, fragment.text, timeout) from e

    def scalar(self, fragment: ParameterizedSqlFragment, timeout: Optional[float] = None) -> Any:
        return self.execute(fragment, timeout).scalar()

    def copy_from_stream(self, copy_sql: str, stream: IO[str], timeout: Optional[float] = None) -> int:
        """Stream CSV data with COPY ... FROM STDIN on the session's connection.

        Uses the psycopg2 connection underneath the SQLAlchemy one so the
        load takes part in the same transaction.

        Returns:
            Rows loaded as reported by the driver
        """
        with self.exclusive():
            try:
                with self.statement_scope() as connection:
                    raw = connection.connection.driver_connection
                    with self._statement_timeout(connection, timeout):
                        with raw.cursor() as cursor:
                            cursor.copy_expert(copy_sql, stream)
                            loaded = cursor.rowcount
                    return loaded
            except (SQLAlchemyError, psycopg2.Error) as e:
                raise self._translate_error(e, copy_sql, timeout) from e

    def _translate_error(self, error: Exception, sql_text: str, timeout: Optional[float]) -> Exception:
        if _pgcode(error) == QUERY_CANCELED:
            logger.error(f"⏱️  Statement exceeded its {timeout}s timeout in session {self.session_id}")
            return OperationTimeoutError(
                f"Statement exceeded its {timeout}s timeout and was cancelled:\n{sql_text}"
            )
        logger.error(f"❌ Statement failed in session {self.session_id}: {error}")
        return StatementExecutionError(f"Statement failed: {error}\n{sql_text}")


@contextmanager
def session_scope(
    engine: Engine,
    isolation_level: Optional[str] = None,
    transactional: bool = False
) -> Iterator[Session]:
    """Open a session for a block, always releasing its connection.

    Args:
        engine: SQLAlchemy engine
        isolation_level: Session isolation level
        transactional: Begin a transaction committed on success, rolled
            back on error

    Example:
        >>> with session_scope(engine, transactional=True) as session:
        ...     BulkOperations(session, cache, timeouts).bulk_add(Product, rows)
    """
    session = Session(engine, isolation_level=isolation_level)
    with session:
        if transactional:
            with session.begin():
                yield session
        else:
            yield session
