"""
=====================================
Bulk transfer engine (staged COPY).
=====================================

Inserts large in-memory datasets without generating SQL per row:

    1. Stage rows into a StagingBuffer (pandas, one pass)
    2. CREATE TEMP TABLE <staging> AS SELECT <cols> FROM <target> WITH NO DATA
    3. COPY <staging> (<cols>) FROM STDIN (CSV stream through psycopg2)
    4. INSERT INTO <target> (<cols>) SELECT <cols> FROM <staging>
    5. DROP TABLE <staging>

Staging tables are named ``<prefix>_<table>_<session id>_<sequence>``
and are dropped on success and on failure.

Transactions:
    - Inside a caller transaction the steps run under a SAVEPOINT. A
      failure rolls back to the savepoint, so the caller's transaction
      stays usable and is never rolled back by the engine.
    - Without one, each step runs in its own transaction (the engine
      does not wrap the sequence). A failed merge leaves the target
      untouched because the INSERT ... SELECT is one statement.

Example:
    >>> engine = BulkTransferEngine()
    >>> with session.begin():
    ...     inserted = engine.bulk_insert(session, rows, cache.table_for(Product), timeout=60)
"""

import time
from typing import Any, Iterable, Optional

from core.config import config
from core.exceptions import BulkOperationError, BulkTransferError, OperationTimeoutError
from core.logger import get_logger, log_sql
from models.mappings import TableMapping
from session.coordinator import Session
from sql.ddl import create_staging_table, drop_table
from sql.dml import copy_from_stdin_statement, merge_staging_statement
from sql.fragments import literal_sql
from transfer.staging import StagingBuffer

logger = get_logger(__name__)

# PostgreSQL truncates identifiers longer than NAMEDATALEN - 1
MAX_IDENTIFIER_LENGTH = 63


class BulkTransferEngine:
    """Load entities into a table through a COPY-fed staging table.

    Args:
        staging_prefix: Staging table name prefix (default from BULK_STAGING_PREFIX)
        null_string: Preferred NULL marker in the COPY stream (default from
            BULK_COPY_NULL); suffixed with a digit when a staged value equals it
    """

    def __init__(self, staging_prefix: Optional[str] = None, null_string: Optional[str] = None):
        self.staging_prefix = staging_prefix or config.bulk.staging_prefix
        self.null_string = null_string if null_string is not None else config.bulk.copy_null

    def staging_table_name(self, mapping: TableMapping, session: Session) -> str:
        """Deterministic staging table name for the next load in ``session``."""
        suffix = f"_{session.session_id}_{session.next_sequence()}"
        head = f"{self.staging_prefix}_{mapping.table}"
        return head[:MAX_IDENTIFIER_LENGTH - len(suffix)] + suffix

    def bulk_insert(
        self,
        session: Session,
        entities: Iterable[Any],
        mapping: TableMapping,
        timeout: Optional[float] = None
    ) -> int:
        """
        Insert ``entities`` into ``mapping``'s table via COPY.

        Args:
            session: Open session
            entities: Mapped instances or dicts
            mapping: Target table mapping
            timeout: Per-statement timeout in seconds

        Returns:
            Number of rows inserted

        Raises:
            BulkTransferError: Staging, COPY or merge failed (staging
                table already dropped)
            OperationTimeoutError: A step exceeded ``timeout``
            SessionInUseError: Concurrent use of ``session``
        """
        buffer = StagingBuffer.from_entities(entities, mapping)
        if len(buffer) == 0:
            logger.info(f"ℹ️  Nothing to insert into {mapping.qualified_name}")
            return 0

        start_time = time.perf_counter()
        with session.exclusive():
            staging = self.staging_table_name(mapping, session)
            logger.info(
                f"📦 Staging {len(buffer):,} rows for {mapping.qualified_name} in {staging}"
            )
            if session.in_transaction:
                inserted = self._load_in_savepoint(session, buffer, staging, timeout)
            else:
                inserted = self._load_autocommit(session, buffer, staging, timeout)

        duration = time.perf_counter() - start_time
        logger.info(
            f"✅ Inserted {inserted:,} rows into {mapping.qualified_name} in {duration:.2f}s"
        )
        return inserted

    def _steps(self, session: Session, buffer: StagingBuffer, staging: str, timeout: Optional[float]) -> int:
        mapping = buffer.mapping
        columns = buffer.columns

        session.execute(literal_sql(create_staging_table(staging, mapping.qualified_name, columns)), timeout)

        null_string = buffer.null_marker(self.null_string)
        copy_sql = copy_from_stdin_statement(staging, columns, null_string, force_null=columns)
        log_sql(logger, f"COPY into {staging}", copy_sql)
        loaded = session.copy_from_stream(copy_sql, buffer.to_csv(null_string), timeout)
        if loaded >= 0 and loaded != len(buffer):
            raise BulkTransferError(
                f"COPY loaded {loaded} of {len(buffer)} rows into {staging}"
            )

        result = session.execute(
            literal_sql(merge_staging_statement(mapping.qualified_name, staging, columns)), timeout
        )
        return result.rowcount

    def _load_in_savepoint(self, session: Session, buffer: StagingBuffer, staging: str,
                           timeout: Optional[float]) -> int:
        try:
            with session.savepoint():
                inserted = self._steps(session, buffer, staging, timeout)
                session.execute(literal_sql(drop_table(staging)), timeout)
            return inserted
        except (BulkTransferError, OperationTimeoutError):
            # the savepoint rollback undid CREATE TEMP, so DROP IF EXISTS is a no-op
            self._drop_quietly(session, staging)
            raise
        except BulkOperationError as e:
            self._drop_quietly(session, staging)
            raise self._transfer_error(e, buffer.mapping, staging) from e

    def _load_autocommit(self, session: Session, buffer: StagingBuffer, staging: str,
                         timeout: Optional[float]) -> int:
        try:
            inserted = self._steps(session, buffer, staging, timeout)
        except (BulkTransferError, OperationTimeoutError):
            self._drop_quietly(session, staging)
            raise
        except BulkOperationError as e:
            self._drop_quietly(session, staging)
            raise self._transfer_error(e, buffer.mapping, staging) from e
        session.execute(literal_sql(drop_table(staging)), timeout)
        return inserted

    def _drop_quietly(self, session: Session, staging: str) -> None:
        """Drop the staging table while an error is already propagating."""
        try:
            session.execute(literal_sql(drop_table(staging)))
        except BulkOperationError as e:
            logger.error(f"❌ Could not drop staging table {staging}: {e}")

    def _transfer_error(self, error: BulkOperationError, mapping: TableMapping, staging: str) -> BulkTransferError:
        logger.error(f"❌ Bulk insert into {mapping.qualified_name} via {staging} failed: {error}")
        return BulkTransferError(f"Bulk insert into {mapping.qualified_name} failed: {error}")
