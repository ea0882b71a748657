"""
=================================================
Bulk operations for SQLAlchemy mapped entities.
=================================================

The operation surface callers use. Each call resolves the target table
from the frozen metadata cache, the timeout from the timeout registry,
composes its statement(s) and runs them on the session.

BulkOperations provides:
    - bulk_delete: DELETE by predicate or by query
    - bulk_update: Same assignments for every matching row
    - bulk_add: COPY-staged insert of in-memory rows
    - truncate / truncate_with_foreign_keys: Empty a table
    - select_and_add / select_and_update: Server-side INSERT/UPDATE from a query
    - count: Row count, optionally filtered

Nothing here wraps several statements in a transaction. Begin one on the
session when a sequence of operations has to be atomic.

Example:
    >>> from operations.bulk_operations import BulkOperations
    >>> from session.coordinator import session_scope
    >>>
    >>> with session_scope(engine) as session:
    ...     ops = BulkOperations(session, cache, timeouts)
    ...     ops.bulk_delete(Product, lambda p: ~p.is_active)
    ...     ops.bulk_update(Product, {'price': 0}, lambda p: p.name.startswith('free'))
"""

import time
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional

from core.config import config
from core.exceptions import BulkOperationError, ForeignKeyConstraintError
from core.logger import get_logger
from models.mappings import MetadataCache, TableMapping
from models.timeouts import TimeoutRegistry
from session.coordinator import Session, Transaction
from sql.composer import Assignments, BulkStatementComposer, ComposedStatement, Predicate
from sql.query_builder import Query, count_rows_sql, referencing_tables_sql
from transfer.bulk_copy import BulkTransferEngine

logger = get_logger(__name__)


class BulkOperations:
    """
    Set-based operations bound to one session.

    Attributes:
        session: Session every statement runs on
        cache: Frozen MetadataCache
        timeouts: TimeoutRegistry for per-operation command timeouts
        composer: BulkStatementComposer
        transfer: BulkTransferEngine used by bulk_add

    Example:
        >>> ops = BulkOperations(session, cache)
        >>> ops.select_and_add(ProductArchive, archive_query)
        120
    """

    def __init__(
        self,
        session: Session,
        cache: MetadataCache,
        timeouts: Optional[TimeoutRegistry] = None,
        composer: Optional[BulkStatementComposer] = None,
        transfer: Optional[BulkTransferEngine] = None
    ):
        self.session = session
        self.cache = cache
        self.timeouts = timeouts or TimeoutRegistry.from_config(config.bulk)
        self.composer = composer or BulkStatementComposer(cache)
        self.transfer = transfer or BulkTransferEngine()

    def _timeout(self, entity: type) -> float:
        context = self.cache.context_for(entity) if hasattr(self.cache, 'context_for') else None
        return self.timeouts.timeout_for(entity, context)

    @contextmanager
    def _operation(self, name: str, mapping: TableMapping) -> Iterator[None]:
        start_time = time.perf_counter()
        try:
            yield
        except BulkOperationError as e:
            logger.error(f"❌ {name} on {mapping.qualified_name} failed: {e}")
            raise
        logger.debug(f"{name} on {mapping.qualified_name} took {time.perf_counter() - start_time:.3f}s")

    def _run(self, composed: ComposedStatement, timeout: float) -> int:
        affected = None
        with self.session.exclusive():
            for statement in composed:
                result = self.session.execute(statement, timeout)
                if affected is None:
                    affected = max(result.rowcount, 0)
        return affected or 0

    def bulk_delete(
        self,
        entity: type,
        predicate: Optional[Predicate] = None,
        query: Optional[Query] = None
    ) -> int:
        """
        Delete every row matching ``predicate`` (or selected by ``query``).

        Args:
            entity: Mapped class
            predicate: Lambda over the row, e.g. ``lambda p: ~p.is_active``
            query: Typed Query over ``entity`` (queryable form)

        Returns:
            Rows deleted

        Raises:
            MissingPredicateError: Neither a predicate nor a filtering query
            TranslationError: Predicate cannot be expressed in SQL
        """
        mapping = self.cache.table_for(entity)
        with self._operation('bulk_delete', mapping):
            composed = self.composer.delete(entity, predicate=predicate, query=query)
            deleted = self._run(composed, self._timeout(entity))
        logger.info(f"🗑️  Deleted {deleted:,} rows from {mapping.qualified_name}")
        return deleted

    def bulk_update(
        self,
        entity: type,
        assignments: Assignments,
        predicate: Optional[Predicate] = None,
        query: Optional[Query] = None
    ) -> int:
        """
        Apply the same assignments to every matching row.

        Args:
            entity: Mapped class
            assignments: ``{attribute: value}`` (or a lambda over the row
                returning one, for values computed from the row)
            predicate: Lambda over the row
            query: Typed Query over ``entity``

        Returns:
            Rows updated
        """
        mapping = self.cache.table_for(entity)
        with self._operation('bulk_update', mapping):
            composed = self.composer.update(entity, assignments, predicate=predicate, query=query)
            updated = self._run(composed, self._timeout(entity))
        logger.info(f"✏️  Updated {updated:,} rows in {mapping.qualified_name}")
        return updated

    def bulk_add(self, entity: type, entities: Iterable[Any]) -> int:
        """
        Insert in-memory rows through a COPY-fed staging table.

        Args:
            entity: Mapped class of the target table
            entities: Instances of ``entity`` or dicts keyed by attribute/column

        Returns:
            Rows inserted
        """
        mapping = self.cache.table_for(entity)
        with self._operation('bulk_add', mapping):
            return self.transfer.bulk_insert(self.session, entities, mapping, self._timeout(entity))

    def truncate(
        self,
        entity: type,
        transaction: Optional[Transaction] = None,
        check_catalog: bool = True
    ) -> int:
        """
        TRUNCATE a table nothing references, restarting its identity.

        Args:
            entity: Mapped class
            transaction: The session's active transaction, when the caller
                wants the truncate to be part of it
            check_catalog: Also ask PostgreSQL for referencing foreign keys
                (catches tables outside the mapped contexts)

        Returns:
            Always 0 (PostgreSQL does not report truncated rows)

        Raises:
            ForeignKeyConstraintError: Another table references this one
            TransactionError: ``transaction`` is not the session's active one
        """
        mapping = self.cache.table_for(entity)
        with self._operation('truncate', mapping):
            self.session.check_transaction(transaction)
            composed = self.composer.truncate(entity)
            timeout = self._timeout(entity)
            with self.session.exclusive():
                if check_catalog:
                    self._ensure_unreferenced(mapping, timeout)
                self._run(composed, timeout)
        logger.info(f"🧹 Truncated {mapping.qualified_name}")
        return 0

    def _ensure_unreferenced(self, mapping: TableMapping, timeout: float) -> None:
        rows = self.session.execute(
            referencing_tables_sql(mapping.schema, mapping.table), timeout
        ).fetchall()
        if rows:
            references = ', '.join(f"{row.referencing_table} ({row.constraint_name})" for row in rows)
            raise ForeignKeyConstraintError(
                f"{mapping.qualified_name} is referenced by {references}; "
                "use truncate_with_foreign_keys"
            )

    def truncate_with_foreign_keys(
        self,
        entity: type,
        transaction: Optional[Transaction] = None
    ) -> int:
        """
        Empty a referenced table with DELETE and reset its identity columns.

        Runs two or more statements; pass (or begin) a transaction on the
        session if they must apply atomically.

        Returns:
            Rows deleted
        """
        mapping = self.cache.table_for(entity)
        with self._operation('truncate_with_foreign_keys', mapping):
            self.session.check_transaction(transaction)
            composed = self.composer.truncate_with_foreign_keys(entity)
            deleted = self._run(composed, self._timeout(entity))
        logger.info(
            f"🧹 Emptied {mapping.qualified_name} ({deleted:,} rows) and reset "
            f"{len(mapping.identity_columns)} identity column(s)"
        )
        return deleted

    def select_and_add(self, entity: type, query: Query) -> int:
        """
        INSERT INTO ``entity``'s table the rows a projecting query returns.

        The query must end in ``select(Wrapper, ...)``; the wrapper's fields
        bind to the target's insertable columns by name.

        Raises:
            ProjectionShapeError: Wrapper does not match the target (raised
                before anything executes)
        """
        mapping = self.cache.table_for(entity)
        with self._operation('select_and_add', mapping):
            composed = self.composer.select_and_insert(entity, query)
            inserted = self._run(composed, self._timeout(entity))
        logger.info(f"➕ Inserted {inserted:,} rows into {mapping.qualified_name} from query")
        return inserted

    def select_and_update(self, entity: type, query: Query) -> int:
        """
        UPDATE ``entity``'s table from a projecting query, joined on the primary key.

        The wrapper binds the primary key plus every assignable column.
        """
        mapping = self.cache.table_for(entity)
        with self._operation('select_and_update', mapping):
            composed = self.composer.select_and_update(entity, query)
            updated = self._run(composed, self._timeout(entity))
        logger.info(f"🔄 Updated {updated:,} rows in {mapping.qualified_name} from query")
        return updated

    def count(self, entity: type, predicate: Optional[Predicate] = None) -> int:
        """Count the rows of ``entity``'s table, optionally filtered."""
        mapping = self.cache.table_for(entity)
        fragment = None
        if predicate is not None:
            fragment = self.composer.predicate_fragment(mapping, predicate)
        return int(self.session.scalar(count_rows_sql(mapping.qualified_name, fragment), self._timeout(entity)))
