"""
=====================================================
Pytest suite for operations/bulk_operations.py
=====================================================

Sections:
---------
1. Unit tests - Each operation against a recording session
2. Edge case tests - Failures raised before execution

Available markers:
------------------
unit, edge_case

Test Coverage:
--------------
- bulk_delete / bulk_update: composed statement, affected rows, timeout lookup
- bulk_add: delegation to the transfer engine
- truncate: catalog check, foreign key refusal, transaction ownership
- truncate_with_foreign_keys, select_and_add, select_and_update, count

How to Execute:
---------------
All tests:          pytest tests/tests_operations/test_bulk_operations.py -v
"""

from contextlib import contextmanager
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from core.exceptions import (
    ForeignKeyConstraintError,
    MissingPredicateError,
    ProjectionShapeError,
    TransactionError,
)
from models.timeouts import TimeoutRegistry
from operations.bulk_operations import BulkOperations
from sql.query_builder import Query
from sample_models import ArchiveRow, ArchiveRowShort, Category, Product, ProductArchive

# ====================
# Mock Helper Classes
# ====================

class FakeResult:
    """Mock CursorResult."""
    def __init__(self, rowcount=0, rows=None):
        self.rowcount = rowcount
        self.rows = rows or []

    def fetchall(self):
        return list(self.rows)


class FakeSession:
    """Session double recording statements and timeouts."""
    def __init__(self, rowcount=3, catalog_rows=None, scalar_value=0):
        self.rowcount = rowcount
        self.catalog_rows = catalog_rows or []
        self.scalar_value = scalar_value
        self.statements = []
        self.timeouts = []
        self.transaction = None

    @contextmanager
    def exclusive(self):
        yield self

    def check_transaction(self, transaction):
        if transaction is not None and transaction is not self.transaction:
            raise TransactionError('foreign transaction')

    def execute(self, fragment, timeout=None):
        self.statements.append(fragment)
        self.timeouts.append(timeout)
        if 'pg_constraint' in fragment.text:
            return FakeResult(rows=self.catalog_rows)
        return FakeResult(rowcount=self.rowcount)

    def scalar(self, fragment, timeout=None):
        self.statements.append(fragment)
        self.timeouts.append(timeout)
        return self.scalar_value

    @property
    def texts(self):
        return [statement.text for statement in self.statements]


# ====================
# Fixtures
# ====================

@pytest.fixture
def timeouts():
    return TimeoutRegistry(default=30, overrides={'Product': 120})


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def ops(session, metadata_cache, timeouts):
    return BulkOperations(session, metadata_cache, timeouts)


def archive_query():
    return (
        Query(Product)
        .where(lambda p: ~p.is_active)
        .select(ArchiveRow, lambda p: {'id': p.id, 'name': p.name, 'price': p.price})
    )


# ===============
# 1. UNIT TESTS
# ===============

@pytest.mark.unit
def test_bulk_delete(ops, session):
    """
    Test bulk_delete runs one DELETE with the entity's timeout.
    """
    deleted = ops.bulk_delete(Product, lambda p: ~p.is_active)

    assert deleted == 3
    assert session.texts == ['DELETE FROM "public"."products"\nWHERE NOT "is_active"']
    assert session.timeouts == [120.0]


@pytest.mark.unit
def test_bulk_delete_by_query(ops, session):
    """
    Test bulk_delete with the queryable form.
    """
    ops.bulk_delete(Product, query=Query(Product).where(lambda p: p.price < 1))

    assert session.texts[0].startswith('DELETE FROM "public"."products"\nWHERE ("id") IN (')


@pytest.mark.unit
def test_default_and_context_timeouts(metadata_cache, session):
    """
    Test that entities without an override fall back to their context, then the default.
    """
    ops = BulkOperations(session, metadata_cache, TimeoutRegistry(default=30, overrides={'Base': 45}))

    ops.bulk_delete(Category, lambda c: c.id == 1)

    assert session.timeouts == [45.0]


@pytest.mark.unit
def test_bulk_update(ops, session):
    """
    Test bulk_update returns the affected row count.
    """
    updated = ops.bulk_update(Product, {'price': 0}, lambda p: p.name.startswith('free'))

    assert updated == 3
    assert session.texts[0].startswith('UPDATE "public"."products"\nSET "price" = :s_p0')


@pytest.mark.unit
def test_negative_rowcount_reported_as_zero(metadata_cache, timeouts):
    """
    Test that an unknown rowcount (-1) is reported as 0.
    """
    session = FakeSession(rowcount=-1)
    ops = BulkOperations(session, metadata_cache, timeouts)

    assert ops.bulk_delete(Product, lambda p: p.id == 1) == 0


@pytest.mark.unit
def test_bulk_add_delegates_to_transfer(session, metadata_cache, timeouts):
    """
    Test bulk_add hands rows, mapping and timeout to the transfer engine.
    """
    transfer = MagicMock()
    transfer.bulk_insert.return_value = 2
    ops = BulkOperations(session, metadata_cache, timeouts, transfer=transfer)
    rows = [{'name': 'a'}, {'name': 'b'}]

    assert ops.bulk_add(Product, rows) == 2
    transfer.bulk_insert.assert_called_once_with(session, rows, metadata_cache.table_for(Product), 120.0)


@pytest.mark.unit
def test_truncate_checks_catalog_first(ops, session):
    """
    Test truncate asks PostgreSQL for referencing keys, then truncates.
    """
    assert ops.truncate(Product) == 0

    assert 'pg_constraint' in session.texts[0]
    assert session.texts[1] == 'TRUNCATE TABLE "public"."products" RESTART IDENTITY;'


@pytest.mark.unit
def test_truncate_without_catalog_check(ops, session):
    """
    Test truncate can skip the catalog lookup.
    """
    ops.truncate(Product, check_catalog=False)

    assert session.texts == ['TRUNCATE TABLE "public"."products" RESTART IDENTITY;']


@pytest.mark.unit
def test_truncate_in_own_transaction(ops, session):
    """
    Test truncate accepts the session's active transaction.
    """
    session.transaction = object()

    ops.truncate(Product, transaction=session.transaction, check_catalog=False)

    assert len(session.statements) == 1


@pytest.mark.unit
def test_truncate_with_foreign_keys(ops, session):
    """
    Test the DELETE + identity reset path reports the deleted rows.
    """
    deleted = ops.truncate_with_foreign_keys(Category)

    assert deleted == 3
    assert session.texts[0] == 'DELETE FROM "public"."categories"'
    assert session.texts[1].startswith('SELECT setval(')


@pytest.mark.unit
def test_select_and_add(ops, session):
    """
    Test select_and_add runs one INSERT ... SELECT.
    """
    assert ops.select_and_add(ProductArchive, archive_query()) == 3
    assert session.texts[0].startswith('INSERT INTO "public"."product_archive" ("id", "name", "price")')


@pytest.mark.unit
def test_select_and_update(ops, session):
    """
    Test select_and_update runs one UPDATE ... FROM.
    """
    assert ops.select_and_update(ProductArchive, archive_query()) == 3
    assert session.texts[0].startswith('UPDATE "public"."product_archive" AS t')


@pytest.mark.unit
def test_count(metadata_cache, timeouts):
    """
    Test count with a predicate.
    """
    session = FakeSession(scalar_value=5)
    ops = BulkOperations(session, metadata_cache, timeouts)

    assert ops.count(Product, lambda p: ~p.is_active) == 5
    assert session.texts == ['SELECT count(*) AS row_count FROM "public"."products"\nWHERE NOT "is_active"']


# ====================
# 2. EDGE CASE TESTS
# ====================

@pytest.mark.edge_case
def test_missing_predicate_executes_nothing(ops, session):
    """
    Test that an unbounded delete fails before reaching the session.
    """
    with pytest.raises(MissingPredicateError):
        ops.bulk_delete(Product)

    assert session.statements == []


@pytest.mark.edge_case
def test_truncate_referenced_by_metadata(ops, session):
    """
    Test truncate of a table mapped as referenced fails without executing.
    """
    with pytest.raises(ForeignKeyConstraintError):
        ops.truncate(Category)

    assert session.statements == []


@pytest.mark.edge_case
def test_truncate_referenced_by_catalog(metadata_cache, timeouts):
    """
    Test truncate fails when PostgreSQL reports an unmapped referencing table.
    """
    session = FakeSession(catalog_rows=[
        SimpleNamespace(referencing_table='reporting.sales', constraint_name='sales_product_fk')
    ])
    ops = BulkOperations(session, metadata_cache, timeouts)

    with pytest.raises(ForeignKeyConstraintError) as exc_info:
        ops.truncate(Product)

    assert 'reporting.sales (sales_product_fk)' in str(exc_info.value)
    assert not any(text.startswith('TRUNCATE') for text in session.texts)


@pytest.mark.edge_case
def test_truncate_with_foreign_transaction(ops, session):
    """
    Test truncate refuses a transaction handle that is not the session's.
    """
    with pytest.raises(TransactionError):
        ops.truncate(Product, transaction=object())

    assert session.statements == []


@pytest.mark.edge_case
def test_select_and_add_shape_error_executes_nothing(ops, session):
    """
    Test that a projection shape mismatch is raised before anything executes.
    """
    query = Query(Product).select(ArchiveRowShort, lambda p: {'id': p.id, 'name': p.name})

    with pytest.raises(ProjectionShapeError):
        ops.select_and_add(ProductArchive, query)

    assert session.statements == []
