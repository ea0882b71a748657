"""
=======================================================
Pytest suite for sql/fragments.py, sql/ddl.py, sql/dml.py
=======================================================

Sections:
---------
1. Unit tests - Fragment invariants, namespacing, templates
2. Edge case tests - Collisions, casts, quoting

Available markers:
------------------
unit, edge_case

How to Execute:
---------------
All tests:          pytest tests/tests_sql/test_fragments.py -v
"""

import pytest
from sqlalchemy.types import Integer

from core.exceptions import TranslationError
from sql.ddl import (
    create_staging_table,
    drop_table,
    qualified_table_name,
    quote_identifier,
    reset_identity_sql,
    truncate_table,
)
from sql.dml import (
    copy_from_stdin_statement,
    delete_by_key_statement,
    merge_staging_statement,
    update_from_statement,
)
from sql.fragments import ParameterizedSqlFragment, SqlParameter, combine, find_placeholders


# ===============
# 1. UNIT TESTS
# ===============

@pytest.mark.unit
def test_namespaced_renames_text_and_parameters():
    """
    Test that namespacing renames every placeholder consistently.
    """
    fragment = ParameterizedSqlFragment(
        '"price" > :p0 AND "price" < :p1',
        (SqlParameter('p0', 1, Integer()), SqlParameter('p1', 9, Integer()))
    )

    renamed = fragment.namespaced('w')

    assert renamed.text == '"price" > :w_p0 AND "price" < :w_p1'
    assert renamed.parameter_names == ('w_p0', 'w_p1')
    assert renamed.values == {'w_p0': 1, 'w_p1': 9}


@pytest.mark.unit
def test_combine_keeps_parameter_order():
    """
    Test that combine concatenates text and parameters in order.
    """
    first = ParameterizedSqlFragment('a = :p0', (SqlParameter('p0', 1),)).namespaced('w')
    second = ParameterizedSqlFragment('b = :p0', (SqlParameter('p0', 2),)).namespaced('s')

    merged = combine([first, second], ' AND ')

    assert merged.text == 'a = :w_p0 AND b = :s_p0'
    assert merged.parameter_names == ('w_p0', 's_p0')


@pytest.mark.unit
def test_to_text_clause_binds_values():
    """
    Test that a fragment becomes a TextClause with its bind parameters.
    """
    clause = ParameterizedSqlFragment('SELECT :p0', (SqlParameter('p0', 5, Integer()),)).to_text_clause()

    assert clause._bindparams['p0'].value == 5


@pytest.mark.unit
def test_ddl_templates():
    """
    Test staging, drop and truncate templates.
    """
    assert create_staging_table('_stage_products_1_1', '"public"."products"', ['name', 'price']) == (
        'CREATE TEMP TABLE "_stage_products_1_1" AS\n'
        'SELECT "name", "price" FROM "public"."products" WITH NO DATA;'
    )
    assert drop_table('_stage_products_1_1') == 'DROP TABLE IF EXISTS "_stage_products_1_1";'
    assert truncate_table('"public"."products"') == 'TRUNCATE TABLE "public"."products" RESTART IDENTITY;'
    assert reset_identity_sql('public', 'products', 'id') == (
        "SELECT setval(pg_get_serial_sequence('\"public\".\"products\"', 'id'), 1, false);"
    )


@pytest.mark.unit
def test_dml_templates():
    """
    Test key-restricted delete, update-from and staging merge templates.
    """
    assert delete_by_key_statement('"public"."products"', ['id'], 'SELECT 1') == (
        'DELETE FROM "public"."products"\nWHERE ("id") IN (\nSELECT 1\n)'
    )
    assert update_from_statement('"public"."a"', 't', ['name'], 's', 'SELECT 1', 't."id" = s."id"') == (
        'UPDATE "public"."a" AS t\n'
        'SET "name" = s."name"\n'
        'FROM (\nSELECT 1\n) AS s\n'
        'WHERE t."id" = s."id"'
    )
    assert merge_staging_statement('"public"."a"', 'stage', ['x', 'y']) == (
        'INSERT INTO "public"."a" ("x", "y")\nSELECT "x", "y" FROM "stage"'
    )


@pytest.mark.unit
def test_copy_statement_options():
    """
    Test COPY options for CSV with a NULL marker and FORCE_NULL.
    """
    sql = copy_from_stdin_statement('stage', ['a', 'b'], '\\N', force_null=['a', 'b'])

    assert sql == (
        'COPY "stage" ("a", "b") FROM STDIN WITH '
        '(FORMAT csv, NULL \'\\N\', FORCE_NULL ("a", "b"))'
    )


# ====================
# 2. EDGE CASE TESTS
# ====================

@pytest.mark.edge_case
def test_placeholder_count_mismatch_is_rejected():
    """
    Test that every placeholder must have exactly one parameter.
    """
    with pytest.raises(TranslationError):
        ParameterizedSqlFragment('a = :p0 AND b = :p1', (SqlParameter('p0', 1),))
    with pytest.raises(TranslationError):
        ParameterizedSqlFragment('a = 1', (SqlParameter('p0', 1),))


@pytest.mark.edge_case
def test_duplicate_parameter_names_are_rejected():
    """
    Test that parameter names are unique within a fragment.
    """
    with pytest.raises(TranslationError):
        ParameterizedSqlFragment('a = :p0', (SqlParameter('p0', 1), SqlParameter('p0', 2)))


@pytest.mark.edge_case
def test_combine_refuses_colliding_names():
    """
    Test that un-namespaced fragments cannot be merged.
    """
    first = ParameterizedSqlFragment('a = :p0', (SqlParameter('p0', 1),))
    second = ParameterizedSqlFragment('b = :p0', (SqlParameter('p0', 2),))

    with pytest.raises(TranslationError):
        combine([first, second])


@pytest.mark.edge_case
def test_casts_are_not_placeholders():
    """
    Test that PostgreSQL :: casts are not mistaken for placeholders.
    """
    assert find_placeholders("SELECT x::regclass::text, :p0") == ('p0',)


@pytest.mark.edge_case
def test_identifier_quoting_doubles_quotes():
    """
    Test that embedded double quotes are escaped in identifiers.
    """
    assert quote_identifier('we"ird') == '"we""ird"'
    assert qualified_table_name(None, 'order') == '"order"'
