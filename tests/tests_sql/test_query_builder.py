"""
=====================================================
Pytest suite for sql/query_builder.py
=====================================================

Sections:
---------
1. Unit tests - Query building and rendering
2. Edge case tests - Invalid clauses and projections
3. Smoke tests - Catalog query fragments

Available markers:
------------------
unit, edge_case, smoke

How to Execute:
---------------
All tests:          pytest tests/tests_sql/test_query_builder.py -v
"""

import pytest

from core.exceptions import ProjectionShapeError, TranslationError
from sql.query_builder import (
    Query,
    check_table_exists_sql,
    count_rows_sql,
    identity_columns_sql,
    referencing_tables_sql,
    render_query,
)
from sql.translator import INSERT, bind_wrapper
from sample_models import (
    ArchiveRow,
    ArchiveRowRenamed,
    AuditEntry,
    Category,
    CategoryCount,
    Product,
    ProductArchive,
)


# ===============
# 1. UNIT TESTS
# ===============

@pytest.mark.unit
def test_query_builder_is_immutable():
    """
    Test that every builder call returns a new Query.
    """
    base = Query(Product)
    filtered = base.where(lambda p: p.price > 1)

    assert base.filters == ()
    assert len(filtered.filters) == 1
    assert filtered is not base


@pytest.mark.unit
def test_render_selects_primary_key(metadata_cache):
    """
    Test that a query without projection selects the root's key.
    """
    fragment = render_query(Query(Product).where(lambda p: p.price < 5), metadata_cache)

    assert fragment.text == (
        'SELECT t0."id"\n'
        'FROM "public"."products" AS t0\n'
        'WHERE t0."price" < :w_p0'
    )
    assert fragment.values == {'w_p0': 5}


@pytest.mark.unit
def test_render_join(metadata_cache):
    """
    Test that joined sources get their own alias and ON clause.
    """
    query = (
        Query(Product)
        .join(Category, lambda p, c: p.category_id == c.id)
        .where(lambda p, c: c.name == 'Tools')
    )

    assert render_query(query, metadata_cache).text == (
        'SELECT t0."id"\n'
        'FROM "public"."products" AS t0\n'
        'INNER JOIN "public"."categories" AS t1 ON t0."category_id" = t1."id"\n'
        'WHERE t1."name" = :w_p0'
    )


@pytest.mark.unit
def test_render_grouping_ordering_and_paging(metadata_cache):
    """
    Test GROUP BY, HAVING, ORDER BY, LIMIT and OFFSET rendering.
    """
    query = (
        Query(Product)
        .group_by(lambda p: p.category_id)
        .having(lambda p: p.id.count() > 2)
        .order_by(lambda p: p.category_id, descending=True)
        .limit(10)
        .offset(5)
        .select(CategoryCount, lambda p: {'category_id': p.category_id, 'total': p.id.count()})
    )

    fragment = render_query(query, metadata_cache)

    assert fragment.text == (
        'SELECT t0."category_id" AS "category_id", count(t0."id") AS "total"\n'
        'FROM "public"."products" AS t0\n'
        'GROUP BY t0."category_id"\n'
        'HAVING count(t0."id") > :h_p0\n'
        'ORDER BY t0."category_id" DESC\n'
        'LIMIT :q_limit\n'
        'OFFSET :q_offset'
    )
    assert fragment.values == {'h_p0': 2, 'q_limit': 10, 'q_offset': 5}


@pytest.mark.unit
def test_multiple_where_calls_are_conjoined(metadata_cache):
    """
    Test that repeated where() calls AND together.
    """
    query = Query(Product).where(lambda p: p.price > 1).where(lambda p: p.is_active)

    assert render_query(query, metadata_cache).text.endswith(
        'WHERE t0."price" > :w_p0 AND t0."is_active"'
    )


@pytest.mark.unit
def test_render_distinct(metadata_cache):
    """
    Test SELECT DISTINCT rendering.
    """
    assert render_query(Query(Product).distinct(), metadata_cache).text.startswith('SELECT DISTINCT t0."id"')


@pytest.mark.unit
def test_render_bound_projection(metadata_cache):
    """
    Test that a bound projection aliases items with target column names.
    """
    query = Query(Product).select(
        ArchiveRowRenamed, lambda p: {'id': p.id, 'title': p.name, 'price': p.price}
    )
    binding = bind_wrapper(ArchiveRowRenamed, metadata_cache.table_for(ProductArchive), INSERT)

    assert render_query(query, metadata_cache, binding=binding).text.startswith(
        'SELECT t0."id" AS "id",\n    t0."name" AS "name",\n    t0."price" AS "price"'
    )


@pytest.mark.unit
def test_projection_may_return_wrapper_instance(metadata_cache):
    """
    Test that select() may build the wrapper itself.
    """
    query = Query(Product).select(
        ArchiveRow, lambda p: ArchiveRow(id=p.id, name=p.name, price=p.price)
    )
    binding = bind_wrapper(ArchiveRow, metadata_cache.table_for(ProductArchive), INSERT)

    assert 'AS "price"' in render_query(query, metadata_cache, binding=binding).text


@pytest.mark.unit
def test_projection_names_with_braces(metadata_cache):
    """
    Test that braces in projection names are quoted, not interpreted.
    """
    query = Query(Product).select(CategoryCount, lambda p: {'{total}': p.id, 'a}{b': p.price})

    assert render_query(query, metadata_cache).text.startswith(
        'SELECT t0."id" AS "{total}", t0."price" AS "a}{b"\n'
    )


@pytest.mark.unit
def test_has_filter():
    """
    Test which clauses count as restricting the root table.
    """
    assert Query(Product).has_filter is False
    assert Query(Product).where(lambda p: p.is_active).has_filter is True
    assert Query(Product).limit(5).has_filter is True
    assert Query(Product).join(Category, lambda p, c: p.category_id == c.id).has_filter is True
    assert Query(Product).join(Category, lambda p, c: p.category_id == c.id, 'left').has_filter is False


@pytest.mark.unit
def test_resolver_may_be_context_mappings(metadata_cache):
    """
    Test that render_query accepts a context's mapping table as resolver.
    """
    from sample_models import Base

    fragment = render_query(Query(Category).limit(1), metadata_cache.get_mappings(Base))

    assert fragment.text.startswith('SELECT t0."id"\nFROM "public"."categories" AS t0')


# ====================
# 2. EDGE CASE TESTS
# ====================

@pytest.mark.edge_case
def test_negative_limit_and_offset():
    """
    Test that negative paging values are rejected.
    """
    with pytest.raises(TranslationError):
        Query(Product).limit(-1)
    with pytest.raises(TranslationError):
        Query(Product).offset(-1)


@pytest.mark.edge_case
def test_unknown_join_kind():
    """
    Test that only INNER/LEFT/RIGHT/FULL joins are accepted.
    """
    with pytest.raises(TranslationError):
        Query(Product).join(Category, lambda p, c: p.category_id == c.id, 'cross')


@pytest.mark.edge_case
def test_positional_projection_is_rejected(metadata_cache):
    """
    Test that tuple projections cannot bind by position.
    """
    query = Query(Product).select(ArchiveRow, lambda p: (p.id, p.name, p.price))

    with pytest.raises(ProjectionShapeError):
        render_query(query, metadata_cache)


@pytest.mark.edge_case
def test_projection_wrapper_must_match_binding(metadata_cache):
    """
    Test that the rendered projection must use the bound wrapper.
    """
    query = Query(Product).select(ArchiveRow, lambda p: {'id': p.id, 'name': p.name, 'price': p.price})
    binding = bind_wrapper(ArchiveRowRenamed, metadata_cache.table_for(ProductArchive), INSERT)

    with pytest.raises(ProjectionShapeError):
        render_query(query, metadata_cache, binding=binding)


@pytest.mark.edge_case
def test_projection_missing_field(metadata_cache):
    """
    Test that a projection leaving a wrapper field unset is rejected.
    """
    query = Query(Product).select(ArchiveRow, lambda p: {'id': p.id, 'name': p.name})
    binding = bind_wrapper(ArchiveRow, metadata_cache.table_for(ProductArchive), INSERT)

    with pytest.raises(ProjectionShapeError):
        render_query(query, metadata_cache, binding=binding)


@pytest.mark.edge_case
def test_keyless_root_needs_projection(metadata_cache):
    """
    Test that a keyless root has nothing to select by default.
    """
    with pytest.raises(TranslationError):
        render_query(Query(AuditEntry).where(lambda a: a.event == 'x'), metadata_cache)


# ==================
# 3. SMOKE TESTS
# ==================

@pytest.mark.smoke
def test_catalog_fragments():
    """
    Test the catalog query fragments carry their relation as a parameter.
    """
    assert check_table_exists_sql('_stage_products_1_1').values == {'relation': '"_stage_products_1_1"'}
    assert check_table_exists_sql('products', 'public').values == {'relation': '"public"."products"'}
    assert referencing_tables_sql('public', 'categories').values == {'relation': '"public"."categories"'}
    assert identity_columns_sql('public', 'products').parameter_names == ('relation', 'relation_text')


@pytest.mark.smoke
def test_count_rows_sql():
    """
    Test count(*) with and without a predicate.
    """
    assert count_rows_sql('"public"."products"').text == 'SELECT count(*) AS row_count FROM "public"."products"'
