"""
============================
Typed query builder.
============================

A ``Query`` is the queryable form callers hand to the bulk operations:
a root entity plus joins, filters, grouping, ordering, a row limit and an
optional wrapper projection. Every clause is a lambda over entity proxies
(one proxy per source, in join order) and is rendered through the
expression translator, so a query never contains inlined values.

Query Builders:
- Query: immutable, chainable query description
- render_query: render a Query into one ParameterizedSqlFragment

Metadata Query Functions:
- check_table_exists_sql: Check whether a table (or temp table) exists
- referencing_tables_sql: List foreign keys that point at a table
- identity_columns_sql: List identity/serial columns of a table
- count_rows_sql: Count rows, optionally filtered

Usage:
    from sql.query_builder import Query, render_query

    query = (
        Query(Order)
        .join(Customer, lambda o, c: o.customer_id == c.id)
        .where(lambda o, c: c.is_active & (o.total > 100))
        .group_by(lambda o, c: c.id)
        .select(CustomerTotal, lambda o, c: {'customer_id': c.id, 'total': o.total.sum()})
    )
    fragment = render_query(query, cache, binding=bind_wrapper(CustomerTotal, target))
"""

import dataclasses
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.types import Integer, String

from core.exceptions import ProjectionShapeError, TranslationError
from models.mappings import TableMapping
from sql.ddl import quote_identifier
from sql.expressions import EntityRef, Logical, Node, build_expression, coerce
from sql.fragments import ParameterizedSqlFragment, SqlParameter, combine
from sql.translator import ExpressionTranslator, TranslationScope, WrapperBinding

JOIN_KINDS = ('INNER', 'LEFT', 'RIGHT', 'FULL')


@dataclass(frozen=True)
class JoinClause:
    """One joined source.

    Attributes:
        entity: Joined mapped class
        on: Lambda over all sources so far (including this one)
        kind: INNER, LEFT, RIGHT or FULL
    """

    entity: type
    on: Callable
    kind: str = 'INNER'


@dataclass(frozen=True)
class Query:
    """Immutable description of a typed query.

    Each builder method returns a new Query.

    Example:
        >>> q = Query(Product).where(lambda p: p.price > 10).order_by(lambda p: p.name)
    """

    entity: type
    joins: Tuple[JoinClause, ...] = ()
    filters: Tuple[Callable, ...] = ()
    grouping: Tuple[Callable, ...] = ()
    having_filters: Tuple[Callable, ...] = ()
    ordering: Tuple[Tuple[Callable, bool], ...] = ()
    row_limit: Optional[int] = None
    row_offset: Optional[int] = None
    is_distinct: bool = False
    projection: Optional[Tuple[type, Callable]] = None

    def join(self, entity: type, on: Callable, kind: str = 'INNER') -> 'Query':
        kind = kind.upper()
        if kind not in JOIN_KINDS:
            raise TranslationError(f"Unsupported join kind '{kind}', expected one of {JOIN_KINDS}")
        return dataclasses.replace(self, joins=self.joins + (JoinClause(entity, on, kind),))

    def where(self, predicate: Callable) -> 'Query':
        return dataclasses.replace(self, filters=self.filters + (predicate,))

    def group_by(self, keys: Callable) -> 'Query':
        return dataclasses.replace(self, grouping=self.grouping + (keys,))

    def having(self, predicate: Callable) -> 'Query':
        return dataclasses.replace(self, having_filters=self.having_filters + (predicate,))

    def order_by(self, key: Callable, descending: bool = False) -> 'Query':
        return dataclasses.replace(self, ordering=self.ordering + ((key, descending),))

    def limit(self, count: int) -> 'Query':
        if count < 0:
            raise TranslationError(f"LIMIT must not be negative, got {count}")
        return dataclasses.replace(self, row_limit=count)

    def offset(self, count: int) -> 'Query':
        if count < 0:
            raise TranslationError(f"OFFSET must not be negative, got {count}")
        return dataclasses.replace(self, row_offset=count)

    def distinct(self) -> 'Query':
        return dataclasses.replace(self, is_distinct=True)

    def select(self, wrapper: type, values: Callable) -> 'Query':
        """Project each row into ``wrapper``.

        ``values`` returns either a ``{field: expression}`` dict or a
        wrapper instance built from expressions.
        """
        return dataclasses.replace(self, projection=(wrapper, values))

    @property
    def entities(self) -> List[type]:
        return [self.entity] + [join.entity for join in self.joins]

    @property
    def has_filter(self) -> bool:
        """True when the query cannot return every row of its root table."""
        restricting_join = any(join.kind in ('INNER', 'RIGHT') for join in self.joins)
        return bool(self.filters or self.having_filters or restricting_join or self.row_limit is not None)

    def refs(self) -> List[EntityRef]:
        return [EntityRef(entity, f"t{index}") for index, entity in enumerate(self.entities)]


def table_lookup(resolver: Any) -> Callable[[type], TableMapping]:
    if hasattr(resolver, 'table_for'):
        return resolver.table_for
    if isinstance(resolver, Mapping):
        return lambda entity: resolver[entity]
    if callable(resolver):
        return resolver
    raise TypeError(f"Cannot resolve table mappings from {resolver!r}")


def projection_values(wrapper: type, result: Any) -> Dict[str, Any]:
    """Normalise what a select() lambda returned into ``{field: value}``.

    Raises:
        ProjectionShapeError: Positional results (tuples, lists) or the
            wrong wrapper type
    """
    if isinstance(result, Mapping):
        return dict(result)
    if isinstance(result, wrapper) and dataclasses.is_dataclass(result):
        return {f.name: getattr(result, f.name) for f in dataclasses.fields(result)}
    if isinstance(result, (tuple, list)):
        raise ProjectionShapeError(
            f"Projection into {wrapper.__name__} returned a {type(result).__name__}; "
            "return a dict keyed by field name or a wrapper instance so columns bind by name"
        )
    raise ProjectionShapeError(
        f"Projection into {wrapper.__name__} returned {type(result).__name__}"
    )


def _as_nodes(result: Any) -> List[Node]:
    if isinstance(result, (tuple, list)):
        return [coerce(item) for item in result]
    return [coerce(result)]


def render_query(
    query: Query,
    resolver: Any,
    translator: Optional[ExpressionTranslator] = None,
    binding: Optional[WrapperBinding] = None
) -> ParameterizedSqlFragment:
    """Render a Query to a single parameterized SELECT.

    Args:
        query: Query to render
        resolver: MetadataCache, ContextTableMappings or entity -> TableMapping callable
        translator: Translator to use (a new one by default)
        binding: Validated wrapper binding; when given the projection is
            checked against it and each item is aliased with its target column

    Returns:
        ParameterizedSqlFragment with placeholders namespaced per clause

    Raises:
        TranslationError: Any clause has no SQL translation
        ProjectionShapeError: Projection does not match ``binding``
    """
    translator = translator or ExpressionTranslator()
    lookup = table_lookup(resolver)
    refs = query.refs()
    sources = {ref._alias: lookup(ref._entity) for ref in refs}
    scope = TranslationScope(sources=sources, qualify=True)
    root = sources['t0']

    parts: List[ParameterizedSqlFragment] = []

    select_keyword = "SELECT DISTINCT" if query.is_distinct else "SELECT"
    if query.projection is not None:
        wrapper, values_fn = query.projection
        if binding is not None and binding.wrapper is not wrapper:
            raise ProjectionShapeError(
                f"Query projects into {wrapper.__name__}, expected {binding.wrapper.__name__}"
            )
        values = projection_values(wrapper, values_fn(*refs))
        if binding is not None:
            select_list = translator.translate_projection(binding, values, scope)
        else:
            select_list = _plain_projection(translator, values, scope)
    else:
        if root.is_keyless:
            raise TranslationError(
                f"{root.entity.__name__} has no primary key to select; add a projection"
            )
        select_list = ParameterizedSqlFragment(", ".join(
            f"t0.{quote_identifier(col.name)}" for col in root.primary_key
        ))
    parts.append(select_list.namespaced('s').wrap(select_keyword + " "))

    parts.append(ParameterizedSqlFragment(f"FROM {root.qualified_name} AS t0"))

    for index, join in enumerate(query.joins, start=1):
        mapping = sources[f"t{index}"]
        on_fragment = translator.translate_predicate(
            build_expression(join.on, *refs[:index + 1]), scope
        )
        parts.append(on_fragment.namespaced(f"j{index}").wrap(
            f"{join.kind} JOIN {mapping.qualified_name} AS t{index} ON "
        ))

    if query.filters:
        nodes = [build_expression(fn, *refs) for fn in query.filters]
        where = translator.translate_predicate(_conjunction(nodes), scope)
        parts.append(where.namespaced('w').wrap("WHERE "))

    if query.grouping:
        items = []
        for fn in query.grouping:
            items.extend(_as_nodes(fn(*refs)))
        fragments = [
            translator.translate_value(item, scope).namespaced(f"g{index}")
            for index, item in enumerate(items)
        ]
        parts.append(combine(fragments, ", ").wrap("GROUP BY "))

    if query.having_filters:
        nodes = [build_expression(fn, *refs) for fn in query.having_filters]
        having = translator.translate_predicate(_conjunction(nodes), scope)
        parts.append(having.namespaced('h').wrap("HAVING "))

    if query.ordering:
        fragments = []
        for index, (fn, descending) in enumerate(query.ordering):
            item = translator.translate_value(coerce(fn(*refs)), scope).namespaced(f"o{index}")
            fragments.append(item.wrap(suffix=" DESC") if descending else item)
        parts.append(combine(fragments, ", ").wrap("ORDER BY "))

    if query.row_limit is not None:
        parts.append(ParameterizedSqlFragment(
            "LIMIT :q_limit", (SqlParameter('q_limit', query.row_limit, Integer()),)
        ))
    if query.row_offset is not None:
        parts.append(ParameterizedSqlFragment(
            "OFFSET :q_offset", (SqlParameter('q_offset', query.row_offset, Integer()),)
        ))

    return combine(parts, "\n")


def _conjunction(nodes: List[Node]) -> Node:
    result = nodes[0]
    for node in nodes[1:]:
        result = Logical.of('AND', result, node)
    return result


def _plain_projection(
    translator: ExpressionTranslator,
    values: Mapping[str, Any],
    scope: TranslationScope
) -> ParameterizedSqlFragment:
    fragments = []
    for index, (name, value) in enumerate(values.items()):
        item = translator.translate_value(coerce(value), scope).namespaced(f"c{index}")
        fragments.append(item.wrap(suffix=" AS " + quote_identifier(name)))
    return combine(fragments, ", ")


def check_table_exists_sql(table_name: str, schema_name: Optional[str] = None) -> ParameterizedSqlFragment:
    """
    Generate SQL returning whether a table exists.

    Temporary tables resolve without a schema because ``pg_temp`` is on
    the search path.

    Args:
        table_name: Table name
        schema_name: Optional schema name

    Returns:
        Fragment returning one boolean column ``table_exists``
    """
    qualified = quote_identifier(table_name)
    if schema_name:
        qualified = f"{quote_identifier(schema_name)}.{qualified}"
    return ParameterizedSqlFragment(
        "SELECT to_regclass(:relation) IS NOT NULL AS table_exists",
        (SqlParameter('relation', qualified, String()),)
    )


def referencing_tables_sql(schema_name: str, table_name: str) -> ParameterizedSqlFragment:
    """
    Generate SQL listing foreign keys in other tables that reference a table.

    Args:
        schema_name: Referenced table's schema
        table_name: Referenced table's name

    Returns:
        Fragment returning ``referencing_table`` and ``constraint_name`` rows
    """
    return ParameterizedSqlFragment(
        """SELECT
    con.conrelid::regclass::text AS referencing_table,
    con.conname AS constraint_name
FROM pg_constraint con
WHERE con.contype = 'f'
  AND con.confrelid = to_regclass(:relation)
  AND con.conrelid <> con.confrelid
ORDER BY 1, 2""",
        (SqlParameter('relation', f"{quote_identifier(schema_name)}.{quote_identifier(table_name)}", String()),)
    )


def identity_columns_sql(schema_name: str, table_name: str) -> ParameterizedSqlFragment:
    """
    Generate SQL listing columns backed by a sequence (identity or serial).

    Returns:
        Fragment returning ``column_name`` rows
    """
    return ParameterizedSqlFragment(
        """SELECT a.attname AS column_name
FROM pg_attribute a
WHERE a.attrelid = to_regclass(:relation)
  AND a.attnum > 0
  AND NOT a.attisdropped
  AND pg_get_serial_sequence(:relation_text, a.attname) IS NOT NULL
ORDER BY a.attnum""",
        (
            SqlParameter('relation', f"{quote_identifier(schema_name)}.{quote_identifier(table_name)}", String()),
            SqlParameter('relation_text', f"{quote_identifier(schema_name)}.{quote_identifier(table_name)}", String()),
        )
    )


def count_rows_sql(
    qualified_name: str,
    predicate: Optional[ParameterizedSqlFragment] = None
) -> ParameterizedSqlFragment:
    """
    Generate SELECT count(*) for a table, optionally filtered.

    Args:
        qualified_name: Quoted, qualified table name
        predicate: Translated WHERE body

    Returns:
        Fragment returning one ``row_count`` column
    """
    base = f"SELECT count(*) AS row_count FROM {qualified_name}"
    if predicate is None:
        return ParameterizedSqlFragment(base)
    return predicate.wrap(base + "\nWHERE ")
