"""
=====================================
Expression tree to SQL translation.
=====================================

Turns the trees built in sql.expressions into parameterized SQL
fragments:

- predicates (WHERE / HAVING / JOIN ... ON)
- scalar values (GROUP BY, ORDER BY)
- wrapper projections (SELECT list for select-and-insert/update)
- constant assignments (SET list for bulk update)

Each node variant has one translation rule, a pure function of the node
and the scope. Literals always become typed placeholders (``:p0``,
``:p1`` ...); nothing is inlined. Anything without a SQL equivalent
raises TranslationError naming the node, because evaluating in memory
would defeat the point of a server-side bulk operation.

Wrapper projections bind fields to target columns by name (or by
``field(metadata={'column': ...})``). The binding is validated against
the target table before any SQL is produced; declaration order never
decides which column a value lands in.
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.types import Integer, String, TypeEngine

from core.exceptions import ProjectionShapeError, TranslationError
from models.mappings import ColumnMapping, TableMapping
from sql.ddl import quote_identifier
from sql.expressions import (
    Arithmetic,
    AttributeAccess,
    Comparison,
    EntityRef,
    Literal,
    Logical,
    Member,
    MethodCall,
    Node,
    Not,
    WrapperRef,
    coerce,
)
from sql.fragments import ParameterizedSqlFragment, SqlParameter

# Binding strength, higher binds tighter
PREC_OR = 1
PREC_AND = 2
PREC_NOT = 3
PREC_COMPARISON = 4
PREC_ADDITIVE = 5
PREC_MULTIPLICATIVE = 6
PREC_ATOM = 9

_ARITHMETIC_PREC = {
    '+': PREC_ADDITIVE,
    '-': PREC_ADDITIVE,
    '*': PREC_MULTIPLICATIVE,
    '/': PREC_MULTIPLICATIVE,
    '%': PREC_MULTIPLICATIVE,
}

_COMPARISON_OPS = {'=', '<>', '<', '<=', '>', '>='}

_LIKE_METHODS = {'startswith', 'endswith', 'contains'}
_FUNCTIONS = {'lower': 'lower', 'upper': 'upper', 'length': 'length', 'trim': 'trim'}
_AGGREGATES = {'count': 'count', 'sum': 'sum', 'avg': 'avg', 'min': 'min', 'max': 'max'}

INSERT = 'insert'
UPDATE = 'update'


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so the value matches literally."""
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


@dataclass(frozen=True)
class WrapperBinding:
    """Validated wrapper field -> target column binding.

    Attributes:
        wrapper: Wrapper (projection) type
        target: Target table mapping
        fields: (field name, column name) pairs in wrapper declaration order
    """

    wrapper: type
    target: TableMapping
    fields: Tuple[Tuple[str, str], ...]

    @property
    def columns(self) -> List[str]:
        return [column for _, column in self.fields]

    def column_for(self, field_name: str) -> str:
        for name, column in self.fields:
            if name == field_name:
                return column
        raise TranslationError(
            f"{self.wrapper.__name__} has no field '{field_name}'"
        )

    @property
    def key_columns(self) -> List[str]:
        return [col.name for col in self.target.primary_key]

    @property
    def non_key_columns(self) -> List[str]:
        keys = set(self.key_columns)
        return [column for column in self.columns if column not in keys]


def wrapper_fields(wrapper: type) -> List[Tuple[str, Optional[str]]]:
    """Read the declared (field, explicit column) pairs of a wrapper type.

    A wrapper is a dataclass, or any class with ``__bulk_columns__`` set to
    a list of field names or a ``{field: column}`` dict.
    """
    declared = getattr(wrapper, '__bulk_columns__', None)
    if isinstance(declared, Mapping):
        return [(name, column) for name, column in declared.items()]
    if declared is not None:
        return [(name, None) for name in declared]
    if dataclasses.is_dataclass(wrapper):
        return [(f.name, f.metadata.get('column')) for f in dataclasses.fields(wrapper)]
    raise ProjectionShapeError(
        f"{getattr(wrapper, '__name__', wrapper)!s} is not a dataclass and declares no __bulk_columns__"
    )


def bind_wrapper(wrapper: type, target: TableMapping, mode: str = INSERT) -> WrapperBinding:
    """Validate a wrapper type against a target table.

    For inserts the wrapper must bind exactly the insertable columns; for
    updates it must bind the primary key plus every assignable column.

    Raises:
        ProjectionShapeError: Count mismatch, unknown/duplicate/unwritable
            columns or a missing key
    """
    declared = wrapper_fields(wrapper)
    if mode == INSERT:
        expected = list(target.insertable_columns)
    elif mode == UPDATE:
        if target.is_keyless:
            raise ProjectionShapeError(
                f"{target.entity.__name__} has no primary key to match updated rows on"
            )
        expected = [col for col in target.columns if col.is_primary_key or col.is_assignable]
    else:
        raise ValueError(f"Unknown projection mode: {mode}")

    wrapper_name = wrapper.__name__
    if len(declared) != len(expected):
        raise ProjectionShapeError(
            f"{wrapper_name} declares {len(declared)} fields but {target.qualified_name} "
            f"has {len(expected)} columns to {mode}: {[col.name for col in expected]}"
        )

    expected_names = {col.name for col in expected}
    bound: List[Tuple[str, str]] = []
    used = set()
    for field_name, explicit in declared:
        column = target.find_column(explicit or field_name)
        if column is None:
            raise ProjectionShapeError(
                f"{wrapper_name}.{field_name} does not match any column of {target.qualified_name}"
            )
        if column.name not in expected_names:
            raise ProjectionShapeError(
                f"{wrapper_name}.{field_name} binds to '{column.name}', which cannot be written "
                f"by a select-and-{mode}"
            )
        if column.name in used:
            raise ProjectionShapeError(
                f"{wrapper_name}.{field_name} binds to '{column.name}' a second time"
            )
        used.add(column.name)
        bound.append((field_name, column.name))

    return WrapperBinding(wrapper=wrapper, target=target, fields=tuple(bound))


@dataclass
class TranslationScope:
    """What member access may resolve to while translating.

    Attributes:
        sources: Alias -> TableMapping for entity proxies
        qualify: Prefix columns with their alias
        wrappers: Alias -> WrapperBinding for wrapper proxies
    """

    sources: Dict[str, TableMapping]
    qualify: bool = False
    wrappers: Dict[str, WrapperBinding] = field(default_factory=dict)

    @classmethod
    def single(cls, mapping: TableMapping, alias: str = 't0', qualify: bool = False) -> 'TranslationScope':
        return cls(sources={alias: mapping}, qualify=qualify)


class _Emitter:
    """Collects parameters for one translation call."""

    def __init__(self):
        self.parameters: List[SqlParameter] = []

    def bind(self, value: Any, type_: Optional[TypeEngine]) -> str:
        name = f"p{len(self.parameters)}"
        self.parameters.append(SqlParameter(name, value, type_))
        return f":{name}"

    def fragment(self, sql_text: str) -> ParameterizedSqlFragment:
        return ParameterizedSqlFragment(sql_text, tuple(self.parameters))


class ExpressionTranslator:
    """Translate expression trees into ParameterizedSqlFragment objects."""

    def __init__(self):
        self._rules = {
            Member: self._member,
            Literal: self._literal,
            Comparison: self._comparison,
            Logical: self._logical,
            Not: self._not,
            Arithmetic: self._arithmetic,
            MethodCall: self._method_call,
            AttributeAccess: self._attribute_access,
        }

    # Public entry points

    def translate_predicate(self, expression: Node, scope: TranslationScope) -> ParameterizedSqlFragment:
        """Translate a boolean expression (WHERE / ON / HAVING body)."""
        emitter = _Emitter()
        sql_text, _ = self._visit(coerce(expression), scope, emitter, None)
        return emitter.fragment(sql_text)

    def translate_value(self, expression: Any, scope: TranslationScope) -> ParameterizedSqlFragment:
        """Translate a scalar expression (GROUP BY / ORDER BY item)."""
        return self.translate_predicate(expression, scope)

    def translate_projection(
        self,
        binding: WrapperBinding,
        values: Mapping[str, Any],
        scope: TranslationScope
    ) -> ParameterizedSqlFragment:
        """Translate wrapper field values into a SELECT list.

        Items are emitted in binding order and aliased with the bound
        target column name.

        Raises:
            ProjectionShapeError: Fields missing from, or unknown to, ``values``
        """
        wrapper_name = binding.wrapper.__name__
        declared = [name for name, _ in binding.fields]
        unknown = [name for name in values if name not in declared]
        if unknown:
            raise ProjectionShapeError(f"{wrapper_name} has no fields {unknown}")
        missing = [name for name in declared if name not in values]
        if missing:
            raise ProjectionShapeError(f"Projection leaves {wrapper_name} fields {missing} unset")

        emitter = _Emitter()
        items = []
        for field_name, column_name in binding.fields:
            column = binding.target.column_for(column_name)
            sql_text, _ = self._visit(coerce(values[field_name]), scope, emitter, column.type_)
            items.append(f"{sql_text} AS {quote_identifier(column_name)}")
        return emitter.fragment(",\n    ".join(items))

    def translate_assignments(
        self,
        assignments: Mapping[str, Any],
        mapping: TableMapping,
        scope: Optional[TranslationScope] = None
    ) -> ParameterizedSqlFragment:
        """Translate ``{attribute: value}`` into a SET list.

        Values may be constants (bound as parameters typed by the target
        column) or expressions over the same row.

        Raises:
            TranslationError: Empty assignments, unknown attribute, or a
                computed/identity target column
        """
        if not assignments:
            raise TranslationError(f"No columns to assign on {mapping.qualified_name}")

        scope = scope or TranslationScope.single(mapping)
        emitter = _Emitter()
        items = []
        seen = set()
        for key, value in assignments.items():
            column = mapping.find_column(key)
            if column is None:
                raise TranslationError(f"{mapping.entity.__name__} has no mapped column '{key}'")
            if not column.is_assignable:
                raise TranslationError(
                    f"Column '{column.name}' is computed or server-assigned and cannot be updated"
                )
            if column.name in seen:
                raise TranslationError(f"Column '{column.name}' is assigned twice")
            seen.add(column.name)
            sql_text, _ = self._visit(coerce(value), scope, emitter, column.type_)
            items.append(f"{quote_identifier(column.name)} = {sql_text}")
        return emitter.fragment(", ".join(items))

    # Dispatch

    def _visit(self, node: Node, scope, emitter, hint) -> Tuple[str, int]:
        rule = self._rules.get(type(node))
        if rule is None:
            raise TranslationError(f"Unsupported expression node {node!r}", node)
        return rule(node, scope, emitter, hint)

    def _wrapped(self, node: Node, scope, emitter, hint, min_prec: int) -> str:
        sql_text, prec = self._visit(node, scope, emitter, hint)
        if prec < min_prec:
            return f"({sql_text})"
        return sql_text

    # Type inference for parameters

    def _column_of(self, node: Node, scope) -> Optional[ColumnMapping]:
        if isinstance(node, Member) and isinstance(node.source, EntityRef):
            mapping = scope.sources.get(node.source._alias)
            if mapping is not None:
                return mapping.find_column(node.attribute)
        return None

    def _type_of(self, node: Node, scope) -> Optional[TypeEngine]:
        if isinstance(node, Member):
            if isinstance(node.source, EntityRef):
                column = self._column_of(node, scope)
                return column.type_ if column is not None else None
            if isinstance(node.source, WrapperRef):
                binding = scope.wrappers.get(node.source._alias)
                if binding is not None:
                    column = binding.target.find_column(binding.column_for(node.attribute))
                    return column.type_ if column is not None else None
            return None
        if isinstance(node, Arithmetic):
            return self._type_of(node.left, scope) or self._type_of(node.right, scope)
        if isinstance(node, MethodCall):
            if node.method in ('length', 'count', 'count_distinct'):
                return Integer()
            if node.method in ('lower', 'upper', 'trim', 'coalesce', 'min', 'max', 'sum'):
                return self._type_of(node.target, scope)
        return None

    # Rules

    def _member(self, node: Member, scope, emitter, hint):
        source = node.source
        if isinstance(source, EntityRef):
            mapping = scope.sources.get(source._alias)
            if mapping is None:
                raise TranslationError(
                    f"{source!r} is not part of this statement", node
                )
            if not issubclass(source._entity, mapping.entity) and not issubclass(mapping.entity, source._entity):
                raise TranslationError(
                    f"Alias {source._alias} is bound to {mapping.entity.__name__}, "
                    f"not {source._entity.__name__}", node
                )
            column = mapping.find_column(node.attribute)
            if column is None:
                raise TranslationError(
                    f"{mapping.entity.__name__} has no mapped column '{node.attribute}'", node
                )
            name = quote_identifier(column.name)
            if scope.qualify:
                return f"{source._alias}.{name}", PREC_ATOM
            return name, PREC_ATOM

        if isinstance(source, WrapperRef):
            binding = scope.wrappers.get(source._alias)
            if binding is None:
                raise TranslationError(f"{source!r} is not part of this statement", node)
            column_name = binding.column_for(node.attribute)
            return f"{source._alias}.{quote_identifier(column_name)}", PREC_ATOM

        raise TranslationError(f"Member access on unsupported source {source!r}", node)

    def _literal(self, node: Literal, scope, emitter, hint):
        if isinstance(node.value, (EntityRef, WrapperRef)):
            raise TranslationError(
                f"Whole-row reference {node.value!r} cannot be used as a value", node
            )
        if callable(node.value):
            raise TranslationError(f"Callable {node.value!r} cannot be bound as a value", node)
        return emitter.bind(node.value, hint), PREC_ATOM

    def _comparison(self, node: Comparison, scope, emitter, hint):
        if node.op not in _COMPARISON_OPS:
            raise TranslationError(f"Unsupported comparison operator '{node.op}'", node)

        left, right = node.left, node.right
        left_is_null = isinstance(left, Literal) and left.value is None
        right_is_null = isinstance(right, Literal) and right.value is None
        if left_is_null or right_is_null:
            if node.op not in ('=', '<>'):
                raise TranslationError(f"Cannot compare with NULL using '{node.op}'", node)
            operand = right if left_is_null else left
            sql_text = self._wrapped(operand, scope, emitter, None, PREC_COMPARISON + 1)
            keyword = 'IS NULL' if node.op == '=' else 'IS NOT NULL'
            return f"{sql_text} {keyword}", PREC_COMPARISON

        left_type = self._type_of(left, scope)
        right_type = self._type_of(right, scope)
        left_sql = self._wrapped(left, scope, emitter, right_type, PREC_COMPARISON + 1)
        right_sql = self._wrapped(right, scope, emitter, left_type, PREC_COMPARISON + 1)
        return f"{left_sql} {node.op} {right_sql}", PREC_COMPARISON

    def _logical(self, node: Logical, scope, emitter, hint):
        if node.op == 'AND':
            prec = PREC_AND
        elif node.op == 'OR':
            prec = PREC_OR
        else:
            raise TranslationError(f"Unsupported logical operator '{node.op}'", node)
        parts = [self._wrapped(operand, scope, emitter, None, prec) for operand in node.operands]
        return f" {node.op} ".join(parts), prec

    def _not(self, node: Not, scope, emitter, hint):
        sql_text = self._wrapped(node.operand, scope, emitter, None, PREC_ATOM)
        return f"NOT {sql_text}", PREC_NOT

    def _arithmetic(self, node: Arithmetic, scope, emitter, hint):
        prec = _ARITHMETIC_PREC.get(node.op)
        if prec is None:
            raise TranslationError(f"Unsupported arithmetic operator '{node.op}'", node)
        operand_hint = self._type_of(node.left, scope) or self._type_of(node.right, scope) or hint
        left_sql = self._wrapped(node.left, scope, emitter, operand_hint, prec)
        # right operand of - and / is not associative
        right_sql = self._wrapped(node.right, scope, emitter, operand_hint, prec + 1)
        return f"{left_sql} {node.op} {right_sql}", prec

    def _attribute_access(self, node: AttributeAccess, scope, emitter, hint):
        raise TranslationError(
            f"Attribute '{node.attribute}' of {node.target!r} has no SQL translation "
            "(navigation and unknown attributes are not supported)",
            node
        )

    def _method_call(self, node: MethodCall, scope, emitter, hint):
        method = node.method
        args = node.args

        def expect(count: int):
            if len(args) != count:
                raise TranslationError(
                    f"{method}() takes {count} argument(s), got {len(args)}", node
                )

        if method in _LIKE_METHODS or method in ('like', 'ilike'):
            expect(1)
            pattern = args[0]
            if not isinstance(pattern, Literal) or not isinstance(pattern.value, str):
                raise TranslationError(f"{method}() needs a string constant", node)
            if method == 'startswith':
                value = escape_like(pattern.value) + '%'
            elif method == 'endswith':
                value = '%' + escape_like(pattern.value)
            elif method == 'contains':
                value = '%' + escape_like(pattern.value) + '%'
            else:
                value = pattern.value
            target = self._wrapped(node.target, scope, emitter, None, PREC_COMPARISON + 1)
            placeholder = emitter.bind(value, String())
            keyword = 'ILIKE' if method == 'ilike' else 'LIKE'
            if method in _LIKE_METHODS:
                return f"{target} {keyword} {placeholder} ESCAPE '\\'", PREC_COMPARISON
            return f"{target} {keyword} {placeholder}", PREC_COMPARISON

        if method in ('in_', 'not_in'):
            if not args:
                return ('FALSE' if method == 'in_' else 'TRUE'), PREC_ATOM
            target_type = self._type_of(node.target, scope)
            target = self._wrapped(node.target, scope, emitter, None, PREC_COMPARISON + 1)
            items = [self._wrapped(arg, scope, emitter, target_type, PREC_COMPARISON + 1) for arg in args]
            keyword = 'IN' if method == 'in_' else 'NOT IN'
            return f"{target} {keyword} ({', '.join(items)})", PREC_COMPARISON

        if method == 'between':
            expect(2)
            target_type = self._type_of(node.target, scope)
            target = self._wrapped(node.target, scope, emitter, None, PREC_COMPARISON + 1)
            low = self._wrapped(args[0], scope, emitter, target_type, PREC_COMPARISON + 1)
            high = self._wrapped(args[1], scope, emitter, target_type, PREC_COMPARISON + 1)
            return f"{target} BETWEEN {low} AND {high}", PREC_COMPARISON

        if method in ('is_null', 'is_not_null'):
            expect(0)
            target = self._wrapped(node.target, scope, emitter, None, PREC_COMPARISON + 1)
            keyword = 'IS NULL' if method == 'is_null' else 'IS NOT NULL'
            return f"{target} {keyword}", PREC_COMPARISON

        if method in _FUNCTIONS:
            expect(0)
            target, _ = self._visit(node.target, scope, emitter, hint)
            return f"{_FUNCTIONS[method]}({target})", PREC_ATOM

        if method == 'coalesce':
            if not args:
                raise TranslationError("coalesce() needs at least one fallback", node)
            target_type = self._type_of(node.target, scope)
            target, _ = self._visit(node.target, scope, emitter, hint)
            fallbacks = [self._visit(arg, scope, emitter, target_type)[0] for arg in args]
            return f"COALESCE({target}, {', '.join(fallbacks)})", PREC_ATOM

        if method in _AGGREGATES:
            expect(0)
            target, _ = self._visit(node.target, scope, emitter, hint)
            return f"{_AGGREGATES[method]}({target})", PREC_ATOM

        if method == 'count_distinct':
            expect(0)
            target, _ = self._visit(node.target, scope, emitter, hint)
            return f"count(DISTINCT {target})", PREC_ATOM

        raise TranslationError(f"Method '{method}' has no SQL equivalent", node)
