"""
=====================================
Bulk statement composition.
=====================================

Fuses translated fragments with the DML/DDL templates into the statements
one bulk operation executes. Composition is pure: it needs table metadata
and a translator, never a connection, and every failure is raised here,
before anything reaches the database.

Modes:
    DELETE                      DELETE ... WHERE <predicate> | (<pk>) IN (<query>)
    UPDATE                      UPDATE ... SET <constants> WHERE <predicate> | (<pk>) IN (<query>)
    SELECT_AND_INSERT           INSERT INTO ... (<cols>) <query with projection>
    SELECT_AND_UPDATE           UPDATE ... AS t SET ... FROM (<query>) AS s WHERE t.pk = s.pk
    TRUNCATE                    TRUNCATE TABLE ... RESTART IDENTITY
    TRUNCATE_WITH_FOREIGN_KEYS  DELETE FROM ... + identity reset per identity column

Placeholder namespaces: ``w_`` predicate, ``s_`` assignments, ``q_`` source query.

Example:
    >>> composer = BulkStatementComposer(cache)
    >>> composed = composer.delete(Product, predicate=lambda p: ~p.is_active)
    >>> print(composed.primary.text)
    DELETE FROM "public"."products"
    WHERE NOT "is_active"
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, List, Mapping, Optional, Tuple, Union

from core.exceptions import (
    ConfigurationError,
    ForeignKeyConstraintError,
    MissingPredicateError,
    ProjectionShapeError,
    TranslationError,
)
from core.logger import get_logger, log_sql
from models.mappings import TableMapping
from sql.ddl import reset_identity_sql, truncate_table
from sql.dml import (
    delete_all_statement,
    delete_by_key_statement,
    delete_statement,
    insert_select_statement,
    update_by_key_statement,
    update_from_statement,
    update_statement,
)
from sql.expressions import EntityRef, Logical, Node, WrapperRef, build_expression
from sql.fragments import ParameterizedSqlFragment, combine, literal_sql
from sql.query_builder import Query, render_query, table_lookup
from sql.translator import (
    INSERT,
    UPDATE,
    ExpressionTranslator,
    TranslationScope,
    WrapperBinding,
    bind_wrapper,
)

logger = get_logger(__name__)

Predicate = Union[Callable, Node]
Assignments = Union[Mapping[str, Any], Callable]


class OperationMode(Enum):
    DELETE = 'delete'
    UPDATE = 'update'
    SELECT_AND_INSERT = 'select_and_insert'
    SELECT_AND_UPDATE = 'select_and_update'
    TRUNCATE = 'truncate'
    TRUNCATE_WITH_FOREIGN_KEYS = 'truncate_with_foreign_keys'


@dataclass(frozen=True)
class BulkOperationPlan:
    """Everything needed to compose one bulk operation.

    Attributes:
        target: Target table mapping
        mode: Operation mode
        predicate: Lambda over the target row (or a prebuilt node)
        source: Typed query (queryable form, or select-and-X source)
        assignments: ``{attribute: value}`` or a lambda returning one
    """

    target: TableMapping
    mode: OperationMode
    predicate: Optional[Predicate] = None
    source: Optional[Query] = None
    assignments: Optional[Assignments] = None


@dataclass(frozen=True)
class ComposedStatement:
    """The statement(s) for one plan, executed in order."""

    plan: BulkOperationPlan
    statements: Tuple[ParameterizedSqlFragment, ...]

    @property
    def primary(self) -> ParameterizedSqlFragment:
        return self.statements[0]

    def __iter__(self) -> Iterator[ParameterizedSqlFragment]:
        return iter(self.statements)

    def __len__(self) -> int:
        return len(self.statements)


def _statement(sql_text: str, *fragments: ParameterizedSqlFragment) -> ParameterizedSqlFragment:
    """Attach the (already namespaced) parameters of ``fragments`` to ``sql_text``."""
    return ParameterizedSqlFragment(sql_text, combine(fragments).parameters)


class BulkStatementComposer:
    """Compose BulkOperationPlans into executable statements.

    Args:
        resolver: MetadataCache (frozen), ContextTableMappings or an
            entity -> TableMapping callable
        translator: Expression translator (a new one by default)
    """

    def __init__(self, resolver: Any, translator: Optional[ExpressionTranslator] = None):
        self.resolver = resolver
        self.translator = translator or ExpressionTranslator()
        self._lookup = table_lookup(resolver)
        self._composers = {
            OperationMode.DELETE: self._compose_delete,
            OperationMode.UPDATE: self._compose_update,
            OperationMode.SELECT_AND_INSERT: self._compose_select_and_insert,
            OperationMode.SELECT_AND_UPDATE: self._compose_select_and_update,
            OperationMode.TRUNCATE: self._compose_truncate,
            OperationMode.TRUNCATE_WITH_FOREIGN_KEYS: self._compose_truncate_with_foreign_keys,
        }

    def table_for(self, entity: type) -> TableMapping:
        return self._lookup(entity)

    def compose(self, plan: BulkOperationPlan) -> ComposedStatement:
        """Compose a plan into statements.

        Raises:
            ConfigurationError: Keyless target for a key-based mode
            MissingPredicateError: Delete/update without a predicate or filter
            ForeignKeyConstraintError: Plain truncate on a referenced table
            TranslationError: Untranslatable predicate, query or assignment
            ProjectionShapeError: Wrapper does not match the target columns
        """
        statements = self._composers[plan.mode](plan)
        composed = ComposedStatement(plan=plan, statements=tuple(statements))
        for statement in composed:
            log_sql(
                logger,
                f"Composed {plan.mode.value} for {plan.target.qualified_name}",
                statement.text,
                statement.parameter_names
            )
        return composed

    # Convenience entry points

    def delete(self, entity: type, predicate: Optional[Predicate] = None,
               query: Optional[Query] = None) -> ComposedStatement:
        plan = BulkOperationPlan(self.table_for(entity), OperationMode.DELETE, predicate=predicate, source=query)
        return self.compose(plan)

    def update(self, entity: type, assignments: Assignments, predicate: Optional[Predicate] = None,
               query: Optional[Query] = None) -> ComposedStatement:
        plan = BulkOperationPlan(
            self.table_for(entity), OperationMode.UPDATE,
            predicate=predicate, source=query, assignments=assignments
        )
        return self.compose(plan)

    def select_and_insert(self, entity: type, query: Query) -> ComposedStatement:
        return self.compose(BulkOperationPlan(self.table_for(entity), OperationMode.SELECT_AND_INSERT, source=query))

    def select_and_update(self, entity: type, query: Query) -> ComposedStatement:
        return self.compose(BulkOperationPlan(self.table_for(entity), OperationMode.SELECT_AND_UPDATE, source=query))

    def truncate(self, entity: type) -> ComposedStatement:
        return self.compose(BulkOperationPlan(self.table_for(entity), OperationMode.TRUNCATE))

    def truncate_with_foreign_keys(self, entity: type) -> ComposedStatement:
        return self.compose(BulkOperationPlan(self.table_for(entity), OperationMode.TRUNCATE_WITH_FOREIGN_KEYS))

    # Shared pieces

    def _require_key(self, target: TableMapping, mode: OperationMode):
        if target.is_keyless:
            raise ConfigurationError(
                f"{target.entity.__name__} is keyless; {mode.value} needs a primary key"
            )

    def predicate_fragment(self, target: TableMapping, predicate: Predicate) -> ParameterizedSqlFragment:
        if isinstance(predicate, Node):
            node = predicate
        else:
            node = build_expression(predicate, EntityRef(target.entity, 't0'))
        scope = TranslationScope.single(target)
        return self.translator.translate_predicate(node, scope).namespaced('w')

    def _source_fragment(
        self,
        target: TableMapping,
        query: Query,
        binding: Optional[WrapperBinding] = None
    ) -> ParameterizedSqlFragment:
        if not (issubclass(query.entity, target.entity) or issubclass(target.entity, query.entity)) \
                and binding is None:
            raise TranslationError(
                f"Query over {query.entity.__name__} cannot select keys of {target.entity.__name__}"
            )
        return render_query(query, self._lookup, self.translator, binding).namespaced('q')

    def _filter_fragment(
        self,
        plan: BulkOperationPlan
    ) -> Tuple[Optional[ParameterizedSqlFragment], Optional[ParameterizedSqlFragment]]:
        """Return (predicate, key query) for delete/update; exactly one is set."""
        target = plan.target
        if plan.predicate is not None and plan.source is not None:
            raise TranslationError("Pass either a predicate or a query, not both")
        if plan.predicate is not None:
            return self.predicate_fragment(target, plan.predicate), None
        if plan.source is not None:
            if not plan.source.has_filter:
                raise MissingPredicateError(
                    f"Query for {plan.mode.value} on {target.qualified_name} has no filter; "
                    "use truncate to empty the table"
                )
            if plan.source.projection is not None:
                raise TranslationError(
                    f"Query for {plan.mode.value} must not project; it selects the key of "
                    f"{target.entity.__name__}"
                )
            return None, self._source_fragment(target, plan.source)
        raise MissingPredicateError(
            f"{plan.mode.value} on {target.qualified_name} needs a predicate; "
            "use truncate to empty the table"
        )

    def _assignment_fragment(self, target: TableMapping, assignments: Assignments) -> ParameterizedSqlFragment:
        if callable(assignments) and not isinstance(assignments, Mapping):
            assignments = assignments(EntityRef(target.entity, 't0'))
        if not isinstance(assignments, Mapping):
            raise TranslationError(
                f"Assignments for {target.entity.__name__} must be a dict of attribute -> value"
            )
        for key in assignments:
            column = target.find_column(key)
            if column is not None and column.is_primary_key:
                raise TranslationError(f"Primary key column '{column.name}' cannot be bulk updated")
        return self.translator.translate_assignments(assignments, target).namespaced('s')

    def _projection_binding(self, plan: BulkOperationPlan, mode: str) -> WrapperBinding:
        query = plan.source
        if query is None:
            raise TranslationError(f"{plan.mode.value} needs a source query")
        if query.projection is None:
            raise ProjectionShapeError(
                f"{plan.mode.value} into {plan.target.entity.__name__} needs a query ending in select(Wrapper, ...)"
            )
        wrapper, _ = query.projection
        return bind_wrapper(wrapper, plan.target, mode)

    # Per-mode composition

    def _compose_delete(self, plan: BulkOperationPlan) -> List[ParameterizedSqlFragment]:
        target = plan.target
        self._require_key(target, plan.mode)
        predicate, key_query = self._filter_fragment(plan)
        if predicate is not None:
            return [_statement(delete_statement(target.qualified_name, predicate.text), predicate)]
        key_columns = [col.name for col in target.primary_key]
        sql_text = delete_by_key_statement(target.qualified_name, key_columns, key_query.text)
        return [_statement(sql_text, key_query)]

    def _compose_update(self, plan: BulkOperationPlan) -> List[ParameterizedSqlFragment]:
        target = plan.target
        self._require_key(target, plan.mode)
        if plan.assignments is None:
            raise TranslationError(f"Update of {target.qualified_name} has no assignments")
        assignments = self._assignment_fragment(target, plan.assignments)
        predicate, key_query = self._filter_fragment(plan)
        if predicate is not None:
            sql_text = update_statement(target.qualified_name, assignments.text, predicate.text)
            return [_statement(sql_text, predicate, assignments)]
        key_columns = [col.name for col in target.primary_key]
        sql_text = update_by_key_statement(target.qualified_name, assignments.text, key_columns, key_query.text)
        return [_statement(sql_text, key_query, assignments)]

    def _compose_select_and_insert(self, plan: BulkOperationPlan) -> List[ParameterizedSqlFragment]:
        target = plan.target
        binding = self._projection_binding(plan, INSERT)
        source = self._source_fragment(target, plan.source, binding)
        sql_text = insert_select_statement(target.qualified_name, binding.columns, source.text)
        return [_statement(sql_text, source)]

    def _compose_select_and_update(self, plan: BulkOperationPlan) -> List[ParameterizedSqlFragment]:
        target = plan.target
        self._require_key(target, plan.mode)
        binding = self._projection_binding(plan, UPDATE)
        if not binding.non_key_columns:
            raise ProjectionShapeError(
                f"{binding.wrapper.__name__} binds only key columns; nothing to update"
            )
        source = self._source_fragment(target, plan.source, binding)

        field_by_column = {column: field_name for field_name, column in binding.fields}
        target_ref = EntityRef(target.entity, 't')
        source_ref = WrapperRef(binding.wrapper, 's')
        join_node = None
        for key in target.primary_key:
            condition = getattr(target_ref, key.attribute) == getattr(source_ref, field_by_column[key.name])
            join_node = condition if join_node is None else Logical.of('AND', join_node, condition)
        scope = TranslationScope(sources={'t': target}, qualify=True, wrappers={'s': binding})
        join = self.translator.translate_predicate(join_node, scope).namespaced('k')

        sql_text = update_from_statement(
            target.qualified_name, 't', binding.non_key_columns, 's', source.text, join.text
        )
        return [_statement(sql_text, source, join)]

    def _compose_truncate(self, plan: BulkOperationPlan) -> List[ParameterizedSqlFragment]:
        target = plan.target
        if target.is_referenced:
            referencing = ', '.join(ref.table for ref in target.referenced_by)
            raise ForeignKeyConstraintError(
                f"{target.qualified_name} is referenced by {referencing}; "
                "use truncate_with_foreign_keys"
            )
        return [literal_sql(truncate_table(target.qualified_name, restart_identity=True))]

    def _compose_truncate_with_foreign_keys(self, plan: BulkOperationPlan) -> List[ParameterizedSqlFragment]:
        target = plan.target
        statements = [literal_sql(delete_all_statement(target.qualified_name))]
        for column in target.identity_columns:
            statements.append(literal_sql(reset_identity_sql(target.schema, target.table, column.name)))
        return statements
