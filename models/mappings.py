"""
===========================================================
Table metadata cache for bulk operations
===========================================================

Resolves the table/column layout of every SQLAlchemy mapped class in a
declarative context once, and hands out an immutable snapshot that any
number of sessions can read concurrently without locking.

The cache has an explicit two-phase lifecycle:
    1. Build phase: ``register(context)`` introspects each context
       (single writer, guarded by a lock).
    2. Frozen phase: ``freeze()`` is the initialization barrier. After it,
       ``get_mappings()`` and ``table_for()`` are lock-free reads of
       read-only mappings. Reads before the barrier fail with
       NotInitializedError.

Classes:
    ColumnMapping: One column of a mapped table
    ForeignKeyReference: One foreign key edge between mapped tables
    TableMapping: Table name, ordered columns and key/foreign key info
    ContextTableMappings: Read-only entity -> TableMapping map for a context
    MappingFactory: Builds ContextTableMappings from SQLAlchemy mappers
    MetadataCache: Process-wide handle with build/freeze lifecycle

Example:
    >>> from models.mappings import MetadataCache
    >>> from myapp.models import Base, Product
    >>>
    >>> cache = MetadataCache()
    >>> cache.register(Base)
    >>> cache.freeze()
    >>>
    >>> mapping = cache.table_for(Product)
    >>> print(mapping.qualified_name, [c.name for c in mapping.columns])
"""

import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import Table, inspect
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import CompileError, NoInspectionAvailable, NoReferencedTableError
from sqlalchemy.orm.exc import UnmappedColumnError
from sqlalchemy.types import TypeEngine

from core.exceptions import ConfigurationError, NotInitializedError
from core.logger import get_logger
from sql.ddl import qualified_table_name

logger = get_logger(__name__)

_PG_DIALECT = postgresql.dialect()


@dataclass(frozen=True)
class ColumnMapping:
    """One column of a mapped table.

    Attributes:
        name: Column name in the database
        attribute: Attribute key on the mapped class
        type_: SQLAlchemy type used to bind parameters for this column
        sql_type: Rendered PostgreSQL type (informational)
        nullable: Whether the column accepts NULL
        is_primary_key: Part of the primary key
        is_computed: Generated column (GENERATED ALWAYS AS ...)
        is_identity: Identity / serial column assigned by the server
        ordinal: 0-based position in the table
        has_server_default: Column has a server-side DEFAULT
        default: Python-side column default (SQLAlchemy ColumnDefault) or None
    """

    name: str
    attribute: str
    type_: TypeEngine = field(compare=False)
    sql_type: str
    nullable: bool
    is_primary_key: bool
    is_computed: bool
    is_identity: bool
    ordinal: int
    has_server_default: bool = False
    default: Any = field(default=None, compare=False, repr=False)

    @property
    def is_assignable(self) -> bool:
        """True for columns a statement may write to."""
        return not (self.is_computed or self.is_identity)


@dataclass(frozen=True)
class ForeignKeyReference:
    """A foreign key edge.

    Attributes:
        table: Qualified name of the other table
        column: Referencing column name
        referred_column: Column on the referenced table
    """

    table: str
    column: str
    referred_column: str


@dataclass(frozen=True)
class TableMapping:
    """Resolved correspondence between a mapped class and its table.

    Attributes:
        entity: Mapped class
        schema: Schema name
        table: Table name
        columns: Columns ordered by ordinal
        foreign_keys: References this table holds to other tables
        referenced_by: References other mapped tables hold to this table
        keyless: Entity explicitly declared without a primary key
    """

    entity: type
    schema: str
    table: str
    columns: Tuple[ColumnMapping, ...]
    foreign_keys: Tuple[ForeignKeyReference, ...] = ()
    referenced_by: Tuple[ForeignKeyReference, ...] = ()
    keyless: bool = False

    @property
    def qualified_name(self) -> str:
        return qualified_table_name(self.schema, self.table)

    @property
    def primary_key(self) -> Tuple[ColumnMapping, ...]:
        return tuple(col for col in self.columns if col.is_primary_key)

    @property
    def is_keyless(self) -> bool:
        return not self.primary_key

    @property
    def assignable_columns(self) -> Tuple[ColumnMapping, ...]:
        return tuple(col for col in self.columns if col.is_assignable)

    @property
    def insertable_columns(self) -> Tuple[ColumnMapping, ...]:
        """Columns carried by INSERT and the staging buffer."""
        return self.assignable_columns

    @property
    def identity_columns(self) -> Tuple[ColumnMapping, ...]:
        return tuple(col for col in self.columns if col.is_identity)

    @property
    def is_referenced(self) -> bool:
        return bool(self.referenced_by)

    def find_column(self, key: str) -> Optional[ColumnMapping]:
        """Find a column by attribute key or column name."""
        for col in self.columns:
            if col.attribute == key:
                return col
        for col in self.columns:
            if col.name == key:
                return col
        return None

    def column_for(self, key: str) -> ColumnMapping:
        """Get a column by attribute key or column name.

        Raises:
            KeyError: If the entity has no such attribute or column
        """
        col = self.find_column(key)
        if col is None:
            raise KeyError(f"{self.entity.__name__} has no mapped column '{key}'")
        return col


class ContextTableMappings(Mapping):
    """Read-only entity -> TableMapping map for one declarative context.

    Attributes:
        context: The declarative base (or registry) the mappings came from
    """

    def __init__(self, context: Any, mappings: Dict[type, TableMapping]):
        self.context = context
        self._mappings = MappingProxyType(dict(mappings))

    def __getitem__(self, entity: type) -> TableMapping:
        try:
            return self._mappings[entity]
        except KeyError:
            raise ConfigurationError(
                f"{getattr(entity, '__name__', entity)!s} is not mapped in context "
                f"{getattr(self.context, '__name__', self.context)!s}"
            ) from None

    def __iter__(self):
        return iter(self._mappings)

    def __len__(self) -> int:
        return len(self._mappings)

    def __repr__(self) -> str:
        names = ', '.join(sorted(entity.__name__ for entity in self._mappings))
        return f"ContextTableMappings({names})"


def _registry_for(context: Any):
    registry = getattr(context, 'registry', None)
    if registry is not None and hasattr(registry, 'mappers'):
        return registry
    if hasattr(context, 'mappers'):
        return context
    raise ConfigurationError(
        f"{context!r} is not a declarative base or registry"
    )


def _render_type(column) -> str:
    try:
        return column.type.compile(dialect=_PG_DIALECT)
    except CompileError as e:
        raise ConfigurationError(
            f"Column {column.table.name}.{column.name} has a type PostgreSQL cannot render: {e}"
        ) from e


class MappingFactory:
    """Builds ContextTableMappings by introspecting SQLAlchemy mappers.

    Entities that legitimately have no primary key must say so with a
    ``__bulk_keyless__ = True`` class attribute; anything else without a
    key is a configuration error.
    """

    def build_mappings(self, context: Any) -> ContextTableMappings:
        """Build the mapping snapshot for every class mapped in ``context``.

        Args:
            context: Declarative base class or SQLAlchemy registry

        Returns:
            ContextTableMappings for the context

        Raises:
            ConfigurationError: No resolvable table, missing primary key,
                conflicting columns, or an empty context
        """
        registry = _registry_for(context)
        mappers = sorted(registry.mappers, key=lambda m: m.class_.__qualname__)
        if not mappers:
            raise ConfigurationError(f"Context {context!r} maps no entities")

        partial: Dict[type, TableMapping] = {}
        tables: Dict[type, Table] = {}
        for mapper in mappers:
            entity = mapper.class_
            table = mapper.local_table
            if not isinstance(table, Table):
                raise ConfigurationError(
                    f"{entity.__name__} is not mapped to a single table"
                )
            partial[entity] = self._build_table_mapping(entity, mapper, table)
            tables[entity] = table

        resolved = self._resolve_references(partial, tables)
        logger.debug(f"Built {len(resolved)} table mappings for {context!r}")
        return ContextTableMappings(context, resolved)

    def _build_table_mapping(self, entity: type, mapper, table: Table) -> TableMapping:
        keyless = bool(getattr(entity, '__bulk_keyless__', False))
        autoincrement = table.autoincrement_column

        columns: List[ColumnMapping] = []
        seen_names: Dict[str, str] = {}
        seen_attributes: Dict[str, str] = {}
        for ordinal, column in enumerate(table.columns):
            try:
                attribute = mapper.get_property_by_column(column).key
            except UnmappedColumnError:
                attribute = column.key

            name_key = column.name.lower()
            if name_key in seen_names:
                raise ConfigurationError(
                    f"{entity.__name__}: column '{column.name}' conflicts with "
                    f"'{seen_names[name_key]}'"
                )
            if attribute in seen_attributes:
                raise ConfigurationError(
                    f"{entity.__name__}: attribute '{attribute}' maps to both "
                    f"'{seen_attributes[attribute]}' and '{column.name}'"
                )
            seen_names[name_key] = column.name
            seen_attributes[attribute] = column.name

            columns.append(ColumnMapping(
                name=column.name,
                attribute=attribute,
                type_=column.type,
                sql_type=_render_type(column),
                nullable=bool(column.nullable),
                is_primary_key=bool(column.primary_key),
                is_computed=column.computed is not None,
                is_identity=column.identity is not None or column is autoincrement,
                ordinal=ordinal,
                has_server_default=column.server_default is not None,
                default=column.default
            ))

        ordinals = [col.ordinal for col in columns]
        if ordinals != list(range(len(columns))):
            raise ConfigurationError(f"{entity.__name__}: conflicting column ordinals {ordinals}")

        if not any(col.is_primary_key for col in columns) and not keyless:
            raise ConfigurationError(
                f"{entity.__name__} ({table.fullname}) has no primary key; "
                "declare __bulk_keyless__ = True if that is intended"
            )

        return TableMapping(
            entity=entity,
            schema=table.schema or 'public',
            table=table.name,
            columns=tuple(columns),
            keyless=keyless
        )

    def _resolve_references(
        self,
        partial: Dict[type, TableMapping],
        tables: Dict[type, Table]
    ) -> Dict[type, TableMapping]:
        outgoing: Dict[type, List[ForeignKeyReference]] = {entity: [] for entity in partial}
        incoming: Dict[Tuple[str, str], List[ForeignKeyReference]] = {}

        for entity, table in tables.items():
            mapping = partial[entity]
            for fk in sorted(table.foreign_keys, key=lambda f: f.parent.name):
                try:
                    target = fk.column
                except NoReferencedTableError as e:
                    raise ConfigurationError(
                        f"{entity.__name__}: foreign key {fk.target_fullname} cannot be resolved"
                    ) from e
                target_schema = target.table.schema or 'public'
                outgoing[entity].append(ForeignKeyReference(
                    table=qualified_table_name(target_schema, target.table.name),
                    column=fk.parent.name,
                    referred_column=target.name
                ))
                if (target_schema, target.table.name) == (mapping.schema, mapping.table):
                    continue
                incoming.setdefault((target_schema, target.table.name), []).append(
                    ForeignKeyReference(
                        table=mapping.qualified_name,
                        column=fk.parent.name,
                        referred_column=target.name
                    )
                )

        resolved = {}
        for entity, mapping in partial.items():
            referenced_by = incoming.get((mapping.schema, mapping.table), [])
            # single-table inheritance maps several classes onto one table
            unique_refs = tuple(dict.fromkeys(referenced_by))
            resolved[entity] = TableMapping(
                entity=mapping.entity,
                schema=mapping.schema,
                table=mapping.table,
                columns=mapping.columns,
                foreign_keys=tuple(outgoing[entity]),
                referenced_by=unique_refs,
                keyless=mapping.keyless
            )
        return resolved


class MetadataCache:
    """Process-wide table metadata handle with a build/freeze lifecycle.

    Inject one instance into every component that needs table metadata
    instead of reaching for module globals.

    Example:
        >>> cache = MetadataCache()
        >>> cache.register(Base)
        >>> cache.freeze()
        >>> cache.get_mappings(Base)[Product].table
        'products'
    """

    def __init__(self, factory: Optional[MappingFactory] = None):
        self._factory = factory or MappingFactory()
        self._lock = threading.Lock()
        self._building: Dict[Any, ContextTableMappings] = {}
        self._contexts: Optional[Mapping[Any, ContextTableMappings]] = None
        self._entities: Optional[Mapping[type, TableMapping]] = None
        self._owners: Optional[Mapping[type, Any]] = None

    @property
    def is_frozen(self) -> bool:
        return self._contexts is not None

    def register(self, context: Any) -> ContextTableMappings:
        """Build and stage the mappings for a context (build phase only).

        Raises:
            ConfigurationError: If the cache is already frozen or the
                context's metadata is malformed
        """
        with self._lock:
            if self.is_frozen:
                raise ConfigurationError(
                    "Metadata cache is frozen; register every context before freeze()"
                )
            mappings = self._factory.build_mappings(context)
            self._building[context] = mappings
            logger.info(f"📚 Registered {len(mappings)} mapped tables for {getattr(context, '__name__', context)}")
            return mappings

    def freeze(self) -> None:
        """Close the build phase; the snapshot is read-only from here on."""
        with self._lock:
            if self.is_frozen:
                return
            if not self._building:
                raise ConfigurationError("Metadata cache has no registered contexts")

            entities: Dict[type, TableMapping] = {}
            owners: Dict[type, Any] = {}
            for context, mappings in self._building.items():
                for entity in mappings:
                    entities.setdefault(entity, mappings[entity])
                    owners.setdefault(entity, context)

            self._entities = MappingProxyType(entities)
            self._owners = MappingProxyType(owners)
            self._contexts = MappingProxyType(dict(self._building))
            self._building = {}
            logger.info(f"🔒 Metadata cache frozen with {len(entities)} entities")

    def get_mappings(self, context: Any) -> ContextTableMappings:
        """Get the frozen mappings for a context.

        Raises:
            NotInitializedError: Cache not frozen yet
            ConfigurationError: Context was never registered
        """
        contexts = self._contexts
        if contexts is None:
            raise NotInitializedError("Metadata cache has not been frozen yet")
        try:
            return contexts[context]
        except KeyError:
            raise ConfigurationError(f"Context {context!r} was never registered") from None

    def table_for(self, entity: type) -> TableMapping:
        """Get the frozen mapping of an entity from any registered context.

        Raises:
            NotInitializedError: Cache not frozen yet
            ConfigurationError: Entity not mapped in any registered context
        """
        entities = self._entities
        if entities is None:
            raise NotInitializedError("Metadata cache has not been frozen yet")
        try:
            return entities[entity]
        except KeyError:
            raise ConfigurationError(
                f"{getattr(entity, '__name__', entity)!s} is not mapped in any registered context"
            ) from None

    def context_for(self, entity: type) -> Any:
        """Get the context an entity was first registered under."""
        self.table_for(entity)
        return self._owners[entity]

    def contexts(self) -> Iterable[Any]:
        if self._contexts is None:
            raise NotInitializedError("Metadata cache has not been frozen yet")
        return tuple(self._contexts)


def build_mappings(context: Any) -> ContextTableMappings:
    """Build mappings for a context without a cache (BuildMappings)."""
    return MappingFactory().build_mappings(context)


def get_mappings(cache: MetadataCache, context: Any) -> ContextTableMappings:
    """Read the frozen mappings of a context from a cache (GetMappings)."""
    return cache.get_mappings(context)


def entity_of(obj: Any) -> type:
    """Return the mapped class of an instance or class."""
    try:
        return inspect(obj).class_
    except NoInspectionAvailable:
        raise ConfigurationError(f"{obj!r} is not a mapped class or instance") from None
