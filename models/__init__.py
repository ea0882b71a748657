"""
========================================
Table Metadata for Bulk Operations
========================================

Immutable, process-wide metadata the bulk engine reads on every call.

Modules:
    mappings: Entity -> table/column mappings and the MetadataCache
    timeouts: Entity/context -> command timeout registry

Architecture:
    - Built once at startup from SQLAlchemy declarative contexts
    - Frozen before the first bulk operation; read without locks afterwards
    - Passed explicitly to the components that need it

Example:
    >>> from models import MetadataCache, TimeoutRegistry
    >>> from core.config import config
    >>>
    >>> cache = MetadataCache()
    >>> cache.register(Base)
    >>> cache.freeze()
    >>> timeouts = TimeoutRegistry.from_config(config.bulk)
"""

__version__ = "0.1.0"
__all__ = [
    # Mappings
    'ColumnMapping',
    'ForeignKeyReference',
    'TableMapping',
    'ContextTableMappings',
    'MappingFactory',
    'MetadataCache',
    'build_mappings',
    'get_mappings',
    'entity_of',
    # Timeouts
    'TimeoutRegistry',
]

from .mappings import (
    ColumnMapping,
    ContextTableMappings,
    ForeignKeyReference,
    MappingFactory,
    MetadataCache,
    TableMapping,
    build_mappings,
    entity_of,
    get_mappings,
)
from .timeouts import TimeoutRegistry
