"""
===========================================================
Command timeout registry
===========================================================

Immutable mapping from entity or context class to the command timeout
(seconds) applied to each bulk operation. Built once at startup and read
concurrently afterwards.

Lookup order for ``timeout_for(entity, context)``:
    1. Override keyed by the entity class (or its class name)
    2. Override keyed by the context class (or its class name)
    3. Registry default

Example:
    >>> from core.config import config
    >>> from models.timeouts import TimeoutRegistry
    >>>
    >>> registry = TimeoutRegistry.from_config(config.bulk)
    >>> registry.timeout_for(Product)
    30.0
"""

from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

from core.config import BulkConfig
from core.exceptions import ConfigurationError

TimeoutKey = Union[type, str]


def _validate_seconds(key: Any, value: Any) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Timeout for {key!r} is not a number: {value!r}") from None
    if seconds <= 0:
        raise ConfigurationError(f"Timeout for {key!r} must be positive, got {seconds}")
    return seconds


def _key_name(key: TimeoutKey) -> str:
    return key if isinstance(key, str) else key.__name__


class TimeoutRegistry:
    """Frozen entity/context -> timeout map.

    Attributes:
        default: Timeout in seconds when no override matches
    """

    def __init__(
        self,
        default: float = 30.0,
        overrides: Optional[Mapping[TimeoutKey, float]] = None
    ):
        self.default = _validate_seconds('default', default)
        validated: Dict[str, float] = {}
        for key, value in (overrides or {}).items():
            validated[_key_name(key)] = _validate_seconds(key, value)
        self._overrides = MappingProxyType(validated)

    @classmethod
    def from_config(cls, bulk_config: BulkConfig) -> 'TimeoutRegistry':
        """Build the registry from BULK_COMMAND_TIMEOUT / BULK_TIMEOUTS."""
        return cls(
            default=bulk_config.command_timeout,
            overrides=bulk_config.timeout_overrides
        )

    @property
    def overrides(self) -> Mapping[str, float]:
        return self._overrides

    def timeout_for(self, entity: Optional[type] = None, context: Any = None) -> float:
        """Resolve the timeout for an operation on ``entity``."""
        for key in (entity, context):
            if key is None:
                continue
            name = _key_name(key) if isinstance(key, (str, type)) else type(key).__name__
            if name in self._overrides:
                return self._overrides[name]
        return self.default

    def __repr__(self) -> str:
        return f"TimeoutRegistry(default={self.default}, overrides={dict(self._overrides)})"
