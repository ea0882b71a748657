"""
=====================================
Columnar staging buffer.
=====================================

Converts an in-memory sequence of entities into a pandas DataFrame whose
columns are exactly the insertable columns of the target table, in
ordinal order, ready to be streamed to PostgreSQL with COPY.

Rules applied while staging (one pass over the input):
    - Identity and computed columns are never staged
    - A value the row does not carry falls back to the column's Python
      default, then to NULL for nullable columns
    - A column no row carries and the server fills (server default) is
      left out of the buffer so the server default applies
    - A NOT NULL column with no value and no default fails the whole load

Rows may be mapped instances of the target entity or dicts keyed by
attribute or column name.

The frame uses ``object`` dtype so integers never become floats and
``None`` stays ``None``. Float and Decimal NaN are written as the text
``NaN``; only ``None``, ``pd.NA`` and ``NaT`` become NULL.

Example:
    >>> buffer = StagingBuffer.from_entities(products, cache.table_for(Product))
    >>> buffer.columns
    ['name', 'price', 'is_active']
    >>> stream = buffer.to_csv()
"""

import csv
import decimal
import enum
import io
import json
import numbers
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

import pandas as pd
from sqlalchemy import inspect

from core.exceptions import BulkTransferError
from core.logger import get_logger
from models.mappings import ColumnMapping, TableMapping

logger = get_logger(__name__)

_MISSING = object()


def _row_values(row: Any, mapping: TableMapping) -> Mapping[str, Any]:
    """Return the attribute -> value dict a row carries."""
    if isinstance(row, Mapping):
        values = {}
        for key, value in row.items():
            column = mapping.find_column(key)
            if column is None:
                raise BulkTransferError(
                    f"Row key '{key}' is not a column of {mapping.qualified_name}"
                )
            values[column.attribute] = value
        return values

    if not isinstance(row, mapping.entity):
        raise BulkTransferError(
            f"Cannot stage {type(row).__name__} rows into {mapping.qualified_name} "
            f"(expected {mapping.entity.__name__} or dict)"
        )
    # Only attributes that were actually set appear in the instance state.
    return inspect(row).dict


def _python_default(column: ColumnMapping) -> Any:
    default = column.default
    if default is None:
        return _MISSING
    if getattr(default, 'is_scalar', False):
        return default.arg
    if getattr(default, 'is_callable', False):
        return default.arg(None)
    return _MISSING


def _copy_text(value: Any) -> Any:
    """Convert one value into the text PostgreSQL's CSV input expects.

    Returns None for values that must load as NULL.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return '\\x' + bytes(value).hex()
    if isinstance(value, enum.Enum):
        return value.name
    if isinstance(value, decimal.Decimal):
        return 'NaN' if value.is_nan() else value
    if isinstance(value, numbers.Real) and value != value:
        return 'NaN'
    if pd.api.types.is_scalar(value) and pd.isna(value):
        return None
    return value


class StagingBuffer:
    """Rows of one target table in column-major form.

    Attributes:
        mapping: Target table mapping
        frame: DataFrame with one column per staged table column
    """

    def __init__(self, mapping: TableMapping, frame: pd.DataFrame):
        self.mapping = mapping
        self.frame = frame
        self._copy_frame: Optional[pd.DataFrame] = None

    @property
    def columns(self) -> List[str]:
        return list(self.frame.columns)

    def __len__(self) -> int:
        return len(self.frame)

    @classmethod
    def from_entities(cls, entities: Iterable[Any], mapping: TableMapping) -> 'StagingBuffer':
        """Stage ``entities`` for ``mapping``.

        Raises:
            BulkTransferError: Wrong row type, unknown keys, a NOT NULL
                column without a value, or a server-defaulted column that
                only some rows carry
        """
        staged = list(mapping.insertable_columns)
        data: Dict[str, List[Any]] = {col.name: [] for col in staged}
        supplied = {col.name: 0 for col in staged}
        defaults = {col.name: _python_default(col) for col in staged}

        row_count = 0
        for row_number, row in enumerate(entities, start=1):
            values = _row_values(row, mapping)
            for column in staged:
                value = values.get(column.attribute, _MISSING)
                if value is not _MISSING:
                    supplied[column.name] += 1
                elif defaults[column.name] is not _MISSING:
                    value = defaults[column.name]
                    supplied[column.name] += 1
                elif column.has_server_default:
                    value = None
                elif column.nullable:
                    value = None
                else:
                    raise BulkTransferError(
                        f"Row {row_number}: no value for NOT NULL column "
                        f"'{column.name}' of {mapping.qualified_name}"
                    )
                data[column.name].append(value)
            row_count += 1

        columns = []
        for column in staged:
            count = supplied[column.name]
            if column.has_server_default and count == 0:
                # Leave it to the server default
                continue
            if column.has_server_default and count < row_count:
                raise BulkTransferError(
                    f"Column '{column.name}' of {mapping.qualified_name} is set on "
                    f"{count} of {row_count} rows; its server default cannot be applied "
                    "per row, so set it on every row or on none"
                )
            columns.append(column.name)

        if row_count and not columns:
            raise BulkTransferError(
                f"Rows for {mapping.qualified_name} carry no insertable values"
            )

        frame = pd.DataFrame(
            {name: pd.Series(data[name], dtype=object) for name in columns},
            columns=columns
        )
        logger.debug(f"Staged {row_count:,} rows x {len(columns)} columns for {mapping.qualified_name}")
        return cls(mapping, frame)

    def _converted(self) -> pd.DataFrame:
        if self._copy_frame is None:
            # Series.map would re-infer dtypes and turn [7, None] into floats
            self._copy_frame = pd.DataFrame(
                {
                    name: pd.Series([_copy_text(value) for value in self.frame[name]], dtype=object)
                    for name in self.columns
                },
                columns=self.columns
            )
        return self._copy_frame

    def _value_texts(self) -> Set[str]:
        frame = self._converted()
        return {str(value) for name in self.columns for value in frame[name] if value is not None}

    def null_marker(self, preferred: str = '\\N') -> str:
        """Pick a NULL marker that no staged value is written as.

        Returns ``preferred`` unless a value collides with it, then the
        first free one of ``preferred + '1'``, ``preferred + '2'`` and so on.
        """
        used = self._value_texts()
        marker, suffix = preferred, 0
        while marker in used:
            suffix += 1
            marker = f"{preferred}{suffix}"
        if marker != preferred:
            logger.warning(
                f"⚠️  NULL marker {preferred!r} occurs as a value for {self.mapping.qualified_name}; "
                f"using {marker!r}"
            )
        return marker

    def to_csv(self, null_string: Optional[str] = None) -> io.StringIO:
        """Serialise the buffer as CSV for ``COPY ... FORMAT csv``.

        Every field is quoted and NULL is written as ``null_string``, so
        COPY must run with ``FORCE_NULL`` on every column. An empty string
        therefore stays an empty string.

        Args:
            null_string: NULL marker; picked with null_marker() when omitted

        Returns:
            StringIO positioned at the start

        Raises:
            BulkTransferError: ``null_string`` equals a staged value, which
                would load as NULL
        """
        if null_string is None:
            null_string = self.null_marker()
        elif null_string in self._value_texts():
            raise BulkTransferError(
                f"NULL marker {null_string!r} occurs as a value for {self.mapping.qualified_name}"
            )
        stream = io.StringIO()
        self._converted().to_csv(
            stream,
            index=False,
            header=False,
            quoting=csv.QUOTE_ALL,
            na_rep=null_string,
            lineterminator='\n'
        )
        stream.seek(0)
        return stream
