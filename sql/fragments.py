"""
=====================================
Parameterized SQL fragments.
=====================================

A fragment is SQL text with named ``:placeholders`` plus the ordered,
typed values bound to them. Fragments are what the translator produces
and what the composer stitches into statements.

Invariants (checked on construction):
    - every placeholder in the text has exactly one parameter
    - parameter names are unique

Fragments produced independently reuse the same local names (``p0``,
``p1`` ...), so they must be namespaced before they are combined.
``combine`` refuses to merge fragments whose names collide.

Example:
    >>> where = ParameterizedSqlFragment('"price" > :p0', (SqlParameter('p0', 10),))
    >>> where.namespaced('w').text
    '"price" > :w_p0'
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.sql.elements import TextClause
from sqlalchemy.types import TypeEngine

from core.exceptions import TranslationError

PLACEHOLDER_PATTERN = re.compile(r"(?<![:\w\\]):([A-Za-z_][A-Za-z0-9_]*)(?!:)")


def find_placeholders(sql_text: str) -> Tuple[str, ...]:
    """Return placeholder names in order of appearance."""
    return tuple(match.group(1) for match in PLACEHOLDER_PATTERN.finditer(sql_text))


@dataclass(frozen=True)
class SqlParameter:
    """One bound value.

    Attributes:
        name: Placeholder name without the leading colon
        value: Python value sent to the driver
        type_: SQLAlchemy type used to bind the value (None = infer)
    """

    name: str
    value: Any
    type_: Optional[TypeEngine] = field(default=None, compare=False)


@dataclass(frozen=True)
class ParameterizedSqlFragment:
    """SQL text plus its ordered parameters."""

    text: str
    parameters: Tuple[SqlParameter, ...] = ()

    def __post_init__(self):
        names = [param.name for param in self.parameters]
        if len(set(names)) != len(names):
            raise TranslationError(f"Duplicate placeholder names in fragment: {names}")

        found = find_placeholders(self.text)
        if len(found) != len(names) or set(found) != set(names):
            raise TranslationError(
                f"Fragment has {len(found)} placeholders {list(found)} "
                f"but {len(names)} parameters {names}"
            )

    @classmethod
    def empty(cls) -> 'ParameterizedSqlFragment':
        return cls('')

    @property
    def parameter_names(self) -> Tuple[str, ...]:
        return tuple(param.name for param in self.parameters)

    @property
    def values(self) -> Dict[str, Any]:
        return {param.name: param.value for param in self.parameters}

    def namespaced(self, prefix: str) -> 'ParameterizedSqlFragment':
        """Rename every placeholder to ``<prefix>_<name>``."""
        if not self.parameters:
            return self
        renames = {param.name: f"{prefix}_{param.name}" for param in self.parameters}
        new_text = PLACEHOLDER_PATTERN.sub(
            lambda m: f":{renames.get(m.group(1), m.group(1))}", self.text
        )
        new_params = tuple(
            SqlParameter(renames[param.name], param.value, param.type_)
            for param in self.parameters
        )
        return ParameterizedSqlFragment(new_text, new_params)

    def wrap(self, prefix: str = '', suffix: str = '') -> 'ParameterizedSqlFragment':
        """Surround this fragment's text with literal SQL.

        ``prefix`` and ``suffix`` are concatenated, never formatted, so
        braces in identifiers need no escaping.
        """
        return ParameterizedSqlFragment(prefix + self.text + suffix, self.parameters)

    def to_text_clause(self) -> TextClause:
        """Build a SQLAlchemy TextClause with typed bind parameters."""
        clause = text(self.text)
        if self.parameters:
            clause = clause.bindparams(*[
                bindparam(param.name, param.value, type_=param.type_)
                for param in self.parameters
            ])
        return clause

    def __str__(self) -> str:
        return self.text


def combine(
    fragments: Iterable[ParameterizedSqlFragment],
    separator: str = "\n"
) -> ParameterizedSqlFragment:
    """Concatenate fragments, refusing to merge colliding placeholders.

    Raises:
        TranslationError: Two fragments use the same placeholder name
    """
    texts = []
    params = []
    seen = set()
    for fragment in fragments:
        for param in fragment.parameters:
            if param.name in seen:
                raise TranslationError(
                    f"Placeholder ':{param.name}' collides while merging fragments; "
                    "namespace fragments before combining them"
                )
            seen.add(param.name)
        params.extend(fragment.parameters)
        if fragment.text:
            texts.append(fragment.text)
    return ParameterizedSqlFragment(separator.join(texts), tuple(params))


def literal_sql(sql_text: str) -> ParameterizedSqlFragment:
    """Wrap parameterless SQL text (templates, DDL) as a fragment."""
    return ParameterizedSqlFragment(sql_text)
