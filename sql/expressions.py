"""
=====================================
Typed expression trees.
=====================================

Predicates and projections are written as ordinary Python lambdas over
proxy objects and captured as an explicit syntax tree:

    >>> from sql.expressions import EntityRef, build_expression
    >>> tree = build_expression(lambda p: (p.price > 10) & ~p.is_active, EntityRef(Product))

Node variants:
    Member: attribute access on an entity or wrapper proxy
    Literal: a captured Python value (always bound as a parameter)
    Comparison: = <> < <= > >=
    Logical: AND / OR over two or more operands
    Not: boolean negation
    Arithmetic: + - * / %
    MethodCall: a named call on a node (startswith, in_, sum, ...)
    AttributeAccess: attribute access on a non-entity node (navigation,
        unknown methods); kept so the translator can reject it by name

Python's ``and``, ``or`` and ``not`` cannot be overloaded. Use ``&``,
``|`` and ``~`` instead; using a node in a boolean context raises
TranslationError.
"""

from dataclasses import dataclass
from typing import Any, Callable, Tuple

from core.exceptions import TranslationError


def coerce(value: Any) -> 'Node':
    """Wrap plain Python values in a Literal node."""
    if isinstance(value, Node):
        return value
    return Literal(value)


class Node:
    """Base class for every expression node.

    Comparison and arithmetic operators build new nodes instead of
    evaluating, the same way SQL expression languages do.
    """

    def __eq__(self, other):
        return Comparison('=', self, coerce(other))

    def __ne__(self, other):
        return Comparison('<>', self, coerce(other))

    def __lt__(self, other):
        return Comparison('<', self, coerce(other))

    def __le__(self, other):
        return Comparison('<=', self, coerce(other))

    def __gt__(self, other):
        return Comparison('>', self, coerce(other))

    def __ge__(self, other):
        return Comparison('>=', self, coerce(other))

    __hash__ = object.__hash__

    def __and__(self, other):
        return Logical.of('AND', self, coerce(other))

    def __rand__(self, other):
        return Logical.of('AND', coerce(other), self)

    def __or__(self, other):
        return Logical.of('OR', self, coerce(other))

    def __ror__(self, other):
        return Logical.of('OR', coerce(other), self)

    def __invert__(self):
        return Not(self)

    def __add__(self, other):
        return Arithmetic('+', self, coerce(other))

    def __radd__(self, other):
        return Arithmetic('+', coerce(other), self)

    def __sub__(self, other):
        return Arithmetic('-', self, coerce(other))

    def __rsub__(self, other):
        return Arithmetic('-', coerce(other), self)

    def __mul__(self, other):
        return Arithmetic('*', self, coerce(other))

    def __rmul__(self, other):
        return Arithmetic('*', coerce(other), self)

    def __truediv__(self, other):
        return Arithmetic('/', self, coerce(other))

    def __rtruediv__(self, other):
        return Arithmetic('/', coerce(other), self)

    def __mod__(self, other):
        return Arithmetic('%', self, coerce(other))

    def __neg__(self):
        return Arithmetic('-', Literal(0), self)

    def __bool__(self):
        raise TranslationError(
            "Expression nodes have no truth value; combine conditions with "
            "&, | and ~ instead of and, or, not",
            self
        )

    def __getattr__(self, name):
        if name.startswith('_'):
            raise AttributeError(name)
        return AttributeAccess(self, name)

    def _call(self, method: str, *args) -> 'MethodCall':
        return MethodCall(method, self, tuple(coerce(arg) for arg in args))

    # String matching
    def startswith(self, prefix):
        return self._call('startswith', prefix)

    def endswith(self, suffix):
        return self._call('endswith', suffix)

    def contains(self, fragment):
        return self._call('contains', fragment)

    def like(self, pattern):
        return self._call('like', pattern)

    def ilike(self, pattern):
        return self._call('ilike', pattern)

    # Sets and ranges
    def in_(self, *values):
        if len(values) == 1 and isinstance(values[0], (list, tuple, set, frozenset)):
            values = tuple(values[0])
        return self._call('in_', *values)

    def not_in(self, *values):
        if len(values) == 1 and isinstance(values[0], (list, tuple, set, frozenset)):
            values = tuple(values[0])
        return self._call('not_in', *values)

    def between(self, low, high):
        return self._call('between', low, high)

    def is_null(self):
        return self._call('is_null')

    def is_not_null(self):
        return self._call('is_not_null')

    # Scalar functions
    def lower(self):
        return self._call('lower')

    def upper(self):
        return self._call('upper')

    def length(self):
        return self._call('length')

    def trim(self):
        return self._call('trim')

    def coalesce(self, *fallbacks):
        return self._call('coalesce', *fallbacks)

    # Aggregates
    def count(self):
        return self._call('count')

    def count_distinct(self):
        return self._call('count_distinct')

    def sum(self):
        return self._call('sum')

    def avg(self):
        return self._call('avg')

    def min(self):
        return self._call('min')

    def max(self):
        return self._call('max')


@dataclass(frozen=True, eq=False)
class Member(Node):
    """Attribute access on an EntityRef or WrapperRef."""

    source: Any
    attribute: str

    def __repr__(self):
        return f"Member({self.source!r}.{self.attribute})"


@dataclass(frozen=True, eq=False)
class Literal(Node):
    """A captured Python value."""

    value: Any

    def __repr__(self):
        return f"Literal({self.value!r})"


@dataclass(frozen=True, eq=False)
class Comparison(Node):
    op: str
    left: Node
    right: Node


@dataclass(frozen=True, eq=False)
class Logical(Node):
    op: str
    operands: Tuple[Node, ...]

    @classmethod
    def of(cls, op: str, left: Node, right: Node) -> 'Logical':
        """Build a Logical node, flattening nested nodes of the same operator."""
        operands = []
        for operand in (left, right):
            if isinstance(operand, Logical) and operand.op == op:
                operands.extend(operand.operands)
            else:
                operands.append(operand)
        return cls(op, tuple(operands))


@dataclass(frozen=True, eq=False)
class Not(Node):
    operand: Node


@dataclass(frozen=True, eq=False)
class Arithmetic(Node):
    op: str
    left: Node
    right: Node


@dataclass(frozen=True, eq=False)
class MethodCall(Node):
    method: str
    target: Node
    args: Tuple[Node, ...] = ()

    def __repr__(self):
        return f"MethodCall({self.target!r}.{self.method}/{len(self.args)})"


@dataclass(frozen=True, eq=False)
class AttributeAccess(Node):
    """Attribute access the translator has no column for.

    Calling it turns it into a MethodCall with that name.
    """

    target: Node
    attribute: str

    def __call__(self, *args):
        return MethodCall(self.attribute, self.target, tuple(coerce(arg) for arg in args))

    def __repr__(self):
        return f"AttributeAccess({self.target!r}.{self.attribute})"


class EntityRef:
    """Proxy standing for one row of a mapped entity inside a lambda.

    Attributes are stored with a leading underscore so any entity
    attribute name (even ``alias`` or ``entity``) becomes a Member.
    """

    def __init__(self, entity: type, alias: str = 't0'):
        self._entity = entity
        self._alias = alias

    def __getattr__(self, name):
        if name.startswith('_'):
            raise AttributeError(name)
        return Member(self, name)

    def __bool__(self):
        raise TranslationError(
            f"Entity reference {self._entity.__name__} used as a boolean; "
            "compare one of its attributes instead"
        )

    def __repr__(self):
        return f"{self._entity.__name__} AS {self._alias}"


class WrapperRef:
    """Proxy standing for one row of a wrapper projection."""

    def __init__(self, wrapper: type, alias: str = 's'):
        self._wrapper = wrapper
        self._alias = alias

    def __getattr__(self, name):
        if name.startswith('_'):
            raise AttributeError(name)
        return Member(self, name)

    def __repr__(self):
        return f"{self._wrapper.__name__} AS {self._alias}"


def build_expression(fn: Callable, *refs) -> Node:
    """Call ``fn`` with proxies and return the expression it builds.

    Raises:
        TranslationError: The lambda evaluated eagerly to a plain value
            (``is`` comparisons, Python ``and``/``or``, constants)
    """
    result = fn(*refs)
    if isinstance(result, bool):
        raise TranslationError(
            f"Expression evaluated to a plain {result!r} instead of a tree; "
            "use ==, &, |, ~ rather than is, and, or, not"
        )
    if not isinstance(result, Node):
        raise TranslationError(f"Expression produced {type(result).__name__}, not an expression node")
    return result
