"""Query expression tree.

Nodes are frozen dataclasses so a parsed query can be compared, hashed and
shared freely. ``position`` is carried on leaves for error reporting but does
not take part in equality.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Union

from mailtrail.exceptions import QuerySyntaxError


class Operator(str, Enum):
    """Comparison operator of a field predicate."""

    EQUALS = "="
    GREATER_THAN = ">"
    LESS_THAN = "<"


# Canonical field names produced by the parser. Aliases such as ``is:unread``,
# ``newer:`` and ``older:`` are normalized onto these.
TEXT_FIELDS = frozenset({"from", "to", "subject", "body"})
DATE_FIELDS = frozenset({"since", "before", "date"})
FIELDS = TEXT_FIELDS | DATE_FIELDS | {"unread", "size", "has", "folder"}


@dataclass(frozen=True)
class DateValue:
    """An absolute day or an age in days relative to "today".

    Relative values are kept unresolved so that parsing never depends on the
    clock; translation and evaluation resolve them against an explicit day.
    """

    day: date | None = None
    days_ago: int | None = None

    def __post_init__(self) -> None:
        if (self.day is None) == (self.days_ago is None):
            raise ValueError("DateValue needs exactly one of day or days_ago")

    def resolve(self, today: date) -> date:
        if self.day is not None:
            return self.day
        assert self.days_ago is not None
        return today - timedelta(days=self.days_ago)

    def __str__(self) -> str:
        if self.day is not None:
            return self.day.isoformat()
        return f"{self.days_ago}d"


FieldValue = Union[str, bool, int, DateValue]


@dataclass(frozen=True)
class FieldPredicate:
    """Leaf node: ``field operator value``."""

    field: str
    operator: Operator
    value: FieldValue
    position: int = field(default=-1, compare=False)

    def __str__(self) -> str:
        value = str(self.value).lower() if isinstance(self.value, bool) else str(self.value)
        return f"{self.field}{self.operator.value}{value}"


@dataclass(frozen=True)
class And:
    left: Expression
    right: Expression

    def __str__(self) -> str:
        return f"AND({self.left}, {self.right})"


@dataclass(frozen=True)
class Or:
    left: Expression
    right: Expression

    def __str__(self) -> str:
        return f"OR({self.left}, {self.right})"


@dataclass(frozen=True)
class Not:
    operand: Expression

    def __str__(self) -> str:
        return f"NOT({self.operand})"


Expression = Union[FieldPredicate, And, Or, Not]


def iter_predicates(expr: Expression) -> Iterator[FieldPredicate]:
    """Yield every leaf of ``expr`` from left to right."""

    if isinstance(expr, FieldPredicate):
        yield expr
    elif isinstance(expr, (And, Or)):
        yield from iter_predicates(expr.left)
        yield from iter_predicates(expr.right)
    elif isinstance(expr, Not):
        yield from iter_predicates(expr.operand)
    else:
        raise TypeError(f"Not a query expression: {expr!r}")


def fields_used(expr: Expression) -> frozenset[str]:
    return frozenset(p.field for p in iter_predicates(expr))


def split_folder(expr: Expression) -> tuple[str | None, Expression | None]:
    """Separate ``in:``/``folder:`` terms from the rest of a query.

    Folder terms pick the folder to search rather than filter messages, so
    they may only appear in the top-level AND chain.

    Returns:
        The requested folder (None when the query names none) and the
        remaining expression (None when nothing but the folder was given).

    Raises:
        QuerySyntaxError: A folder term sits under OR or NOT, or two
            different folders are requested.
    """

    if isinstance(expr, FieldPredicate):
        if expr.field == "folder":
            return str(expr.value), None
        return None, expr
    if isinstance(expr, And):
        left_folder, left = split_folder(expr.left)
        right_folder, right = split_folder(expr.right)
        if left_folder and right_folder and left_folder != right_folder:
            raise QuerySyntaxError(
                f"Conflicting folders '{left_folder}' and '{right_folder}'",
                token=right_folder,
                position=_folder_position(expr.right),
            )
        if left is None or right is None:
            return left_folder or right_folder, left if right is None else right
        return left_folder or right_folder, And(left, right)

    for predicate in iter_predicates(expr):
        if predicate.field == "folder":
            raise QuerySyntaxError(
                "in:/folder: can only be combined with AND",
                token=f"in:{predicate.value}",
                position=predicate.position,
            )
    return None, expr


def _folder_position(expr: Expression) -> int:
    return next((p.position for p in iter_predicates(expr) if p.field == "folder"), -1)
