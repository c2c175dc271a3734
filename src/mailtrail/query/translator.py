"""Translate query expressions into IMAP search criteria and local predicates."""

from __future__ import annotations

from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import date, timedelta

import structlog

from mailtrail.models import MessageHeader
from mailtrail.query.expressions import (
    And,
    DateValue,
    Expression,
    FieldPredicate,
    Not,
    Operator,
    Or,
    fields_used,
)

logger = structlog.get_logger()

Predicate = Callable[[MessageHeader], bool]

# Capability names understood by ``translate``. ``since``/``before``/``date``
# all share the "date" capability. "has" is never searched remotely.
IMAP_SEARCH_FIELDS = frozenset({"from", "to", "subject", "body", "unread", "date", "size"})

_TEXT_KEYS = {"from": "FROM", "to": "TO", "subject": "SUBJECT", "body": "BODY"}


@dataclass(frozen=True)
class FilterCriterion:
    """Result of translating an expression.

    Attributes:
        remote: imapclient search criteria. ``["ALL"]`` fetches everything.
        local: Predicate equivalent to the full expression.
        requires_post_filter: True when ``remote`` does not fully express the query.
        needs_body: True when ``local`` reads message bodies.
    """

    remote: list
    local: Predicate
    requires_post_filter: bool
    needs_body: bool


class _Unmappable(Exception):
    """Raised internally when a leaf has no remote equivalent."""


def _capability(field: str) -> str:
    return "date" if field in ("since", "before", "date") else field


def _remote_leaf(pred: FieldPredicate, capabilities: Collection[str], today: date) -> list:
    if _capability(pred.field) not in capabilities:
        raise _Unmappable(pred.field)

    if pred.field in _TEXT_KEYS:
        return [_TEXT_KEYS[pred.field], str(pred.value)]
    if pred.field == "unread":
        return ["UNSEEN" if pred.value else "SEEN"]
    if pred.field == "size":
        return ["LARGER" if pred.operator == Operator.GREATER_THAN else "SMALLER", int(pred.value)]  # type: ignore[arg-type]

    assert isinstance(pred.value, DateValue)
    day = pred.value.resolve(today)
    if pred.field == "since":
        return ["SENTSINCE", day]
    if pred.field == "before":
        return ["SENTBEFORE", day]
    if pred.operator == Operator.GREATER_THAN:
        return ["SENTSINCE", day + timedelta(days=1)]
    return ["SENTBEFORE", day]


def _remote(expr: Expression, capabilities: Collection[str], today: date) -> list:
    if isinstance(expr, FieldPredicate):
        return _remote_leaf(expr, capabilities, today)
    if isinstance(expr, And):
        return _remote(expr.left, capabilities, today) + _remote(expr.right, capabilities, today)
    if isinstance(expr, Or):
        return ["OR", _remote(expr.left, capabilities, today), _remote(expr.right, capabilities, today)]
    if isinstance(expr, Not):
        return ["NOT", _remote(expr.operand, capabilities, today)]
    raise TypeError(f"Not a query expression: {expr!r}")


def _contains(haystack: str | None, needle: str) -> bool:
    return haystack is not None and needle.lower() in haystack.lower()


def _compile_leaf(pred: FieldPredicate, today: date) -> Predicate:
    field = pred.field
    value = pred.value

    if field == "from":
        return lambda msg: _contains(msg.sender, str(value))
    if field == "to":
        return lambda msg: any(_contains(r, str(value)) for r in msg.recipients)
    if field == "subject":
        return lambda msg: _contains(msg.subject, str(value))
    if field == "body":
        return lambda msg: _contains(msg.body, str(value))
    if field == "unread":
        return lambda msg: msg.unread == value
    if field == "has":
        return lambda msg: msg.has_attachment
    if field == "folder":
        raise ValueError("in:/folder: terms must be removed with split_folder before compiling")
    if field == "size":
        limit = int(value)  # type: ignore[arg-type]
        if pred.operator == Operator.GREATER_THAN:
            return lambda msg: msg.size is not None and msg.size > limit
        return lambda msg: msg.size is not None and msg.size < limit

    assert isinstance(value, DateValue)
    day = value.resolve(today)
    if field == "since":
        return lambda msg: msg.date is not None and msg.date.date() >= day
    if field == "before" or pred.operator == Operator.LESS_THAN:
        return lambda msg: msg.date is not None and msg.date.date() < day
    return lambda msg: msg.date is not None and msg.date.date() > day


def compile_predicate(expr: Expression, today: date | None = None) -> Predicate:
    """Compile ``expr`` into a callable over message headers."""

    today = today or date.today()

    if isinstance(expr, FieldPredicate):
        return _compile_leaf(expr, today)
    if isinstance(expr, And):
        left, right = compile_predicate(expr.left, today), compile_predicate(expr.right, today)
        return lambda msg: left(msg) and right(msg)
    if isinstance(expr, Or):
        left, right = compile_predicate(expr.left, today), compile_predicate(expr.right, today)
        return lambda msg: left(msg) or right(msg)
    if isinstance(expr, Not):
        inner = compile_predicate(expr.operand, today)
        return lambda msg: not inner(msg)
    raise TypeError(f"Not a query expression: {expr!r}")


def evaluate(expr: Expression, msg: MessageHeader, today: date | None = None) -> bool:
    """Evaluate ``expr`` against a single message."""

    return compile_predicate(expr, today)(msg)


def translate(
    expr: Expression | None,
    capabilities: Collection[str] = IMAP_SEARCH_FIELDS,
    today: date | None = None,
) -> FilterCriterion:
    """Translate an expression for a remote with the given search capabilities.

    When any leaf cannot be searched remotely the whole remote criterion
    degrades to ``["ALL"]`` and the local predicate does all the filtering.
    A missing expression (a query made only of a folder term) matches all.
    """

    if expr is None:
        return FilterCriterion(remote=["ALL"], local=lambda msg: True, requires_post_filter=False, needs_body=False)

    today = today or date.today()
    local = compile_predicate(expr, today)
    needs_body = "body" in fields_used(expr)

    try:
        remote = _remote(expr, capabilities, today)
    except _Unmappable as exc:
        logger.debug("query_remote_fallback", unsupported_field=str(exc), query=str(expr))
        return FilterCriterion(remote=["ALL"], local=local, requires_post_filter=True, needs_body=needs_body)

    return FilterCriterion(remote=remote, local=local, requires_post_filter=False, needs_body=needs_body)
