"""Gmail-style query parser.

Turns strings such as ``from:github.com AND (unread:true OR date:>2024-01-01)``
into an expression tree.

Grammar::

    query    := or_expr EOF
    or_expr  := and_expr ("OR" and_expr)*
    and_expr := not_expr (["AND"] not_expr)*
    not_expr := ("NOT" | "!") not_expr | primary
    primary  := "(" or_expr ")" | field ":" [">" | "<"] value

Keywords are case-insensitive and lose their meaning when quoted. Adjacent
terms without a keyword are joined with AND.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Callable

from mailtrail.exceptions import QuerySyntaxError, UnknownFieldError, ValueParseError
from mailtrail.query.expressions import (
    And,
    DateValue,
    Expression,
    FieldPredicate,
    Not,
    Operator,
    Or,
)

_WORD = "word"
_LPAREN = "lparen"
_RPAREN = "rparen"
_BANG = "bang"

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_RELATIVE_DATE = re.compile(r"^(\d+)([dwmy])$", re.IGNORECASE)
_SIZE = re.compile(r"^(\d+)([kmg]?)b?$", re.IGNORECASE)

_RELATIVE_UNIT_DAYS = {"d": 1, "w": 7, "m": 30, "y": 365}
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3}

_TRUE_VALUES = {"true", "yes", "1"}
_FALSE_VALUES = {"false", "no", "0"}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int
    # Offset inside ``text`` where the first quoted section began, if any.
    quote_offset: int | None = None

    def is_keyword(self, keyword: str) -> bool:
        return self.kind == _WORD and self.quote_offset is None and self.text.upper() == keyword


def tokenize(query: str) -> list[Token]:
    """Split a query into words, parentheses and ``!`` markers."""

    tokens: list[Token] = []
    current: list[str] = []
    start: int | None = None
    quote_offset: int | None = None
    quote_open_at: int | None = None

    def flush() -> None:
        nonlocal current, start, quote_offset
        if start is not None:
            tokens.append(Token(_WORD, "".join(current), start, quote_offset))
        current = []
        start = None
        quote_offset = None

    for i, ch in enumerate(query):
        if quote_open_at is not None:
            if ch == '"':
                quote_open_at = None
            else:
                current.append(ch)
            continue

        if ch == '"':
            if start is None:
                start = i
            if quote_offset is None:
                quote_offset = len(current)
            quote_open_at = i
        elif ch.isspace():
            flush()
        elif ch in "()":
            flush()
            tokens.append(Token(_LPAREN if ch == "(" else _RPAREN, ch, i))
        elif ch == "!" and start is None:
            tokens.append(Token(_BANG, ch, i))
        else:
            if start is None:
                start = i
            current.append(ch)

    if quote_open_at is not None:
        raise QuerySyntaxError("Unterminated quote", token='"', position=quote_open_at)
    flush()
    return tokens


def _parse_date(raw: str, position: int) -> DateValue:
    relative = _RELATIVE_DATE.match(raw)
    if relative:
        return DateValue(days_ago=int(relative.group(1)) * _RELATIVE_UNIT_DAYS[relative.group(2).lower()])
    if _ISO_DATE.match(raw):
        try:
            return DateValue(day=date.fromisoformat(raw))
        except ValueError:
            pass
    raise ValueParseError(
        "Invalid date. Use YYYY-MM-DD or a relative age like 30d, 2w, 1m, 1y",
        token=raw,
        position=position,
    )


def _parse_relative(raw: str, position: int) -> DateValue:
    relative = _RELATIVE_DATE.match(raw)
    if not relative:
        raise ValueParseError(
            "Invalid relative age. Use a value like 30d, 2w, 1m, 1y",
            token=raw,
            position=position,
        )
    return DateValue(days_ago=int(relative.group(1)) * _RELATIVE_UNIT_DAYS[relative.group(2).lower()])


def _parse_size(raw: str, position: int) -> int:
    match = _SIZE.match(raw)
    if not match:
        raise ValueParseError(
            "Invalid size. Use a byte count, optionally suffixed with K, M or G",
            token=raw,
            position=position,
        )
    return int(match.group(1)) * _SIZE_UNITS[match.group(2).lower()]


def _parse_bool(raw: str, position: int) -> bool:
    lowered = raw.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueParseError("Invalid boolean. Use true or false", token=raw, position=position)


def _parse_is(raw: str, position: int) -> bool:
    lowered = raw.lower()
    if lowered == "unread":
        return True
    if lowered == "read":
        return False
    raise ValueParseError("Unsupported value for is:. Use is:unread or is:read", token=raw, position=position)


def _parse_has(raw: str, position: int) -> str:
    if raw.lower() == "attachment":
        return "attachment"
    raise ValueParseError("Unsupported value for has:. Use has:attachment", token=raw, position=position)


@dataclass(frozen=True)
class _FieldSpec:
    canonical: str
    parse: Callable[[str, int], object]
    # None: equality only. True: a comparison operator is mandatory.
    requires_operator: bool | None = None


_FIELD_SPECS: dict[str, _FieldSpec] = {
    "from": _FieldSpec("from", lambda raw, _pos: raw),
    "to": _FieldSpec("to", lambda raw, _pos: raw),
    "subject": _FieldSpec("subject", lambda raw, _pos: raw),
    "body": _FieldSpec("body", lambda raw, _pos: raw),
    "unread": _FieldSpec("unread", _parse_bool),
    "is": _FieldSpec("unread", _parse_is),
    "since": _FieldSpec("since", _parse_date),
    "before": _FieldSpec("before", _parse_date),
    "newer": _FieldSpec("since", _parse_relative),
    "older": _FieldSpec("before", _parse_relative),
    "date": _FieldSpec("date", _parse_date, requires_operator=True),
    "size": _FieldSpec("size", _parse_size, requires_operator=True),
    "has": _FieldSpec("has", _parse_has),
    # Folder overrides are split off before translation, see split_folder.
    "in": _FieldSpec("folder", lambda raw, _pos: raw),
    "folder": _FieldSpec("folder", lambda raw, _pos: raw),
}

SUPPORTED_FIELDS = tuple(_FIELD_SPECS)


class _Parser:
    def __init__(self, query: str, tokens: list[Token]) -> None:
        self._query = query
        self._tokens = tokens
        self._index = 0

    def parse(self) -> Expression:
        if not self._tokens:
            raise QuerySyntaxError("Empty query", position=0)

        expr = self._or_expr()
        token = self._peek()
        if token is not None:
            if token.kind == _RPAREN:
                raise QuerySyntaxError("Unbalanced ')'", token=token.text, position=token.position)
            raise QuerySyntaxError("Unexpected token", token=token.text, position=token.position)
        return expr

    def _peek(self) -> Token | None:
        if self._index < len(self._tokens):
            return self._tokens[self._index]
        return None

    def _advance(self) -> Token:
        token = self._tokens[self._index]
        self._index += 1
        return token

    def _match_keyword(self, keyword: str) -> Token | None:
        token = self._peek()
        if token is not None and token.is_keyword(keyword):
            return self._advance()
        return None

    def _starts_operand(self, token: Token | None) -> bool:
        if token is None or token.kind == _RPAREN:
            return False
        return not (token.is_keyword("AND") or token.is_keyword("OR"))

    def _require_operand(self, operator: Token) -> None:
        if not self._starts_operand(self._peek()):
            raise QuerySyntaxError(
                f"Dangling operator '{operator.text}'",
                token=operator.text,
                position=operator.position,
            )

    def _or_expr(self) -> Expression:
        left = self._and_expr()
        while (operator := self._match_keyword("OR")) is not None:
            self._require_operand(operator)
            left = Or(left, self._and_expr())
        return left

    def _and_expr(self) -> Expression:
        left = self._not_expr()
        while True:
            operator = self._match_keyword("AND")
            if operator is not None:
                self._require_operand(operator)
            elif not self._starts_operand(self._peek()):
                return left
            left = And(left, self._not_expr())

    def _not_expr(self) -> Expression:
        token = self._peek()
        if token is not None and (token.kind == _BANG or token.is_keyword("NOT")):
            operator = self._advance()
            self._require_operand(operator)
            return Not(self._not_expr())
        return self._primary()

    def _primary(self) -> Expression:
        token = self._peek()
        if token is None:
            raise QuerySyntaxError("Unexpected end of query", position=len(self._query))

        if token.kind == _LPAREN:
            opening = self._advance()
            if self._peek() is not None and self._peek().kind == _RPAREN:  # type: ignore[union-attr]
                raise QuerySyntaxError("Empty parentheses", token="()", position=opening.position)
            expr = self._or_expr()
            closing = self._peek()
            if closing is None or closing.kind != _RPAREN:
                raise QuerySyntaxError("Unbalanced '('", token=opening.text, position=opening.position)
            self._advance()
            return expr

        if token.kind == _RPAREN:
            raise QuerySyntaxError("Unbalanced ')'", token=token.text, position=token.position)

        if token.is_keyword("AND") or token.is_keyword("OR"):
            raise QuerySyntaxError(
                f"Unexpected operator '{token.text}'",
                token=token.text,
                position=token.position,
            )

        return self._field(self._advance())

    def _field(self, token: Token) -> FieldPredicate:
        text = token.text
        colon = text.find(":")
        if colon <= 0 or (token.quote_offset is not None and token.quote_offset <= colon):
            raise QuerySyntaxError(
                "Invalid query syntax, expected field:value (e.g. from:user@example.com)",
                token=text,
                position=token.position,
            )

        name = text[:colon].lower()
        spec = _FIELD_SPECS.get(name)
        if spec is None:
            raise UnknownFieldError(
                f"Unknown field '{text[:colon]}'. Supported fields: {', '.join(SUPPORTED_FIELDS)}",
                token=text[:colon],
                position=token.position,
            )

        raw = text[colon + 1 :]
        value_position = token.position + colon + 1
        operator = Operator.EQUALS
        # A quoted value is taken literally, so "subject:\">x\"" is not a comparison.
        if token.quote_offset is None and raw[:1] in (">", "<"):
            operator = Operator.GREATER_THAN if raw[0] == ">" else Operator.LESS_THAN
            raw = raw[1:]
            if not raw:
                raise QuerySyntaxError(
                    "Empty value after operator. Expected field:>value or field:<value",
                    token=text,
                    position=token.position,
                )
        elif not raw:
            raise QuerySyntaxError(
                f"Empty value for field '{name}'. Expected format: field:value",
                token=text,
                position=token.position,
            )

        if spec.requires_operator and operator == Operator.EQUALS:
            raise QuerySyntaxError(
                f"Field '{name}' requires a comparison operator: {name}:>value or {name}:<value",
                token=text,
                position=token.position,
            )
        if not spec.requires_operator and operator != Operator.EQUALS:
            raise QuerySyntaxError(
                f"Field '{name}' does not support comparison operators",
                token=text,
                position=token.position,
            )

        value = spec.parse(raw, value_position)
        return FieldPredicate(spec.canonical, operator, value, position=token.position)  # type: ignore[arg-type]


def parse_query(query: str) -> Expression:
    """Parse a query string into an expression tree.

    Args:
        query: Query text, e.g. ``from:github.com AND unread:true``.

    Returns:
        The root of the expression tree.

    Raises:
        QuerySyntaxError: The query structure is malformed.
        UnknownFieldError: A field name is not supported.
        ValueParseError: A date, size or boolean value is malformed.
    """

    return _Parser(query, tokenize(query)).parse()
