"""Query language: parsing and translation."""

from mailtrail.query.expressions import (
    And,
    DateValue,
    Expression,
    FieldPredicate,
    Not,
    Operator,
    Or,
    split_folder,
)
from mailtrail.query.parser import SUPPORTED_FIELDS, parse_query
from mailtrail.query.translator import (
    IMAP_SEARCH_FIELDS,
    FilterCriterion,
    compile_predicate,
    evaluate,
    translate,
)

__all__ = [
    "And",
    "DateValue",
    "Expression",
    "FieldPredicate",
    "FilterCriterion",
    "IMAP_SEARCH_FIELDS",
    "Not",
    "Operator",
    "Or",
    "SUPPORTED_FIELDS",
    "compile_predicate",
    "evaluate",
    "parse_query",
    "split_folder",
    "translate",
]
