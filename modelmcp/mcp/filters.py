"""Parser for OData-style ``filter`` and ``orderby`` resource parameters.

The grammar is small on purpose::

    expr    := and ('or' and)*
    and     := unary ('and' unary)*
    unary   := 'not' unary | primary
    primary := '(' expr ')'
             | ('contains' | 'startswith' | 'endswith') '(' field ',' literal ')'
             | field op literal

Anything outside it is rejected, so raw text never reaches a backend.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from ..utils.errors import ValidationError
from .query import COMPARISON_OPERATORS, STRING_OPERATORS, AllOf, AnyOf, Node, Not, QueryTranslator, SortKey

MAX_FILTER_LENGTH = 1000

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
  | (?P<punct>[(),])
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)
_ORDERBY_PATTERN = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)(?:\s+(asc|desc))?\s*$", re.IGNORECASE)
_SELECT_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_LITERAL_KEYWORDS = {"true": True, "false": False, "null": None}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    position = 0
    while position < len(text):
        match = _TOKEN_PATTERN.match(text, position)
        if match is None:
            raise ValidationError(
                f"Unexpected character {text[position]!r} at position {position} in filter",
                field="filter",
            )
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(Token(kind, match.group(), position))
        position = match.end()
    return tokens


class FilterParser:
    """Recursive-descent parser producing predicate nodes for one entity."""

    def __init__(self, translator: QueryTranslator, text: str) -> None:
        if len(text) > MAX_FILTER_LENGTH:
            raise ValidationError(
                f"filter exceeds {MAX_FILTER_LENGTH} characters",
                field="filter",
            )
        self.translator = translator
        self.tokens = tokenize(text)
        self.index = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise ValidationError("filter must not be empty", field="filter")
        node = self._or()
        if self._peek() is not None:
            token = self._peek()
            raise ValidationError(f"Unexpected '{token.text}' at position {token.position} in filter", field="filter")
        return node

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _next(self, expected: str) -> Token:
        token = self._peek()
        if token is None:
            raise ValidationError(f"Unexpected end of filter, expected {expected}", field="filter")
        self.index += 1
        return token

    def _keyword(self, word: str) -> bool:
        token = self._peek()
        if token is not None and token.kind == "name" and token.text.lower() == word:
            self.index += 1
            return True
        return False

    def _punct(self, char: str) -> None:
        token = self._next(f"'{char}'")
        if token.text != char:
            raise ValidationError(
                f"Expected '{char}' at position {token.position} in filter, got '{token.text}'",
                field="filter",
            )

    def _or(self) -> Node:
        nodes = [self._and()]
        while self._keyword("or"):
            nodes.append(self._and())
        return nodes[0] if len(nodes) == 1 else AnyOf(tuple(nodes))

    def _and(self) -> Node:
        nodes = [self._unary()]
        while self._keyword("and"):
            nodes.append(self._unary())
        return nodes[0] if len(nodes) == 1 else AllOf(tuple(nodes))

    def _unary(self) -> Node:
        if self._keyword("not"):
            return Not(self._unary())
        return self._primary()

    def _primary(self) -> Node:
        token = self._next("an expression")
        if token.text == "(":
            node = self._or()
            self._punct(")")
            return node
        if token.kind != "name":
            raise ValidationError(f"Expected a field name at position {token.position} in filter", field="filter")

        function = token.text.lower()
        following = self._peek()
        if function in STRING_OPERATORS and following is not None and following.text == "(":
            self._punct("(")
            field_name = self._next("a field name")
            if field_name.kind != "name":
                raise ValidationError(f"Expected a field name in {function}()", field="filter")
            self._punct(",")
            value = self._literal()
            self._punct(")")
            return self.translator.condition(field_name.text, function, value, usage="filter")

        operator = self._next("an operator")
        op = operator.text.lower()
        if operator.kind != "name" or op not in COMPARISON_OPERATORS:
            raise ValidationError(
                f"Unsupported operator '{operator.text}' in filter; allowed: {', '.join(COMPARISON_OPERATORS)}",
                field="filter",
                expected=", ".join(COMPARISON_OPERATORS),
            )
        return self.translator.condition(token.text, op, self._literal(), usage="filter")

    def _literal(self) -> Any:
        token = self._next("a literal")
        if token.kind == "string":
            return token.text[1:-1].replace("''", "'")
        if token.kind == "number":
            text = token.text
            return float(text) if any(c in text for c in ".eE") else int(text)
        if token.kind == "name" and token.text.lower() in _LITERAL_KEYWORDS:
            return _LITERAL_KEYWORDS[token.text.lower()]
        raise ValidationError(f"Expected a literal at position {token.position} in filter", field="filter")


def parse_filter(translator: QueryTranslator, text: str) -> Node:
    return FilterParser(translator, text).parse()


def parse_orderby(translator: QueryTranslator, text: str) -> Tuple[SortKey, ...]:
    keys: List[SortKey] = []
    for part in text.split(","):
        match = _ORDERBY_PATTERN.match(part)
        if match is None:
            raise ValidationError(f"Invalid orderby clause {part.strip()!r}", field="orderby", expected="field [asc|desc]")
        name, direction = match.groups()
        translator.field(name, "orderby")
        keys.append(SortKey(name, (direction or "asc").lower() == "desc"))
    return tuple(keys)


def parse_select(translator: QueryTranslator, text: str) -> Tuple[str, ...]:
    columns: List[str] = []
    for part in text.split(","):
        name = part.strip()
        if not _SELECT_PATTERN.match(name):
            raise ValidationError(f"Invalid select column {name!r}", field="select")
        translator.field(name, "select")
        if name not in columns:
            columns.append(name)
    return tuple(columns)
