"""
Invariant expressions for custom business rules.

A small boolean language over record paths:

    expr    := or_expr ["implies" or_expr]
    or_expr := and_expr ("or" and_expr)*
    and_expr:= clause ("and" clause)*
    clause  := "not" clause | "(" expr ")"
             | "exists(" path ")"
             | "count(" path ")" OP number
             | operand OP operand
    operand := path | 'text' | number | true | false

OP is one of ``= != < <= > >=``. Paths use the dotted notation of
``get_values_by_path``. A comparison whose path resolves to nothing is false.
Values that both parse as FHIR dates are compared as dates.
"""

import re
from typing import Any, Callable

from healthval.services.validation.aspects.base import (
    get_values_by_path,
    is_present,
    parse_fhir_datetime,
)

_TOKEN = re.compile(
    r"\s*(?:(?P<string>'[^']*'|\"[^\"]*\")"
    r"|(?P<number>-?\d+(?:\.\d+)?(?![\w.]))"
    r"|(?P<op><=|>=|!=|=|<|>)"
    r"|(?P<paren>[()])"
    r"|(?P<word>[A-Za-z_][\w.\-]*))"
)

_KEYWORDS = {"and", "or", "not", "implies", "exists", "count", "true", "false"}
_OPERATORS = {"=", "!=", "<", "<=", ">", ">="}

Predicate = Callable[[dict[str, Any]], bool]


class InvariantSyntaxError(ValueError):
    """Raised for expressions that cannot be parsed."""

    def __init__(self, expression: str, detail: str):
        super().__init__(f"Invalid invariant '{expression}': {detail}")
        self.expression = expression


def tokenize(expression: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    position = 0
    text = expression.rstrip()
    while position < len(text):
        match = _TOKEN.match(text, position)
        if not match or match.end() == position:
            raise InvariantSyntaxError(expression, f"unexpected input at position {position}")
        kind = match.lastgroup or ""
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.position = 0

    def _peek(self) -> tuple[str, str]:
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return ("end", "")

    def _next(self) -> tuple[str, str]:
        token = self._peek()
        self.position += 1
        return token

    def _expect(self, value: str) -> None:
        kind, text = self._next()
        if text != value:
            raise InvariantSyntaxError(self.expression, f"expected '{value}', found '{text or kind}'")

    def _accept_word(self, word: str) -> bool:
        kind, text = self._peek()
        if kind == "word" and text == word:
            self.position += 1
            return True
        return False

    def parse(self) -> Predicate:
        if not self.tokens:
            raise InvariantSyntaxError(self.expression, "empty expression")
        predicate = self._expr()
        if self.position != len(self.tokens):
            raise InvariantSyntaxError(
                self.expression, f"unexpected '{self._peek()[1]}'"
            )
        return predicate

    def _expr(self) -> Predicate:
        left = self._or()
        if self._accept_word("implies"):
            right = self._or()
            return lambda r: (not left(r)) or right(r)
        return left

    def _or(self) -> Predicate:
        terms = [self._and()]
        while self._accept_word("or"):
            terms.append(self._and())
        if len(terms) == 1:
            return terms[0]
        return lambda r: any(t(r) for t in terms)

    def _and(self) -> Predicate:
        terms = [self._clause()]
        while self._accept_word("and"):
            terms.append(self._clause())
        if len(terms) == 1:
            return terms[0]
        return lambda r: all(t(r) for t in terms)

    def _clause(self) -> Predicate:
        if self._accept_word("not"):
            inner = self._clause()
            return lambda r: not inner(r)

        kind, text = self._peek()
        if kind == "paren" and text == "(":
            self._next()
            inner = self._expr()
            self._expect(")")
            return inner

        if self._accept_word("exists"):
            path = self._call_argument()
            return lambda r: any(is_present(v) for v in get_values_by_path(r, path))

        if self._accept_word("count"):
            path = self._call_argument()
            op = self._operator()
            kind, number = self._next()
            if kind != "number":
                raise InvariantSyntaxError(self.expression, "count() must compare with a number")
            limit = float(number)
            return lambda r: _compare(float(len(get_values_by_path(r, path))), op, limit)

        left = self._operand()
        op = self._operator()
        right = self._operand()
        return lambda r: _compare_operands(left(r), op, right(r))

    def _call_argument(self) -> str:
        self._expect("(")
        kind, path = self._next()
        if kind != "word" or path in _KEYWORDS:
            raise InvariantSyntaxError(self.expression, "expected a path")
        self._expect(")")
        return path

    def _operator(self) -> str:
        kind, text = self._next()
        if kind != "op" or text not in _OPERATORS:
            raise InvariantSyntaxError(self.expression, f"expected an operator, found '{text}'")
        return text

    def _operand(self) -> Callable[[dict[str, Any]], list[Any]]:
        kind, text = self._next()
        if kind == "string":
            literal = text[1:-1]
            return lambda r: [literal]
        if kind == "number":
            number = float(text)
            return lambda r: [number]
        if kind == "word" and text in ("true", "false"):
            flag = text == "true"
            return lambda r: [flag]
        if kind == "word" and text not in _KEYWORDS:
            return lambda r: get_values_by_path(r, text)
        raise InvariantSyntaxError(self.expression, f"unexpected '{text or kind}'")


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    if isinstance(left, bool) or isinstance(right, bool):
        return left, right
    if isinstance(left, (int, float)) or isinstance(right, (int, float)):
        try:
            return float(left), float(right)
        except (TypeError, ValueError):
            return str(left), str(right)
    left_date, right_date = parse_fhir_datetime(left), parse_fhir_datetime(right)
    if left_date is not None and right_date is not None:
        return left_date, right_date
    return left, right


def _compare(left: Any, op: str, right: Any) -> bool:
    if op == "=":
        return left == right
    if op == "!=":
        return left != right
    try:
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
    except TypeError:
        return False
    return False


def _compare_operands(left: list[Any], op: str, right: list[Any]) -> bool:
    if not left or not right:
        return False
    a, b = _coerce_pair(left[0], right[0])
    return _compare(a, op, b)


def compile_invariant(expression: str) -> Predicate:
    """Compile an expression into a predicate over a record."""
    return _Parser(expression).parse()


def evaluate_invariant(expression: str, resource: dict[str, Any]) -> bool:
    return compile_invariant(expression)(resource)
