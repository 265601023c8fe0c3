"""Trigger predicates — boolean expressions over condition codes.

Grammar (keywords are case-insensitive):

    expr    := term ("OR" term)*
    term    := factor ("AND" factor)*
    factor  := "NOT" factor | "(" expr ")" | CODE

CODE must be a canonical ConditionCode value.  This is the whole
language: no comparisons, no functions, no variables.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Union

from pasture_risk.domain.enums import ConditionCode
from pasture_risk.domain.errors import PredicateSyntaxError

_TOKEN = re.compile(r"\s*(?:(\()|(\))|([A-Za-z_][A-Za-z0-9_]*))")
_KEYWORDS = {"AND", "OR", "NOT"}


@dataclass(frozen=True)
class Code:
    code: ConditionCode

    def evaluate(self, active: frozenset[ConditionCode]) -> bool:
        return self.code in active


@dataclass(frozen=True)
class Not:
    operand: "Node"

    def evaluate(self, active: frozenset[ConditionCode]) -> bool:
        return not self.operand.evaluate(active)


@dataclass(frozen=True)
class And:
    operands: tuple["Node", ...]

    def evaluate(self, active: frozenset[ConditionCode]) -> bool:
        return all(o.evaluate(active) for o in self.operands)


@dataclass(frozen=True)
class Or:
    operands: tuple["Node", ...]

    def evaluate(self, active: frozenset[ConditionCode]) -> bool:
        return any(o.evaluate(active) for o in self.operands)


Node = Union[Code, Not, And, Or]


@dataclass(frozen=True)
class Predicate:
    """A compiled trigger predicate."""

    expression: str
    root: Node

    def evaluate(self, active: frozenset[ConditionCode]) -> bool:
        return self.root.evaluate(active)

    @property
    def codes(self) -> frozenset[ConditionCode]:
        """Every condition code the expression references."""
        found: set[ConditionCode] = set()
        stack: list[Node] = [self.root]
        while stack:
            node = stack.pop()
            if isinstance(node, Code):
                found.add(node.code)
            elif isinstance(node, Not):
                stack.append(node.operand)
            else:
                stack.extend(node.operands)
        return frozenset(found)


def _tokenize(expression: str) -> list[str]:
    tokens: list[str] = []
    pos = 0
    stripped = expression.rstrip()
    while pos < len(stripped):
        m = _TOKEN.match(stripped, pos)
        if m is None:
            raise PredicateSyntaxError(expression, f"unexpected character at offset {pos}")
        tokens.append(m.group(m.lastindex))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, expression: str) -> None:
        self._expression = expression
        self._tokens = _tokenize(expression)
        self._pos = 0

    def parse(self) -> Node:
        if not self._tokens:
            raise PredicateSyntaxError(self._expression, "empty expression")
        node = self._expr()
        if self._pos != len(self._tokens):
            raise PredicateSyntaxError(self._expression, f"unexpected token {self._tokens[self._pos]!r}")
        return node

    def _peek(self) -> str | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _keyword(self, word: str) -> bool:
        tok = self._peek()
        if tok is not None and tok.upper() == word:
            self._pos += 1
            return True
        return False

    def _expr(self) -> Node:
        operands = [self._term()]
        while self._keyword("OR"):
            operands.append(self._term())
        return operands[0] if len(operands) == 1 else Or(tuple(operands))

    def _term(self) -> Node:
        operands = [self._factor()]
        while self._keyword("AND"):
            operands.append(self._factor())
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    def _factor(self) -> Node:
        if self._keyword("NOT"):
            return Not(self._factor())
        tok = self._peek()
        if tok is None:
            raise PredicateSyntaxError(self._expression, "unexpected end of expression")
        self._pos += 1
        if tok == "(":
            node = self._expr()
            if self._peek() != ")":
                raise PredicateSyntaxError(self._expression, "missing closing parenthesis")
            self._pos += 1
            return node
        if tok == ")" or tok.upper() in _KEYWORDS:
            raise PredicateSyntaxError(self._expression, f"unexpected token {tok!r}")
        try:
            return Code(ConditionCode(tok.lower()))
        except ValueError:
            raise PredicateSyntaxError(self._expression, f"unknown condition code {tok!r}") from None


@lru_cache(maxsize=1024)
def compile_predicate(expression: str) -> Predicate:
    """Parse *expression* into a Predicate.

    Raises:
        PredicateSyntaxError: On malformed syntax or an unknown code.
    """
    return Predicate(expression=expression, root=_Parser(expression).parse())
