"""
Filter expressions.

Grammar (keywords are case-insensitive):

    expr       := or_expr
    or_expr    := and_expr ("OR" and_expr)*
    and_expr   := unary ("AND" unary)*
    unary      := "NOT" unary | "(" expr ")" | comparison
    comparison := field op literal
    op         := "=" | ">" | "<" | ">=" | "<="
    literal    := number | 'string' | TRUE | FALSE

Only plain conjunctions of comparisons can be answered from attribute indexes;
OR / NOT need a full scan.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TypeAlias, Union

from features.types import AttributeValue
from store.attributes import RANK_NUMBER, value_key
from store.errors import InvalidFilter

OPERATORS = ("=", ">", "<", ">=", "<=")

# Integers from this magnitude on can share an f64 index key with a neighbour.
MAX_EXACT_INT = 2**53

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<num>[-+]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][-+]?\d+)?)
    |(?P<str>'(?:[^']|'')*')
    |(?P<qident>"(?:[^"]|"")+")
    |(?P<op><=|>=|<>|!=|=|<|>)
    |(?P<lp>\()
    |(?P<rp>\))
    |(?P<ident>[A-Za-z_][A-Za-z0-9_.]*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"AND", "OR", "NOT", "TRUE", "FALSE"}


@dataclass(frozen=True)
class Comparison:
    field: str
    op: str
    value: AttributeValue

    def matches(self, attributes: dict[str, AttributeValue]) -> bool:
        return compare(attributes.get(self.field), self.op, self.value)


@dataclass(frozen=True)
class And:
    items: tuple["Expr", ...]


@dataclass(frozen=True)
class Or:
    items: tuple["Expr", ...]


@dataclass(frozen=True)
class Not:
    item: "Expr"


Expr: TypeAlias = Union[Comparison, And, Or, Not]


def compare(value: AttributeValue, op: str, literal: AttributeValue) -> bool:
    """
    Same ordering as the attribute index: values of different types never match,
    and nulls never match.
    """
    a = value_key(value)
    b = value_key(literal)
    if a is None or b is None or a[0] != b[0]:
        return False
    if a[0] == RANK_NUMBER:
        # int and float compare exactly in Python; the index key is only f64
        a, b = value, literal
    if op == "=":
        return a == b
    if op == ">":
        return a > b
    if op == "<":
        return a < b
    if op == ">=":
        return a >= b
    if op == "<=":
        return a <= b
    raise InvalidFilter(f"Unsupported operator '{op}'")


def evaluate(expr: Expr, attributes: dict[str, AttributeValue]) -> bool:
    if isinstance(expr, Comparison):
        return expr.matches(attributes)
    if isinstance(expr, And):
        return all(evaluate(e, attributes) for e in expr.items)
    if isinstance(expr, Or):
        return any(evaluate(e, attributes) for e in expr.items)
    if isinstance(expr, Not):
        return not evaluate(expr.item, attributes)
    raise TypeError(f"Unknown filter node {type(expr).__name__}")


def exact_in_index(c: Comparison) -> bool:
    """False when the literal may collide with neighbouring values in an f64 index key."""
    v = c.value
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return True
    return abs(v) < MAX_EXACT_INT


def conjuncts(expr: Expr) -> list[Comparison] | None:
    """Flatten an AND-only expression into its comparisons; None if OR/NOT appear."""
    if isinstance(expr, Comparison):
        return [expr]
    if isinstance(expr, And):
        out: list[Comparison] = []
        for e in expr.items:
            sub = conjuncts(e)
            if sub is None:
                return None
            out.extend(sub)
        return out
    return None


def fields(expr: Expr) -> set[str]:
    if isinstance(expr, Comparison):
        return {expr.field}
    if isinstance(expr, (And, Or)):
        out: set[str] = set()
        for e in expr.items:
            out |= fields(e)
        return out
    if isinstance(expr, Not):
        return fields(expr.item)
    return set()


@dataclass(frozen=True)
class _Tok:
    kind: str
    text: str
    pos: int


def _tokenize(text: str) -> list[_Tok]:
    out: list[_Tok] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise InvalidFilter(f"Unexpected character {text[pos]!r} at position {pos}")
        kind = m.lastgroup or ""
        if kind != "ws":
            tok_text = m.group(kind)
            if kind == "ident" and tok_text.upper() in _KEYWORDS:
                kind = tok_text.upper()
            out.append(_Tok(kind=kind, text=tok_text, pos=pos))
        pos = m.end()
    return out


class _Parser:
    def __init__(self, tokens: list[_Tok]):
        self.tokens = tokens
        self.i = 0

    def peek(self) -> _Tok | None:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def take(self, *kinds: str) -> _Tok:
        tok = self.peek()
        if tok is None:
            raise InvalidFilter(f"Unexpected end of filter, expected {' or '.join(kinds)}")
        if kinds and tok.kind not in kinds:
            raise InvalidFilter(
                f"Unexpected {tok.text!r} at position {tok.pos}, expected {' or '.join(kinds)}"
            )
        self.i += 1
        return tok

    def parse(self) -> Expr:
        expr = self.or_expr()
        tok = self.peek()
        if tok is not None:
            raise InvalidFilter(f"Unexpected {tok.text!r} at position {tok.pos}")
        return expr

    def or_expr(self) -> Expr:
        items = [self.and_expr()]
        while (tok := self.peek()) is not None and tok.kind == "OR":
            self.i += 1
            items.append(self.and_expr())
        return items[0] if len(items) == 1 else Or(tuple(items))

    def and_expr(self) -> Expr:
        items = [self.unary()]
        while (tok := self.peek()) is not None and tok.kind == "AND":
            self.i += 1
            items.append(self.unary())
        return items[0] if len(items) == 1 else And(tuple(items))

    def unary(self) -> Expr:
        tok = self.peek()
        if tok is not None and tok.kind == "NOT":
            self.i += 1
            return Not(self.unary())
        if tok is not None and tok.kind == "lp":
            self.i += 1
            inner = self.or_expr()
            self.take("rp")
            return inner
        return self.comparison()

    def comparison(self) -> Comparison:
        name_tok = self.take("ident", "qident")
        name = name_tok.text
        if name_tok.kind == "qident":
            name = name[1:-1].replace('""', '"')
        op_tok = self.take("op")
        if op_tok.text not in OPERATORS:
            raise InvalidFilter(f"Unsupported operator {op_tok.text!r} at position {op_tok.pos}")
        return Comparison(field=name, op=op_tok.text, value=self.literal())

    def literal(self) -> AttributeValue:
        tok = self.take("num", "str", "TRUE", "FALSE")
        if tok.kind == "num":
            if re.fullmatch(r"[-+]?\d+", tok.text):
                return int(tok.text)
            return float(tok.text)
        if tok.kind == "str":
            return tok.text[1:-1].replace("''", "'")
        return tok.kind == "TRUE"


def parse_filter(text: str) -> Expr:
    src = (text or "").strip()
    if not src:
        raise InvalidFilter("Filter expression is empty")
    return _Parser(_tokenize(src)).parse()
