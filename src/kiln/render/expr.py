"""Lexer and recursive-descent parser for selector/template expressions.

Grammar, loosest binding first::

    expr     := or_expr ["if" or_expr "else" expr]
    or_expr  := and_expr ("or" and_expr)*
    and_expr := not_expr ("and" not_expr)*
    not_expr := "not" not_expr | compare
    compare  := concat (("=="|"!="|"<"|"<="|">"|">="|"in"|"not" "in") concat)*
    concat   := filtered (("~"|"+"|"-") filtered)*
    filtered := unary ("|" NAME [call_args])*
    unary    := "-" unary | primary
    primary  := NUMBER | STRING | NAME [call_args] | "(" expr ")" | "[" [expr ("," expr)*] "]"
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache
from typing import Union

from kiln.errors import RenderError


@dataclass(frozen=True, slots=True)
class Const:
    value: str | int | bool | None


@dataclass(frozen=True, slots=True)
class Name:
    id: str


@dataclass(frozen=True, slots=True)
class ListExpr:
    items: tuple[Expr, ...]


@dataclass(frozen=True, slots=True)
class Call:
    func: str
    args: tuple[Expr, ...] = ()
    kwargs: tuple[tuple[str, Expr], ...] = ()


@dataclass(frozen=True, slots=True)
class Filter:
    value: Expr
    name: str
    args: tuple[Expr, ...] = ()
    kwargs: tuple[tuple[str, Expr], ...] = ()


@dataclass(frozen=True, slots=True)
class Not:
    operand: Expr


@dataclass(frozen=True, slots=True)
class Neg:
    operand: Expr


@dataclass(frozen=True, slots=True)
class BoolOp:
    op: str
    values: tuple[Expr, ...]


@dataclass(frozen=True, slots=True)
class Compare:
    left: Expr
    comparisons: tuple[tuple[str, Expr], ...]


@dataclass(frozen=True, slots=True)
class BinOp:
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True, slots=True)
class IfExpr:
    test: Expr
    body: Expr
    orelse: Expr


Expr = Union[Const, Name, ListExpr, Call, Filter, Not, Neg, BoolOp, Compare, BinOp, IfExpr]


@dataclass(frozen=True, slots=True)
class Token:
    kind: str
    text: str
    pos: int


_TOKEN_SPEC = (
    ("WS", r"\s+"),
    ("NUMBER", r"\d+(?:\.\d+)*"),
    ("STRING", r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\""),
    ("NAME", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("OP", r"==|!=|<=|>=|<|>|\(|\)|\[|\]|,|\||~|\+|-|="),
)
_TOKEN_RE = re.compile("|".join(f"(?P<{kind}>{pattern})" for kind, pattern in _TOKEN_SPEC))
_KEYWORDS = frozenset({"and", "or", "not", "in", "if", "else"})
_CONSTANTS: dict[str, bool | None] = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "none": None,
    "None": None,
}
_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", "'": "'", '"': '"'}


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None or match.lastgroup is None:
            raise _malformed(text, pos, f"unexpected character `{text[pos]}`")
        kind = match.lastgroup
        if kind != "WS":
            value = match.group()
            if kind == "NAME" and value in _KEYWORDS:
                kind = "KEYWORD"
            tokens.append(Token(kind=kind, text=value, pos=pos))
        pos = match.end()
    tokens.append(Token(kind="EOF", text="", pos=len(text)))
    return tokens


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def at(self, kind: str, text: str | None = None) -> bool:
        token = self.current
        return token.kind == kind and (text is None or token.text == text)

    def accept(self, kind: str, text: str | None = None) -> Token | None:
        if self.at(kind, text):
            return self.advance()
        return None

    def expect(self, kind: str, text: str | None = None) -> Token:
        token = self.accept(kind, text)
        if token is None:
            wanted = text or kind.lower()
            found = self.current.text or "end of expression"
            raise _malformed(self.text, self.current.pos, f"expected `{wanted}`, found `{found}`")
        return token

    def parse(self) -> Expr:
        if self.at("EOF"):
            raise _malformed(self.text, 0, "empty expression")
        node = self.expression()
        if not self.at("EOF"):
            raise _malformed(self.text, self.current.pos, f"unexpected `{self.current.text}`")
        return node

    def expression(self) -> Expr:
        body = self.or_expr()
        if self.accept("KEYWORD", "if"):
            test = self.or_expr()
            self.expect("KEYWORD", "else")
            return IfExpr(test=test, body=body, orelse=self.expression())
        return body

    def or_expr(self) -> Expr:
        values = [self.and_expr()]
        while self.accept("KEYWORD", "or"):
            values.append(self.and_expr())
        return values[0] if len(values) == 1 else BoolOp(op="or", values=tuple(values))

    def and_expr(self) -> Expr:
        values = [self.not_expr()]
        while self.accept("KEYWORD", "and"):
            values.append(self.not_expr())
        return values[0] if len(values) == 1 else BoolOp(op="and", values=tuple(values))

    def not_expr(self) -> Expr:
        if self.accept("KEYWORD", "not"):
            return Not(operand=self.not_expr())
        return self.compare()

    def compare(self) -> Expr:
        left = self.concat()
        comparisons: list[tuple[str, Expr]] = []
        while True:
            if self.current.kind == "OP" and self.current.text in ("==", "!=", "<", "<=", ">", ">="):
                op = self.advance().text
            elif self.accept("KEYWORD", "in"):
                op = "in"
            elif self.at("KEYWORD", "not") and self.tokens[self.index + 1].text == "in":
                self.advance()
                self.advance()
                op = "not in"
            else:
                break
            comparisons.append((op, self.concat()))
        if not comparisons:
            return left
        return Compare(left=left, comparisons=tuple(comparisons))

    def concat(self) -> Expr:
        node = self.filtered()
        while self.current.kind == "OP" and self.current.text in ("~", "+", "-"):
            op = self.advance().text
            node = BinOp(op=op, left=node, right=self.filtered())
        return node

    def filtered(self) -> Expr:
        node = self.unary()
        while self.accept("OP", "|"):
            name = self.expect("NAME").text
            args: tuple[Expr, ...] = ()
            kwargs: tuple[tuple[str, Expr], ...] = ()
            if self.at("OP", "("):
                args, kwargs = self.call_args()
            node = Filter(value=node, name=name, args=args, kwargs=kwargs)
        return node

    def unary(self) -> Expr:
        if self.accept("OP", "-"):
            return Neg(operand=self.unary())
        return self.primary()

    def primary(self) -> Expr:
        token = self.current
        if token.kind == "NUMBER":
            self.advance()
            # dotted numbers stay text so `3.10` is not read as 3.1
            return Const(int(token.text) if "." not in token.text else token.text)
        if token.kind == "STRING":
            self.advance()
            return Const(_unquote(token.text))
        if token.kind == "NAME":
            self.advance()
            if token.text in _CONSTANTS:
                return Const(_CONSTANTS[token.text])
            if self.at("OP", "("):
                args, kwargs = self.call_args()
                return Call(func=token.text, args=args, kwargs=kwargs)
            return Name(id=token.text)
        if self.accept("OP", "("):
            node = self.expression()
            self.expect("OP", ")")
            return node
        if self.accept("OP", "["):
            items: list[Expr] = []
            if not self.at("OP", "]"):
                items.append(self.expression())
                while self.accept("OP", ","):
                    items.append(self.expression())
            self.expect("OP", "]")
            return ListExpr(items=tuple(items))
        found = token.text or "end of expression"
        raise _malformed(self.text, token.pos, f"unexpected `{found}`")

    def call_args(self) -> tuple[tuple[Expr, ...], tuple[tuple[str, Expr], ...]]:
        self.expect("OP", "(")
        args: list[Expr] = []
        kwargs: list[tuple[str, Expr]] = []
        if not self.at("OP", ")"):
            while True:
                if self.at("NAME") and self.tokens[self.index + 1].text == "=":
                    key = self.advance().text
                    self.advance()
                    kwargs.append((key, self.expression()))
                else:
                    if kwargs:
                        raise _malformed(
                            self.text,
                            self.current.pos,
                            "positional argument follows keyword argument",
                        )
                    args.append(self.expression())
                if not self.accept("OP", ","):
                    break
        self.expect("OP", ")")
        return tuple(args), tuple(kwargs)


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


def _malformed(text: str, pos: int, reason: str) -> RenderError:
    return RenderError(
        f"malformed expression: {reason}",
        context={"expression": text, "position": str(pos)},
    )


@lru_cache(maxsize=4096)
def parse_expression(text: str) -> Expr:
    """Parse ``text`` into an AST; raises :class:`RenderError` when malformed."""
    return _Parser(text.strip()).parse()


def iter_names(node: Expr) -> Iterator[str]:
    """Every variable name referenced anywhere in ``node`` (all branches)."""
    for child in iter_subexpressions(node):
        if isinstance(child, Name):
            yield child.id


def iter_calls(node: Expr) -> Iterator[Call]:
    for child in iter_subexpressions(node):
        if isinstance(child, Call):
            yield child


def iter_subexpressions(node: Expr) -> Iterator[Expr]:
    yield node
    if isinstance(node, ListExpr):
        children: tuple[Expr, ...] = node.items
    elif isinstance(node, Call):
        children = (*node.args, *(value for _, value in node.kwargs))
    elif isinstance(node, Filter):
        children = (node.value, *node.args, *(value for _, value in node.kwargs))
    elif isinstance(node, (Not, Neg)):
        children = (node.operand,)
    elif isinstance(node, BoolOp):
        children = node.values
    elif isinstance(node, Compare):
        children = (node.left, *(value for _, value in node.comparisons))
    elif isinstance(node, BinOp):
        children = (node.left, node.right)
    elif isinstance(node, IfExpr):
        children = (node.test, node.body, node.orelse)
    else:
        children = ()
    for child in children:
        yield from iter_subexpressions(child)


__all__ = [
    "BinOp",
    "BoolOp",
    "Call",
    "Compare",
    "Const",
    "Expr",
    "Filter",
    "IfExpr",
    "ListExpr",
    "Name",
    "Neg",
    "Not",
    "iter_calls",
    "iter_names",
    "iter_subexpressions",
    "parse_expression",
    "tokenize",
]
