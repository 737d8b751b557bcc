"""
Expression Resolver for Conduit pipelines.

Evaluates mapping sources and response conditions against an execution
context. Resolution is pure: the same expression against the same context
always yields the same value, so failed steps can be retried safely.

Grammar:
    template   := TEXT* ( "${" expr "}" TEXT* )*
    expr       := and_expr ( ("or" | "||") and_expr )*
    and_expr   := not_expr ( ("and" | "&&") not_expr )*
    not_expr   := ("not" | "!") not_expr | comparison
    comparison := operand ( ("==" | "!=") operand )?
    operand    := literal | reference | "(" expr ")"
    reference  := IDENT ( "." IDENT | "[" INT "]" )*
    literal    := STRING | NUMBER | true | false | null

Reference roots:
    args.x          request/event/job arguments
    env.X           document environment bindings
    pipeline[i].x   output of the i-th executed step, by position
    stepName.x      output of a named, already executed step
    x               field of the subject being evaluated (e.g. the
                    pipeline outcome when selecting a response)

Usage:
    resolver = ExpressionResolver()
    resolver.resolve("${args.team_name}", ctx)
    resolver.evaluate_condition("success == false", ctx, subject=outcome)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Iterator, Union

from conduit.errors import ExpressionSyntaxError, UnresolvedReferenceError

if TYPE_CHECKING:
    from .context import ExecutionContext

logger = logging.getLogger(__name__)

RESERVED_ROOTS = ("args", "env", "pipeline")

_KEYWORDS = {
    "and": "AND",
    "or": "OR",
    "not": "NOT",
    "true": "TRUE",
    "false": "FALSE",
    "null": "NULL",
}

_MISSING = object()

_OPERATORS = {"==": "EQ", "!=": "NE", "&&": "AND", "||": "OR"}
_PUNCTUATION = {".": "DOT", "[": "LBRACK", "]": "RBRACK", "(": "LPAREN", ")": "RPAREN", "!": "NOT"}


# =============================================================================
# AST
# =============================================================================


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Reference:
    root: str
    path: tuple[Union[str, int], ...]

    @property
    def text(self) -> str:
        out = self.root
        for part in self.path:
            out += f"[{part}]" if isinstance(part, int) else f".{part}"
        return out


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class BoolOp:
    op: str
    operands: tuple["Node", ...]


Node = Union[Literal, Reference, Not, Compare, BoolOp]


@dataclass(frozen=True)
class CompiledExpression:
    """
    A parsed expression or template.

    `parts` holds literal text and nodes in order. A single node with no
    surrounding text evaluates to the node's raw value rather than a string.
    """

    source: str
    parts: tuple[Union[str, Node], ...]

    @property
    def is_single_value(self) -> bool:
        return len(self.parts) == 1 and not isinstance(self.parts[0], str)

    def references(self) -> list[Reference]:
        refs: list[Reference] = []
        for part in self.parts:
            if not isinstance(part, str):
                refs.extend(_walk_references(part))
        return refs


def _walk_references(node: Node) -> Iterator[Reference]:
    if isinstance(node, Reference):
        yield node
    elif isinstance(node, Not):
        yield from _walk_references(node.operand)
    elif isinstance(node, Compare):
        yield from _walk_references(node.left)
        yield from _walk_references(node.right)
    elif isinstance(node, BoolOp):
        for operand in node.operands:
            yield from _walk_references(operand)


# =============================================================================
# Tokenizer
# =============================================================================


@dataclass(frozen=True)
class _Token:
    kind: str
    value: Any
    pos: int


def _tokenize(text: str, source: str, offset: int = 0) -> list[_Token]:
    tokens: list[_Token] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        pos = offset + i
        if ch.isspace():
            i += 1
            continue
        two = text[i : i + 2]
        if two in _OPERATORS:
            tokens.append(_Token(_OPERATORS[two], two, pos))
            i += 2
            continue
        if ch in _PUNCTUATION:
            tokens.append(_Token(_PUNCTUATION[ch], ch, pos))
            i += 1
            continue
        if ch in ("'", '"'):
            j = i + 1
            chars: list[str] = []
            while j < n and text[j] != ch:
                if text[j] == "\\" and j + 1 < n:
                    j += 1
                chars.append(text[j])
                j += 1
            if j >= n:
                raise ExpressionSyntaxError(source, "unterminated string literal", pos)
            tokens.append(_Token("STRING", "".join(chars), pos))
            i = j + 1
            continue
        if ch.isdigit() or (ch == "-" and i + 1 < n and text[i + 1].isdigit()):
            j = i + 1
            while j < n and (text[j].isdigit() or text[j] == "."):
                # a dot after digits is a decimal point only when a digit follows
                if text[j] == "." and not (j + 1 < n and text[j + 1].isdigit()):
                    break
                j += 1
            literal = text[i:j]
            tokens.append(_Token("NUMBER", float(literal) if "." in literal else int(literal), pos))
            i = j
            continue
        if ch.isalpha() or ch == "_":
            j = i + 1
            while j < n and (text[j].isalnum() or text[j] in "_-"):
                j += 1
            word = text[i:j]
            kind = _KEYWORDS.get(word, "IDENT")
            tokens.append(_Token(kind, word, pos))
            i = j
            continue
        raise ExpressionSyntaxError(source, f"unexpected character '{ch}'", pos)
    tokens.append(_Token("EOF", None, offset + n))
    return tokens


# =============================================================================
# Parser
# =============================================================================


class _Parser:
    def __init__(self, tokens: list[_Token], source: str):
        self._tokens = tokens
        self._i = 0
        self._source = source

    def _peek(self) -> _Token:
        return self._tokens[self._i]

    def _next(self) -> _Token:
        tok = self._tokens[self._i]
        self._i += 1
        return tok

    def _expect(self, kind: str) -> _Token:
        tok = self._next()
        if tok.kind != kind:
            raise ExpressionSyntaxError(
                self._source, f"expected {kind.lower()} but found '{tok.value}'", tok.pos
            )
        return tok

    def parse(self) -> Node:
        node = self._or()
        tok = self._peek()
        if tok.kind != "EOF":
            raise ExpressionSyntaxError(self._source, f"unexpected '{tok.value}'", tok.pos)
        return node

    def _or(self) -> Node:
        operands = [self._and()]
        while self._peek().kind == "OR":
            self._next()
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def _and(self) -> Node:
        operands = [self._not()]
        while self._peek().kind == "AND":
            self._next()
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def _not(self) -> Node:
        if self._peek().kind == "NOT":
            self._next()
            return Not(self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._operand()
        if self._peek().kind in ("EQ", "NE"):
            op = self._next().value
            right = self._operand()
            return Compare(op, left, right)
        return left

    def _operand(self) -> Node:
        tok = self._next()
        if tok.kind == "LPAREN":
            node = self._or()
            self._expect("RPAREN")
            return node
        if tok.kind in ("STRING", "NUMBER"):
            return Literal(tok.value)
        if tok.kind == "TRUE":
            return Literal(True)
        if tok.kind == "FALSE":
            return Literal(False)
        if tok.kind == "NULL":
            return Literal(None)
        if tok.kind == "IDENT":
            return self._reference(tok.value)
        raise ExpressionSyntaxError(self._source, f"unexpected '{tok.value}'", tok.pos)

    def _reference(self, root: str) -> Reference:
        path: list[Union[str, int]] = []
        while True:
            kind = self._peek().kind
            if kind == "DOT":
                self._next()
                tok = self._next()
                # Keywords are valid field names after a dot (outcome.null is unusual but legal)
                if tok.kind not in ("IDENT", "TRUE", "FALSE", "NULL", "AND", "OR", "NOT"):
                    raise ExpressionSyntaxError(
                        self._source, f"expected field name after '.', found '{tok.value}'", tok.pos
                    )
                path.append(tok.value)
            elif kind == "LBRACK":
                self._next()
                tok = self._expect("NUMBER")
                if not isinstance(tok.value, int) or tok.value < 0:
                    raise ExpressionSyntaxError(
                        self._source, "index must be a non-negative integer", tok.pos
                    )
                path.append(tok.value)
                self._expect("RBRACK")
            else:
                return Reference(root, tuple(path))


def _split_template(source: str) -> list[tuple[str, str, int]]:
    """Split a template into ("text", value, pos) and ("expr", value, pos) chunks."""
    chunks: list[tuple[str, str, int]] = []
    i = 0
    n = len(source)
    while i < n:
        start = source.find("${", i)
        if start < 0:
            chunks.append(("text", source[i:], i))
            break
        if start > i:
            chunks.append(("text", source[i:start], i))
        j = start + 2
        quote: str | None = None
        while j < n:
            ch = source[j]
            if quote:
                if ch == "\\":
                    j += 1
                elif ch == quote:
                    quote = None
            elif ch in ("'", '"'):
                quote = ch
            elif ch == "}":
                break
            j += 1
        if j >= n:
            raise ExpressionSyntaxError(source, "unterminated '${'", start)
        body = source[start + 2 : j]
        if not body.strip():
            raise ExpressionSyntaxError(source, "empty placeholder", start)
        chunks.append(("expr", body, start + 2))
        i = j + 1
    return chunks


@lru_cache(maxsize=2048)
def compile_expression(source: str) -> CompiledExpression:
    """
    Parse an expression or template.

    Raises:
        ExpressionSyntaxError: If the expression is malformed
    """
    if "${" not in source:
        if not source.strip():
            raise ExpressionSyntaxError(source, "empty expression")
        node = _Parser(_tokenize(source, source), source).parse()
        return CompiledExpression(source=source, parts=(node,))

    parts: list[Union[str, Node]] = []
    for kind, value, pos in _split_template(source):
        if kind == "text":
            parts.append(value)
        else:
            parts.append(_Parser(_tokenize(value, source, pos), source).parse())
    # "  ${x}  " is still a single value; surrounding whitespace is not content
    if len(parts) > 1 and sum(not isinstance(p, str) for p in parts) == 1:
        if all(p.strip() == "" for p in parts if isinstance(p, str)):
            parts = [p for p in parts if not isinstance(p, str)]
    return CompiledExpression(source=source, parts=tuple(parts))


# =============================================================================
# Evaluation
# =============================================================================


def _descend(value: Any, part: Union[str, int]) -> Any:
    if isinstance(part, int):
        if isinstance(value, (list, tuple)) and 0 <= part < len(value):
            return value[part]
        if isinstance(value, dict) and part in value:
            return value[part]
        return _MISSING
    if isinstance(value, dict):
        return value.get(part, _MISSING)
    if isinstance(value, (list, tuple)) and part.isdigit():
        return _descend(value, int(part))
    return _MISSING


class ExpressionResolver:
    """
    Resolves expressions against an ExecutionContext.

    Stateless apart from the shared parse cache; one instance can be used
    by any number of concurrent executions.
    """

    def compile(self, expression: str) -> CompiledExpression:
        return compile_expression(expression)

    def resolve(
        self,
        expression: str,
        ctx: "ExecutionContext",
        subject: Any = _MISSING,
    ) -> Any:
        """
        Evaluate an expression or template to a value.

        Args:
            expression: Expression text, bare or wrapped in ${...}
            ctx: Execution context supplying args, env and step outputs
            subject: Optional value whose fields bare names resolve against

        Raises:
            UnresolvedReferenceError: If a referenced source does not exist
            ExpressionSyntaxError: If the expression is malformed
        """
        compiled = self.compile(expression)
        if compiled.is_single_value:
            node = compiled.parts[0]
            return self._eval(node, compiled.source, ctx, subject)  # type: ignore[arg-type]
        rendered: list[str] = []
        for part in compiled.parts:
            if isinstance(part, str):
                rendered.append(part)
            else:
                value = self._eval(part, compiled.source, ctx, subject)
                rendered.append("" if value is None else _stringify(value))
        return "".join(rendered)

    def evaluate_condition(
        self,
        expression: str,
        ctx: "ExecutionContext",
        subject: Any = _MISSING,
    ) -> bool:
        return bool(self.resolve(expression, ctx, subject))

    # -------------------------------------------------------------------------

    def _eval(self, node: Node, source: str, ctx: "ExecutionContext", subject: Any) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Reference):
            return self._lookup(node, source, ctx, subject)
        if isinstance(node, Not):
            return not self._eval(node.operand, source, ctx, subject)
        if isinstance(node, Compare):
            left = self._eval(node.left, source, ctx, subject)
            right = self._eval(node.right, source, ctx, subject)
            return left == right if node.op == "==" else left != right
        if isinstance(node, BoolOp):
            if node.op == "and":
                return all(self._eval(o, source, ctx, subject) for o in node.operands)
            return any(self._eval(o, source, ctx, subject) for o in node.operands)
        raise TypeError(f"Unknown expression node {node!r}")

    def _lookup(self, ref: Reference, source: str, ctx: "ExecutionContext", subject: Any) -> Any:
        value = self._root(ref, source, ctx, subject)
        for part in ref.path:
            value = _descend(value, part)
            if value is _MISSING:
                raise UnresolvedReferenceError(source, ref.text)
        return value

    def _root(self, ref: Reference, source: str, ctx: "ExecutionContext", subject: Any) -> Any:
        if ref.root == "args":
            return ctx.args
        if ref.root == "env":
            return ctx.env
        if ref.root == "pipeline":
            return ctx.positional_outputs()
        if subject is not _MISSING:
            found = _descend(subject, ref.root)
            if found is not _MISSING:
                return found
        if ctx.has_output(ref.root):
            return ctx.output(ref.root)
        raise UnresolvedReferenceError(source, ref.text)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
