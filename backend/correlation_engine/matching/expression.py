"""Sandboxed boolean expression language for expression-type rules.

Expressions compare attributes of the external account (``source``) with the
candidate identity (``target``)::

    source.email == target.email and not (target.department in ["Contractors", "Vendors"])
    source["employee-id"] == target.employee_number or source.upn starts_with target.username

Supported operators: ``==``, ``!=``, ``in``, ``not in``, ``starts_with``,
``contains``, ``and``, ``or``, ``not`` and parentheses. Operands are string,
number, ``true``/``false``/``null`` and list literals, or attribute references.
Text is parsed once into an immutable AST and evaluated by walking it; nothing
is ever handed to ``eval``.

A comparison between two attribute references is false whenever either
attribute is missing, whatever the operator; only a ``null`` literal compares
equal to a missing attribute.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Union

from correlation_engine.matching.normalize import stringify_attribute

_SIDES = ("source", "target")
_KEYWORDS = {"and", "or", "not", "in", "starts_with", "contains", "true", "false", "null"}
_TOKEN_RE = re.compile(
    r"""
    (?P<number>-?\d+(?:\.\d+)?)
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<op>==|!=|[()\[\],.])
    """,
    re.VERBOSE,
)
_ESCAPE_RE = re.compile(r"\\(.)")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}
MAX_NESTING_DEPTH = 64


class ExpressionError(ValueError):
    """Base class for expression failures."""


class ExpressionSyntaxError(ExpressionError):
    """Raised when expression text cannot be parsed."""

    def __init__(self, message: str, position: int) -> None:
        super().__init__(f"{message} at position {position}")
        self.position = position


class ExpressionEvaluationError(ExpressionError):
    """Raised when a parsed expression fails against concrete attributes."""


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    value: str
    position: int


@dataclass(frozen=True, slots=True)
class Literal:
    value: object


@dataclass(frozen=True, slots=True)
class Reference:
    side: str
    attribute: str


@dataclass(frozen=True, slots=True)
class ListLiteral:
    items: tuple["Node", ...]


@dataclass(frozen=True, slots=True)
class Comparison:
    operator: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True, slots=True)
class Not:
    operand: "Node"


@dataclass(frozen=True, slots=True)
class Logical:
    operator: str
    operands: tuple["Node", ...]


Node = Union[Literal, Reference, ListLiteral, Comparison, Not, Logical]
Normalizer = Callable[[str], str]


@dataclass(frozen=True, slots=True)
class Expression:
    """A parsed, immutable expression ready for repeated evaluation."""

    text: str
    root: Node

    @property
    def references(self) -> tuple[str, ...]:
        """Attribute references in first-seen order, e.g. ``("source.email", "target.email")``."""

        seen: dict[str, None] = {}
        _collect_references(self.root, seen)
        return tuple(seen)

    def evaluate(
        self,
        source: Mapping[str, object],
        target: Mapping[str, object],
        *,
        normalizer: Normalizer | None = None,
    ) -> bool:
        """Evaluate against read-only source/target attribute maps."""

        env = {"source": source, "target": target}
        return _truthy(_evaluate(self.root, env, normalizer))


@dataclass(frozen=True, slots=True)
class ExpressionValidation:
    """Dry-run validation result for an expression."""

    valid: bool
    error: str | None = None
    result: bool | None = None
    references: tuple[str, ...] = ()


@lru_cache(maxsize=512)
def compile_expression(text: str) -> Expression:
    """Parse expression text, raising ``ExpressionSyntaxError`` on malformed input."""

    if not text or not text.strip():
        raise ExpressionSyntaxError("Expression is empty", 0)
    parser = _Parser(_tokenize(text))
    root = parser.parse()
    return Expression(text=text, root=root)


def validate_expression(
    text: str,
    *,
    source: Mapping[str, object] | None = None,
    target: Mapping[str, object] | None = None,
    normalizer: Normalizer | None = None,
) -> ExpressionValidation:
    """Parse an expression and, when test input is given, evaluate it."""

    try:
        expression = compile_expression(text)
    except ExpressionSyntaxError as exc:
        return ExpressionValidation(valid=False, error=str(exc))
    if source is None and target is None:
        return ExpressionValidation(valid=True, references=expression.references)
    try:
        result = expression.evaluate(source or {}, target or {}, normalizer=normalizer)
    except ExpressionEvaluationError as exc:
        return ExpressionValidation(valid=False, error=str(exc), references=expression.references)
    return ExpressionValidation(valid=True, result=result, references=expression.references)


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    length = len(text)
    while position < length:
        if text[position].isspace():
            position += 1
            continue
        match = _TOKEN_RE.match(text, position)
        if match is None:
            raise ExpressionSyntaxError(f"Unexpected character {text[position]!r}", position)
        kind = match.lastgroup or "op"
        tokens.append(_Token(kind=kind, value=match.group(kind), position=position))
        position = match.end()
    tokens.append(_Token(kind="end", value="", position=length))
    return tokens


class _Parser:
    """Recursive-descent parser producing the AST."""

    def __init__(self, tokens: list[_Token]) -> None:
        self._tokens = tokens
        self._index = 0
        self._depth = 0

    def parse(self) -> Node:
        node = self._parse_or()
        token = self._peek()
        if token.kind != "end":
            raise ExpressionSyntaxError(f"Unexpected token {token.value!r}", token.position)
        return node

    def _peek(self, offset: int = 0) -> _Token:
        return self._tokens[min(self._index + offset, len(self._tokens) - 1)]

    def _advance(self) -> _Token:
        token = self._tokens[self._index]
        self._index += 1
        return token

    def _is_keyword(self, word: str, offset: int = 0) -> bool:
        token = self._peek(offset)
        return token.kind == "name" and token.value == word

    def _expect_op(self, symbol: str) -> _Token:
        token = self._peek()
        if token.kind != "op" or token.value != symbol:
            found = token.value or "end of expression"
            raise ExpressionSyntaxError(f"Expected {symbol!r} but found {found!r}", token.position)
        return self._advance()

    def _nested(self, token: _Token, parse: Callable[[], Node]) -> Node:
        self._depth += 1
        if self._depth > MAX_NESTING_DEPTH:
            raise ExpressionSyntaxError(
                f"Expression nests deeper than {MAX_NESTING_DEPTH} levels", token.position
            )
        try:
            return parse()
        finally:
            self._depth -= 1

    def _parse_or(self) -> Node:
        operands = [self._parse_and()]
        while self._is_keyword("or"):
            self._advance()
            operands.append(self._parse_and())
        return operands[0] if len(operands) == 1 else Logical("or", tuple(operands))

    def _parse_and(self) -> Node:
        operands = [self._parse_not()]
        while self._is_keyword("and"):
            self._advance()
            operands.append(self._parse_not())
        return operands[0] if len(operands) == 1 else Logical("and", tuple(operands))

    def _parse_not(self) -> Node:
        if self._is_keyword("not"):
            token = self._advance()
            return Not(self._nested(token, self._parse_not))
        return self._parse_comparison()

    def _parse_comparison(self) -> Node:
        left = self._parse_operand()
        token = self._peek()
        if token.kind == "op" and token.value in ("==", "!="):
            self._advance()
            return Comparison(token.value, left, self._parse_operand())
        if self._is_keyword("not") and self._is_keyword("in", offset=1):
            self._advance()
            self._advance()
            return Comparison("not in", left, self._parse_operand())
        for word in ("in", "starts_with", "contains"):
            if self._is_keyword(word):
                self._advance()
                return Comparison(word, left, self._parse_operand())
        return left

    def _parse_operand(self) -> Node:
        token = self._peek()
        if token.kind == "number":
            self._advance()
            value = float(token.value) if "." in token.value else int(token.value)
            return Literal(value)
        if token.kind == "string":
            self._advance()
            return Literal(_unquote(token.value))
        if token.kind == "op" and token.value == "(":
            self._advance()
            node = self._nested(token, self._parse_or)
            self._expect_op(")")
            return node
        if token.kind == "op" and token.value == "[":
            return self._nested(token, self._parse_list)
        if token.kind == "name":
            return self._parse_name()
        found = token.value or "end of expression"
        raise ExpressionSyntaxError(f"Expected a value but found {found!r}", token.position)

    def _parse_list(self) -> ListLiteral:
        self._expect_op("[")
        items: list[Node] = []
        if not (self._peek().kind == "op" and self._peek().value == "]"):
            items.append(self._parse_operand())
            while self._peek().kind == "op" and self._peek().value == ",":
                self._advance()
                items.append(self._parse_operand())
        self._expect_op("]")
        return ListLiteral(tuple(items))

    def _parse_name(self) -> Node:
        token = self._advance()
        if token.value == "true":
            return Literal(True)
        if token.value == "false":
            return Literal(False)
        if token.value == "null":
            return Literal(None)
        if token.value in _KEYWORDS:
            raise ExpressionSyntaxError(f"Unexpected keyword {token.value!r}", token.position)
        if token.value not in _SIDES:
            raise ExpressionSyntaxError(
                f"Unknown identifier {token.value!r}; attributes must be referenced as source.<name> or target.<name>",
                token.position,
            )
        following = self._peek()
        if following.kind == "op" and following.value == ".":
            self._advance()
            attribute = self._advance()
            if attribute.kind != "name":
                raise ExpressionSyntaxError("Expected an attribute name", attribute.position)
            return Reference(token.value, attribute.value)
        if following.kind == "op" and following.value == "[":
            self._advance()
            attribute = self._advance()
            if attribute.kind != "string":
                raise ExpressionSyntaxError("Expected a quoted attribute name", attribute.position)
            self._expect_op("]")
            return Reference(token.value, _unquote(attribute.value))
        raise ExpressionSyntaxError(f"Expected an attribute after {token.value!r}", following.position)


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return _ESCAPE_RE.sub(lambda match: _ESCAPES.get(match.group(1), match.group(1)), body)


def _collect_references(node: Node, seen: dict[str, None]) -> None:
    if isinstance(node, Reference):
        seen.setdefault(f"{node.side}.{node.attribute}", None)
    elif isinstance(node, ListLiteral):
        for item in node.items:
            _collect_references(item, seen)
    elif isinstance(node, Comparison):
        _collect_references(node.left, seen)
        _collect_references(node.right, seen)
    elif isinstance(node, Not):
        _collect_references(node.operand, seen)
    elif isinstance(node, Logical):
        for operand in node.operands:
            _collect_references(operand, seen)


def _evaluate(node: Node, env: Mapping[str, Mapping[str, object]], normalizer: Normalizer | None) -> object:
    if isinstance(node, Literal):
        return _condition(node.value, normalizer)
    if isinstance(node, Reference):
        return _condition(env[node.side].get(node.attribute), normalizer)
    if isinstance(node, ListLiteral):
        return [_evaluate(item, env, normalizer) for item in node.items]
    if isinstance(node, Not):
        return not _truthy(_evaluate(node.operand, env, normalizer))
    if isinstance(node, Logical):
        if node.operator == "and":
            return all(_truthy(_evaluate(operand, env, normalizer)) for operand in node.operands)
        return any(_truthy(_evaluate(operand, env, normalizer)) for operand in node.operands)
    left = _evaluate(node.left, env, normalizer)
    right = _evaluate(node.right, env, normalizer)
    if isinstance(node.left, Reference) and isinstance(node.right, Reference):
        if _is_missing(left) or _is_missing(right):
            return False
    return _compare(node.operator, left, right)


def _is_missing(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return not value
    return False


def _condition(value: object, normalizer: Normalizer | None) -> object:
    if normalizer is None:
        return value
    if isinstance(value, str):
        return normalizer(value)
    if isinstance(value, (list, tuple)):
        return [normalizer(item) if isinstance(item, str) else item for item in value]
    return value


def _compare(operator: str, left: object, right: object) -> bool:
    if operator == "==":
        return _equals(left, right)
    if operator == "!=":
        return not _equals(left, right)
    if operator in ("in", "not in"):
        found = _contains(right, left, operator)
        return found if operator == "in" else not found
    if operator == "contains":
        return _contains(left, right, operator)
    if left is None or right is None:
        return False
    if isinstance(left, (list, dict)) or isinstance(right, (list, dict)):
        raise ExpressionEvaluationError("starts_with requires scalar operands")
    return str(_scalar_text(left)).startswith(str(_scalar_text(right)))


def _contains(container: object, item: object, operator: str) -> bool:
    if container is None or item is None:
        return False
    if isinstance(container, (list, tuple)):
        return any(_equals(item, element) for element in container)
    if isinstance(container, dict):
        return _scalar_text(item) in {str(key) for key in container}
    if isinstance(container, str):
        if isinstance(item, (list, dict)):
            raise ExpressionEvaluationError(f"'{operator}' cannot look for a collection inside text")
        return str(_scalar_text(item)) in container
    raise ExpressionEvaluationError(
        f"'{operator}' requires a list or text operand, got {type(container).__name__}"
    )


def _equals(left: object, right: object) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if type(left) is type(right) or (_is_number(left) and _is_number(right)):
        return left == right
    if isinstance(left, (list, dict)) or isinstance(right, (list, dict)):
        return False
    return _scalar_text(left) == _scalar_text(right)


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _scalar_text(value: object) -> str | None:
    if isinstance(value, str):
        return value
    return stringify_attribute(value)


def _truthy(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return bool(value)
