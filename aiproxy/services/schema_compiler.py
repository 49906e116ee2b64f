"""Schema expression compiler.

Turns the compact schema DSL used in ``options.schemaDefinition`` into a
tree of compiled schema nodes (see schema_types).

Expression grammar:

    expr := type ["?"]
    type := "string" | "number" | "boolean" | "null" | "any" | "unknown"
          | "enum:" value ("," value)*
          | quoted-literal | numeric-literal
          | "(" expr ")" "[]" | expr "[]"
          | expr ("|" expr)+

Precedence, loosest first: trailing ``?``, top-level ``|``, trailing
``[]``. So ``string|number[]`` is a string or an array of numbers, and
``(string|number)[]`` is an array whose items are strings or numbers.

Nested definitions:
- string: parsed with the grammar above
- None: null-only acceptor
- one-element list: array of that element
- longer list: union of the members (a list of objects is a union of
  object shapes)
- empty list: array of anything
- dict: object with each field compiled independently

STRICT BY DEFAULT:
Unknown expressions raise SchemaCompileError, so a typo such as
``strnig`` fails the request with 400. Lenient mode downgrades them to a
string acceptor and logs a warning.
"""

import logging
import re
from dataclasses import replace
from typing import Any

from aiproxy.core.errors import ValidationError
from aiproxy.services.schema_types import (
    PRIMITIVE_KINDS,
    ArraySchema,
    CompiledSchema,
    EnumSchema,
    LiteralSchema,
    ObjectSchema,
    PrimitiveSchema,
    UnionSchema,
)

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"-?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_ENUM_PREFIX = "enum:"
_QUOTES = ("'", '"')


class SchemaCompileError(ValidationError):
    """Schema definition could not be compiled (400)."""

    def __init__(self, message: str, expression: str | None = None) -> None:
        details = [{"expression": expression}] if expression is not None else None
        super().__init__(message, details=details, code="INVALID_SCHEMA")
        self.expression = expression


def compile_schema(definition: Any, *, lenient: bool = False) -> CompiledSchema:
    """Compile a schema definition.

    Pure: the same definition always produces an equal tree.

    Args:
        definition: Expression string, None, list or dict (see module docs).
        lenient: Downgrade unknown expressions to a string acceptor instead
            of raising.

    Returns:
        The compiled schema tree.

    Raises:
        SchemaCompileError: The definition (or part of it) is not valid.
    """
    if definition is None:
        return PrimitiveSchema("null")
    if isinstance(definition, str):
        return _ExpressionParser(lenient).parse(definition)
    if isinstance(definition, list):
        if not definition:
            return ArraySchema(PrimitiveSchema("any"))
        if len(definition) == 1:
            return ArraySchema(compile_schema(definition[0], lenient=lenient))
        return UnionSchema(
            tuple(compile_schema(member, lenient=lenient) for member in definition)
        )
    if isinstance(definition, dict):
        return ObjectSchema(
            {
                str(name): compile_schema(value, lenient=lenient)
                for name, value in definition.items()
            }
        )
    if lenient:
        logger.warning(
            "Unsupported schema definition %r, accepting any string", definition
        )
        return PrimitiveSchema("string")
    raise SchemaCompileError(
        f"Unsupported schema definition of type {type(definition).__name__}",
        expression=repr(definition),
    )


class _ExpressionParser:
    """Recursive-descent parser for one expression string."""

    def __init__(self, lenient: bool) -> None:
        self.lenient = lenient

    def parse(self, expression: str) -> CompiledSchema:
        text = expression.strip()
        if not text:
            raise SchemaCompileError("Empty schema expression", expression=expression)

        optional = text.endswith("?")
        if optional:
            text = text[:-1].rstrip()
            if not text:
                raise SchemaCompileError(
                    "Schema expression is only '?'", expression=expression
                )

        node = self._parse_type(text)
        return replace(node, optional=True) if optional else node

    def _parse_type(self, text: str) -> CompiledSchema:
        members = _split_top_level(text, "|")
        if len(members) > 1:
            return UnionSchema(tuple(self.parse(member) for member in members))

        if text.endswith("[]"):
            return ArraySchema(self.parse(text[:-2]))

        if _is_wrapped(text):
            return self.parse(text[1:-1])

        if text in PRIMITIVE_KINDS:
            return PrimitiveSchema(text)  # type: ignore[arg-type]

        if text.startswith(_ENUM_PREFIX):
            values = tuple(
                value.strip()
                for value in text[len(_ENUM_PREFIX) :].split(",")
                if value.strip()
            )
            if not values:
                raise SchemaCompileError("Enum has no values", expression=text)
            return EnumSchema(values)

        if len(text) >= 2 and text[0] in _QUOTES and text[-1] == text[0]:
            return LiteralSchema(text[1:-1])

        if _NUMBER_RE.fullmatch(text):
            return LiteralSchema(_parse_number(text))

        if self.lenient:
            logger.warning("Unknown schema expression %r, accepting any string", text)
            return PrimitiveSchema("string")
        raise SchemaCompileError(f"Unknown schema expression '{text}'", expression=text)


def _split_top_level(text: str, separator: str) -> list[str]:
    """Split on ``separator`` outside parentheses and quotes.

    Raises:
        SchemaCompileError: Parentheses or quotes are unbalanced.
    """
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    start = 0
    for index, char in enumerate(text):
        if quote is not None:
            if char == quote:
                quote = None
            continue
        if char in _QUOTES:
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise SchemaCompileError("Unbalanced ')'", expression=text)
        elif char == separator and depth == 0:
            parts.append(text[start:index].strip())
            start = index + 1
    if quote is not None:
        raise SchemaCompileError("Unterminated quoted literal", expression=text)
    if depth != 0:
        raise SchemaCompileError("Unbalanced '('", expression=text)
    parts.append(text[start:].strip())
    return parts


def _is_wrapped(text: str) -> bool:
    """True when the whole text is one parenthesized group."""
    if not (text.startswith("(") and text.endswith(")")):
        return False
    depth = 0
    quote: str | None = None
    for index, char in enumerate(text):
        if quote is not None:
            if char == quote:
                quote = None
            continue
        if char in _QUOTES:
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0 and index != len(text) - 1:
                return False
    return depth == 0


def _parse_number(text: str) -> int | float:
    try:
        return int(text)
    except ValueError:
        return float(text)
