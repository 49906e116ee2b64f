"""Compiled schema nodes for structured output.

A compiled schema is a small tree of frozen dataclasses. Equality is
structural, so compiling the same definition twice gives equal trees.
Each node can:

- ``validate(value)``: list of issues (empty when the value is accepted)
- ``accepts(value)``: shorthand for ``not validate(value)``
- ``to_json_schema()``: the JSON Schema sent to the backend as a
  structured-output hint

``optional`` means the value may be absent from its parent object. A
present value must still match the node.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

PrimitiveKind = Literal["string", "number", "boolean", "null", "any", "unknown"]

PRIMITIVE_KINDS: frozenset[str] = frozenset(
    {"string", "number", "boolean", "null", "any", "unknown"}
)


def _is_number(value: Any) -> bool:
    # bool is a subclass of int
    return isinstance(value, int | float) and not isinstance(value, bool)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


class _SchemaNode:
    optional: bool = False

    def validate(self, value: Any, path: str = "$") -> list[str]:
        raise NotImplementedError

    def accepts(self, value: Any) -> bool:
        return not self.validate(value)

    def to_json_schema(self) -> dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class PrimitiveSchema(_SchemaNode):
    kind: PrimitiveKind
    optional: bool = False

    def validate(self, value: Any, path: str = "$") -> list[str]:
        if self.kind in ("any", "unknown"):
            return []
        matched = {
            "string": isinstance(value, str),
            "number": _is_number(value),
            "boolean": isinstance(value, bool),
            "null": value is None,
        }[self.kind]
        if matched:
            return []
        return [f"{path}: expected {self.kind}, got {_type_name(value)}"]

    def to_json_schema(self) -> dict[str, Any]:
        if self.kind in ("any", "unknown"):
            return {}
        return {"type": self.kind}


@dataclass(frozen=True)
class LiteralSchema(_SchemaNode):
    value: str | int | float
    optional: bool = False

    def validate(self, value: Any, path: str = "$") -> list[str]:
        if isinstance(self.value, str):
            matched = isinstance(value, str) and value == self.value
        else:
            matched = _is_number(value) and value == self.value
        if matched:
            return []
        return [f"{path}: expected literal {self.value!r}, got {value!r}"]

    def to_json_schema(self) -> dict[str, Any]:
        return {"const": self.value}


@dataclass(frozen=True)
class EnumSchema(_SchemaNode):
    values: tuple[str, ...]
    optional: bool = False

    def validate(self, value: Any, path: str = "$") -> list[str]:
        if isinstance(value, str) and value in self.values:
            return []
        return [f"{path}: expected one of {list(self.values)}, got {value!r}"]

    def to_json_schema(self) -> dict[str, Any]:
        return {"type": "string", "enum": list(self.values)}


@dataclass(frozen=True)
class ArraySchema(_SchemaNode):
    element: CompiledSchema
    optional: bool = False

    def validate(self, value: Any, path: str = "$") -> list[str]:
        if not isinstance(value, list):
            return [f"{path}: expected array, got {_type_name(value)}"]
        issues: list[str] = []
        for index, item in enumerate(value):
            issues.extend(self.element.validate(item, f"{path}[{index}]"))
        return issues

    def to_json_schema(self) -> dict[str, Any]:
        return {"type": "array", "items": self.element.to_json_schema()}


@dataclass(frozen=True)
class UnionSchema(_SchemaNode):
    members: tuple[CompiledSchema, ...]
    optional: bool = False

    def validate(self, value: Any, path: str = "$") -> list[str]:
        collected: list[str] = []
        for member in self.members:
            issues = member.validate(value, path)
            if not issues:
                return []
            collected.extend(issues)
        if not self.members:
            return [f"{path}: empty union accepts no value"]
        return [f"{path}: no union member matched ({'; '.join(collected)})"]

    def to_json_schema(self) -> dict[str, Any]:
        return {"anyOf": [member.to_json_schema() for member in self.members]}


@dataclass(frozen=True)
class ObjectSchema(_SchemaNode):
    """Object shape. Unlisted keys are allowed and ignored."""

    fields: dict[str, CompiledSchema] = field(default_factory=dict)

    def validate(self, value: Any, path: str = "$") -> list[str]:
        if not isinstance(value, dict):
            return [f"{path}: expected object, got {_type_name(value)}"]
        issues: list[str] = []
        for name, schema in self.fields.items():
            if name not in value:
                if not schema.optional:
                    issues.append(f"{path}.{name}: required field missing")
                continue
            issues.extend(schema.validate(value[name], f"{path}.{name}"))
        return issues

    def to_json_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                name: schema.to_json_schema() for name, schema in self.fields.items()
            },
            "required": [
                name for name, schema in self.fields.items() if not schema.optional
            ],
        }


@dataclass(frozen=True)
class JsonSchemaPassthrough(_SchemaNode):
    """A JSON Schema supplied verbatim by the caller.

    Enforcement is left to the backend's structured-output mode; locally
    every value is accepted.
    """

    json_schema: dict[str, Any] = field(default_factory=dict)

    def validate(self, value: Any, path: str = "$") -> list[str]:
        return []

    def to_json_schema(self) -> dict[str, Any]:
        return dict(self.json_schema)


CompiledSchema = (
    PrimitiveSchema
    | LiteralSchema
    | EnumSchema
    | ArraySchema
    | UnionSchema
    | ObjectSchema
    | JsonSchemaPassthrough
)
