"""Structured-output schema types and provider limits."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel


class StructuredOutputSchema(BaseModel):
    """Envelope sent to the provider: a named JSON Schema plus the strict flag."""

    name: str
    strict: bool | None = None
    value: dict[str, Any]


@dataclass
class SchemaValidationResult:
    """Validator verdict. ``schema`` is set only when valid (strict defaulted to true)."""

    valid: bool
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    info: list[str] = field(default_factory=list)
    schema: StructuredOutputSchema | None = None


@dataclass
class SchemaComplexity:
    """Rough size/shape score of a schema."""

    level: Literal["simple", "moderate", "complex", "extreme"]
    score: int
    details: list[str] = field(default_factory=list)


class SchemaNodeKind(str, Enum):
    """Kinds a schema node can take; one node may be several (e.g. nullable string)."""

    OBJECT = "object"
    ARRAY = "array"
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    NULL = "null"
    REF = "ref"
    ANY_OF = "anyOf"
    ALL_OF = "allOf"
    ENUM = "enum"
    CONST = "const"


PRIMITIVE_TYPES = frozenset({"string", "number", "integer", "boolean", "null"})


@dataclass(frozen=True)
class SchemaLimits:
    """Limits of the strict structured-output contract."""

    max_anyof_variants: int = 8
    max_defs: int = 100
    max_nesting_depth: int = 10
    max_properties_per_object: int = 100
    max_enum_values: int = 500
    max_optional_fields: int = 10
    max_total_variants: int = 50
    max_quantifier_span: int = 100
    supported_string_formats: frozenset[str] = frozenset(
        {"date-time", "time", "date", "duration", "email", "hostname", "uri", "ipv4", "ipv6", "uuid"}
    )
    allowed_min_items: frozenset[int] = frozenset({0, 1})


STRICT_LIMITS = SchemaLimits()

# Keywords the provider rejects outright.
UNSUPPORTED_KEYWORDS: tuple[str, ...] = (
    "if",
    "then",
    "else",
    "not",
    "oneOf",
    "dependentRequired",
    "dependentSchemas",
    "unevaluatedProperties",
    "unevaluatedItems",
    "$dynamicRef",
    "$dynamicAnchor",
)

# Keywords the provider accepts but ignores.
IGNORED_NUMERIC_CONSTRAINTS = ("minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum", "multipleOf")
IGNORED_STRING_CONSTRAINTS = ("minLength", "maxLength")
IGNORED_ARRAY_CONSTRAINTS = ("maxItems", "uniqueItems", "contains", "minContains", "maxContains")
IGNORED_OBJECT_CONSTRAINTS = ("minProperties", "maxProperties", "propertyNames", "patternProperties")
