"""Validator and auto-fixer for strict structured-output JSON Schemas.

The dialect accepted here is the subset a strict provider compiles into a
grammar: objects must be closed, composition is limited to ``anyOf``/``allOf``,
refs are local, and several JSON Schema keywords are either rejected or
silently ignored. Validation never raises on bad input; problems are collected
with the path of the offending node (``value.properties.name``) and reported in
a :class:`SchemaValidationResult`.
"""

import copy
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from character_tools.domain.entities.schema import (
    IGNORED_ARRAY_CONSTRAINTS,
    IGNORED_NUMERIC_CONSTRAINTS,
    IGNORED_OBJECT_CONSTRAINTS,
    IGNORED_STRING_CONSTRAINTS,
    STRICT_LIMITS,
    UNSUPPORTED_KEYWORDS,
    SchemaComplexity,
    SchemaLimits,
    SchemaNodeKind,
    SchemaValidationResult,
    StructuredOutputSchema,
)

log = structlog.get_logger()

IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
QUANTIFIER_RE = re.compile(r"\{(\d+),(\d+)\}")
UNSUPPORTED_REGEX_FEATURES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\(\?[=!<]"), "lookahead/lookbehind assertions"),
    (re.compile(r"\\[1-9]"), "backreferences"),
    (re.compile(r"\\[bB]"), "word boundaries"),
)
IGNORED_CONSTRAINTS: tuple[str, ...] = (
    *IGNORED_NUMERIC_CONSTRAINTS,
    *IGNORED_STRING_CONSTRAINTS,
    *IGNORED_ARRAY_CONSTRAINTS,
    *IGNORED_OBJECT_CONSTRAINTS,
)
LOCAL_REF_PREFIXES = ("#/$defs/", "#/definitions/")
# Container nesting accepted before any recursive pass runs; far past max_nesting_depth
MAX_TREE_DEPTH = 100
TOO_DEEP = "Schema nesting too deep to parse"

_TYPE_KINDS: dict[str, SchemaNodeKind] = {
    "object": SchemaNodeKind.OBJECT,
    "array": SchemaNodeKind.ARRAY,
    "string": SchemaNodeKind.STRING,
    "number": SchemaNodeKind.NUMBER,
    "integer": SchemaNodeKind.INTEGER,
    "boolean": SchemaNodeKind.BOOLEAN,
    "null": SchemaNodeKind.NULL,
}


def _declared_types(node: dict[str, Any]) -> list[Any]:
    raw = node.get("type")
    if raw is None:
        return []
    return list(raw) if isinstance(raw, list) else [raw]


def classify_node(node: dict[str, Any]) -> list[SchemaNodeKind]:
    """Every kind a node takes part in, in a stable order."""
    kinds: list[SchemaNodeKind] = []
    if isinstance(node.get("$ref"), str):
        kinds.append(SchemaNodeKind.REF)
    types = _declared_types(node)
    for t in types:
        if isinstance(t, str) and t in _TYPE_KINDS and _TYPE_KINDS[t] not in kinds:
            kinds.append(_TYPE_KINDS[t])
    if not types and isinstance(node.get("properties"), dict):
        kinds.append(SchemaNodeKind.OBJECT)
    if "anyOf" in node:
        kinds.append(SchemaNodeKind.ANY_OF)
    if "allOf" in node:
        kinds.append(SchemaNodeKind.ALL_OF)
    if "enum" in node:
        kinds.append(SchemaNodeKind.ENUM)
    if "const" in node:
        kinds.append(SchemaNodeKind.CONST)
    return kinds


def _is_object_node(node: dict[str, Any]) -> bool:
    return SchemaNodeKind.OBJECT in classify_node(node)


def _is_primitive(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def _json_type_name(value: Any) -> str:
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return type(value).__name__


@dataclass
class _Stats:
    definitions: int = 0
    anyof_blocks: int = 0
    anyof_variants: int = 0
    max_depth: int = 0
    properties: int = 0
    optional_properties: int = 0
    enums: int = 0


@dataclass
class _Walk:
    """Mutable accumulator for one validation run."""

    limits: SchemaLimits
    defs: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    info: list[str] = field(default_factory=list)
    stats: _Stats = field(default_factory=_Stats)
    resolved_refs: set[str] = field(default_factory=set)
    ref_stack: list[str] = field(default_factory=list)

    def node(self, node: Any, path: str, depth: int) -> None:
        if not isinstance(node, dict):
            self.errors.append(f"{path}: Schema node must be an object (got {_json_type_name(node)})")
            return
        self.stats.max_depth = max(self.stats.max_depth, depth)
        if depth > self.limits.max_nesting_depth:
            self.errors.append(f"{path}: Exceeds maximum nesting depth of {self.limits.max_nesting_depth}")
            return

        for keyword in UNSUPPORTED_KEYWORDS:
            if keyword in node:
                self.errors.append(f"{path}: '{keyword}' is not supported")
        for keyword in IGNORED_CONSTRAINTS:
            if keyword in node:
                self.warnings.append(f"{path}: '{keyword}' will be ignored (not supported)")

        kinds = classify_node(node)
        if SchemaNodeKind.REF in kinds:
            # $ref replaces the node
            self.ref(node["$ref"], path, depth)
            return

        if "anyOf" not in node and "allOf" not in node:
            for t in _declared_types(node):
                if not isinstance(t, str) or t not in _TYPE_KINDS:
                    self.warnings.append(f"{path}: Unknown type '{t}'")

        for kind in kinds:
            check = _KIND_CHECKS.get(kind)
            if check is not None:
                check(self, node, path, depth)

    def ref(self, ref: str, path: str, depth: int) -> None:
        if ref.startswith(("http://", "https://")) or not ref.startswith("#"):
            self.errors.append(f"{path}: External $ref not supported ('{ref}')")
            return
        if ref in self.ref_stack:
            self.info.append(f"{path}: Circular reference to '{ref}'")
            return
        name = next((ref[len(p):] for p in LOCAL_REF_PREFIXES if ref.startswith(p)), None)
        if name is None or name not in self.defs:
            self.errors.append(f"{path}: Reference '{ref}' not found in definitions")
            return
        if ref in self.resolved_refs:
            return
        self.resolved_refs.add(ref)
        self.ref_stack.append(ref)
        try:
            self.node(self.defs[name], f"{path}->{name}", depth + 1)
        finally:
            self.ref_stack.pop()


def _check_object(walk: _Walk, node: dict[str, Any], path: str, depth: int) -> None:
    if node.get("additionalProperties") is not False:
        walk.warnings.append(f"{path}: Missing 'additionalProperties: false' (REQUIRED for Anthropic)")
    props = node.get("properties")
    if not isinstance(props, dict):
        return
    walk.stats.properties += len(props)
    if len(props) > walk.limits.max_properties_per_object:
        walk.warnings.append(f"{path}: {len(props)} properties (may be slow, consider splitting)")
    required = node.get("required") or []
    for key, prop in props.items():
        if key not in required:
            walk.stats.optional_properties += 1
        walk.node(prop, f"{path}.{key}", depth + 1)


def _check_array(walk: _Walk, node: dict[str, Any], path: str, depth: int) -> None:
    min_items = node.get("minItems")
    valid_min = isinstance(min_items, int) and not isinstance(min_items, bool) and min_items in walk.limits.allowed_min_items
    if min_items is not None and not valid_min:
        walk.warnings.append(f"{path}: 'minItems: {min_items}' not supported (only 0 or 1 allowed)")
    items = node.get("items")
    if isinstance(items, dict):
        walk.node(items, f"{path}.items", depth + 1)
    elif isinstance(items, list):
        for i, item in enumerate(items):
            walk.node(item, f"{path}.items[{i}]", depth + 1)
    prefix_items = node.get("prefixItems")
    if isinstance(prefix_items, list):
        for i, item in enumerate(prefix_items):
            walk.node(item, f"{path}.prefixItems[{i}]", depth + 1)


def _check_string(walk: _Walk, node: dict[str, Any], path: str, depth: int) -> None:
    fmt = node.get("format")
    if isinstance(fmt, str) and fmt not in walk.limits.supported_string_formats:
        supported = ", ".join(sorted(walk.limits.supported_string_formats))
        walk.warnings.append(f"{path}: format '{fmt}' may not be supported. Supported: {supported}")
    pattern = node.get("pattern")
    if isinstance(pattern, str):
        _check_pattern(walk, pattern, path)


def _check_pattern(walk: _Walk, pattern: str, path: str) -> None:
    for detector, feature in UNSUPPORTED_REGEX_FEATURES:
        if detector.search(pattern):
            walk.errors.append(f"{path}: Regex pattern uses unsupported feature: {feature}")
    try:
        re.compile(pattern)
    except re.error as e:
        walk.errors.append(f"{path}: Invalid regex pattern: {e}")
    for match in QUANTIFIER_RE.finditer(pattern):
        low, high = int(match.group(1)), int(match.group(2))
        if high - low > walk.limits.max_quantifier_span:
            walk.warnings.append(f"{path}: Large quantifier range {{{low},{high}}} may cause issues")


def _check_any_of(walk: _Walk, node: dict[str, Any], path: str, depth: int) -> None:
    variants = node["anyOf"]
    if not isinstance(variants, list):
        walk.errors.append(f"{path}: anyOf must be an array")
        return
    walk.stats.anyof_blocks += 1
    walk.stats.anyof_variants += len(variants)
    if len(variants) > walk.limits.max_anyof_variants:
        walk.errors.append(
            f"{path}: anyOf has {len(variants)} variants (max: {walk.limits.max_anyof_variants})"
        )
    if not variants:
        walk.errors.append(f"{path}: anyOf cannot be empty")
        return
    for i, variant in enumerate(variants):
        walk.node(variant, f"{path}.anyOf[{i}]", depth + 1)


def _check_all_of(walk: _Walk, node: dict[str, Any], path: str, depth: int) -> None:
    variants = node["allOf"]
    if not isinstance(variants, list):
        walk.errors.append(f"{path}: allOf must be an array")
        return
    if not variants:
        walk.errors.append(f"{path}: allOf cannot be empty")
        return
    for i, variant in enumerate(variants):
        if isinstance(variant, dict) and "$ref" in variant:
            walk.errors.append(f"{path}.allOf[{i}]: allOf with $ref not supported")
        walk.node(variant, f"{path}.allOf[{i}]", depth + 1)


def _check_enum(walk: _Walk, node: dict[str, Any], path: str, depth: int) -> None:
    values = node["enum"]
    if not isinstance(values, list):
        walk.errors.append(f"{path}: enum must be an array")
        return
    walk.stats.enums += 1
    if not values:
        walk.errors.append(f"{path}: enum cannot be empty")
        return
    if len(values) > walk.limits.max_enum_values:
        walk.warnings.append(f"{path}: enum has {len(values)} values (may be slow)")
    for i, value in enumerate(values):
        if not _is_primitive(value):
            walk.errors.append(
                f"{path}.enum[{i}]: Complex type not allowed in enum (got {_json_type_name(value)}). "
                "Only string, number, boolean, null permitted."
            )
            break
    seen: set[str] = set()
    for value in values:
        key = json.dumps(value, sort_keys=True)
        if key in seen:
            walk.warnings.append(f"{path}: Duplicate value in enum: {key}")
            break
        seen.add(key)


def _check_const(walk: _Walk, node: dict[str, Any], path: str, depth: int) -> None:
    value = node["const"]
    if not _is_primitive(value):
        walk.errors.append(
            f"{path}: const must be string, number, boolean, or null (got {_json_type_name(value)})"
        )


_KIND_CHECKS: dict[SchemaNodeKind, Callable[[_Walk, dict[str, Any], str, int], None]] = {
    SchemaNodeKind.OBJECT: _check_object,
    SchemaNodeKind.ARRAY: _check_array,
    SchemaNodeKind.STRING: _check_string,
    SchemaNodeKind.ANY_OF: _check_any_of,
    SchemaNodeKind.ALL_OF: _check_all_of,
    SchemaNodeKind.ENUM: _check_enum,
    SchemaNodeKind.CONST: _check_const,
}


def exceeds_depth(node: Any, max_depth: int = MAX_TREE_DEPTH) -> bool:
    """True when dicts/lists nest deeper than ``max_depth``. Iterative, so it cannot overflow the stack."""
    stack = [(node, 1)]
    while stack:
        current, depth = stack.pop()
        if isinstance(current, dict):
            children = current.values()
        elif isinstance(current, list):
            children = current
        else:
            continue
        if depth > max_depth:
            return True
        stack.extend((child, depth + 1) for child in children)
    return False


def _definitions(value: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    if isinstance(value.get("$defs"), dict):
        return "$defs", value["$defs"]
    if isinstance(value.get("definitions"), dict):
        return "definitions", value["definitions"]
    return "$defs", {}


def validate_schema(text: str, limits: SchemaLimits = STRICT_LIMITS) -> SchemaValidationResult:
    """Validate a structured-output envelope given as JSON text.

    Empty input is valid and means structured output is disabled
    (``schema`` is None).
    """
    if not text or not text.strip():
        return SchemaValidationResult(valid=True)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        return SchemaValidationResult(valid=False, error=f"JSON syntax error (character {e.pos}): {e.msg}")
    except RecursionError:
        return SchemaValidationResult(valid=False, error=TOO_DEEP)

    if not isinstance(parsed, dict):
        return SchemaValidationResult(
            valid=False, error=f"Schema must be a JSON object, not {_json_type_name(parsed)}"
        )
    return validate_schema_object(parsed, limits)


def validate_schema_object(obj: dict[str, Any], limits: SchemaLimits = STRICT_LIMITS) -> SchemaValidationResult:
    """Validate an already-parsed envelope."""
    if exceeds_depth(obj):
        return SchemaValidationResult(valid=False, error=TOO_DEEP)
    name = obj.get("name")
    if not isinstance(name, str):
        return SchemaValidationResult(valid=False, error="Missing required 'name' property (string)")
    if not name.strip():
        return SchemaValidationResult(valid=False, error="'name' cannot be empty")
    if not IDENTIFIER_RE.match(name):
        return SchemaValidationResult(
            valid=False,
            error=(
                f"'name' must be a valid identifier (got '{name}'). "
                "Use letters, numbers, underscores; start with letter or underscore."
            ),
        )

    value = obj.get("value")
    if not isinstance(value, dict):
        return SchemaValidationResult(valid=False, error="Missing or invalid 'value' property (must be object)")
    if not isinstance(value.get("type"), (str, list)) and not any(
        k in value for k in ("anyOf", "allOf", "$ref")
    ):
        return SchemaValidationResult(valid=False, error="'value' must have a 'type', 'anyOf', 'allOf', or '$ref'")
    if "strict" in obj and not isinstance(obj["strict"], bool):
        return SchemaValidationResult(valid=False, error="'strict' must be a boolean if provided")

    defs_key, defs = _definitions(value)
    walk = _Walk(limits=limits, defs=defs)
    walk.stats.definitions = len(defs)
    if len(defs) > limits.max_defs:
        walk.errors.append(f"Too many definitions: {len(defs)} (limit: {limits.max_defs})")

    walk.node(value, "value", 1)
    # Definitions nothing referenced still have to compile
    for def_name, definition in defs.items():
        ref = f"#/{defs_key}/{def_name}"
        if ref not in walk.resolved_refs:
            walk.resolved_refs.add(ref)
            walk.node(definition, f"value.{defs_key}.{def_name}", 2)

    optional = walk.stats.optional_properties
    if optional > 0:
        implied_variants = walk.stats.anyof_variants + optional * 2
        if optional > limits.max_optional_fields:
            walk.warnings.append(
                f"{optional} optional fields detected. Each spawns an implicit anyOf with null. "
                "Consider making fields required or reducing optionals."
            )
        if implied_variants > limits.max_total_variants:
            walk.warnings.append(
                f"High anyOf count (~{implied_variants} including implicit nullables). "
                "May cause slow schema compilation or errors."
            )

    if walk.errors:
        return SchemaValidationResult(
            valid=False,
            error="\n".join(walk.errors),
            warnings=walk.warnings,
            info=walk.info,
        )

    stats = walk.stats
    walk.info.append(
        f"Schema stats: {stats.properties} properties, {stats.definitions} definitions, "
        f"{stats.anyof_blocks} anyOf blocks, {optional} optional fields, max depth {stats.max_depth}"
    )
    strict = obj.get("strict")
    return SchemaValidationResult(
        valid=True,
        warnings=walk.warnings,
        info=walk.info,
        schema=StructuredOutputSchema(name=name, strict=True if strict is None else strict, value=value),
    )


def _format_constraint(value: Any) -> str:
    if isinstance(value, (dict, list, bool)) or value is None:
        return json.dumps(value)
    return str(value)


def _fix_node(node: Any, limits: SchemaLimits) -> None:
    if not isinstance(node, dict):
        return
    if _is_object_node(node):
        node["additionalProperties"] = False

    for key in ("properties", "$defs", "definitions"):
        children = node.get(key)
        if isinstance(children, dict):
            for child in children.values():
                _fix_node(child, limits)
    for key in ("items", "prefixItems", "anyOf", "allOf"):
        children = node.get(key)
        if isinstance(children, dict):
            _fix_node(children, limits)
        elif isinstance(children, list):
            for child in children:
                _fix_node(child, limits)

    constraints = [f"{key}: {_format_constraint(node.pop(key))}" for key in IGNORED_CONSTRAINTS if key in node]
    min_items = node.get("minItems")
    if isinstance(min_items, (int, float)) and not isinstance(min_items, bool):
        if min_items not in limits.allowed_min_items:
            constraints.append(f"minItems: {_format_constraint(min_items)}")
            node["minItems"] = 1 if min_items > 0 else 0
    if constraints:
        note = f"[Constraints: {', '.join(constraints)}]"
        description = node.get("description")
        node["description"] = f"{description} {note}" if description else note


def auto_fix_schema(
    schema: StructuredOutputSchema,
    limits: SchemaLimits = STRICT_LIMITS,
) -> StructuredOutputSchema:
    """Return a copy that closes every object and folds ignored constraints into descriptions.

    Raises ValueError when the schema nests deeper than :data:`MAX_TREE_DEPTH`.
    """
    if exceeds_depth(schema.value):
        raise ValueError(TOO_DEEP)
    value = copy.deepcopy(schema.value)
    _fix_node(value, limits)
    return StructuredOutputSchema(
        name=schema.name,
        strict=True if schema.strict is None else schema.strict,
        value=value,
    )


def format_schema(schema: StructuredOutputSchema | None) -> str:
    """Pretty JSON for editing; empty string when there is no schema."""
    if schema is None:
        return ""
    return json.dumps(schema.model_dump(exclude_none=True), indent=2, ensure_ascii=False)


def parse_structured_response(response: str) -> Any | None:
    """Parse a structured answer, falling back to the first fenced code block."""
    try:
        return json.loads(response)
    except (json.JSONDecodeError, RecursionError):
        pass
    match = re.search(r"```(?:json)?\s*([\s\S]*?)```", response)
    if not match:
        return None
    try:
        return json.loads(match.group(1).strip())
    except (json.JSONDecodeError, RecursionError):
        log.debug("structured_response_unparseable", length=len(response))
        return None


def count_optional_fields(node: Any, depth: int = 1) -> int:
    """Properties missing from their object's ``required`` list, recursively.

    Nodes below :data:`MAX_TREE_DEPTH` are not counted.
    """
    if not isinstance(node, dict) or depth > MAX_TREE_DEPTH:
        return 0
    count = 0
    props = node.get("properties")
    if _is_object_node(node) and isinstance(props, dict):
        required = node.get("required") or []
        for key, prop in props.items():
            if key not in required:
                count += 1
            count += count_optional_fields(prop, depth + 1)
    items = node.get("items")
    if isinstance(items, dict):
        count += count_optional_fields(items, depth + 1)
    for key in ("anyOf", "allOf"):
        variants = node.get(key)
        if isinstance(variants, list):
            count += sum(count_optional_fields(v, depth + 1) for v in variants)
    return count


def _count_nodes(node: Any, depth: int = 1) -> int:
    if not isinstance(node, dict) or depth > MAX_TREE_DEPTH:
        return 0
    count = 1
    props = node.get("properties")
    if isinstance(props, dict):
        count += len(props) + sum(_count_nodes(p, depth + 1) for p in props.values())
    items = node.get("items")
    if isinstance(items, dict):
        count += _count_nodes(items, depth + 1)
    for key in ("anyOf", "allOf"):
        variants = node.get(key)
        if isinstance(variants, list):
            count += len(variants) * 2
    return count


def estimate_schema_complexity(schema: StructuredOutputSchema) -> SchemaComplexity:
    """Weighted score over node, optional-field and definition counts."""
    if exceeds_depth(schema.value) or not validate_schema_object(schema.model_dump(exclude_none=True)).valid:
        return SchemaComplexity(level="extreme", score=100, details=["Invalid schema"])

    details: list[str] = []
    score = 0
    nodes = _count_nodes(schema.value)
    optional = count_optional_fields(schema.value)
    defs = len(_definitions(schema.value)[1])

    if nodes > 50:
        score += 30
        details.append(f"{nodes} schema nodes")
    elif nodes > 20:
        score += 15
        details.append(f"{nodes} schema nodes")
    if optional > 10:
        score += 25
        details.append(f"{optional} optional fields (implicit anyOf)")
    elif optional > 5:
        score += 10
        details.append(f"{optional} optional fields")
    if defs > 10:
        score += 20
        details.append(f"{defs} definitions")
    elif defs > 5:
        score += 10
        details.append(f"{defs} definitions")

    if score >= 60:
        level = "extreme"
    elif score >= 35:
        level = "complex"
    elif score >= 15:
        level = "moderate"
    else:
        level = "simple"
    return SchemaComplexity(level=level, score=score, details=details or ["Simple schema"])
