"""
Tool schema sanitization for the Gemini OpenAI-compatibility layer.

Gemini rejects tool declarations that use JSON Schema constructs outside its
restricted dialect (with a 400). Clients generate schemas from arbitrary
tooling, so every tool's parameters are rewritten before forwarding:

    {"type": ["string", "null"], "format": "uri"}   →   {"type": "string", "nullable": true}

The transform builds a new tree and never mutates its input.
"""

from typing import Any

# Schema metadata: the upstream has no resolver for references
METADATA_KEYS = ("$ref", "$schema", "$id", "definitions", "$defs")

COMBINATOR_KEYS = ("anyOf", "oneOf", "allOf", "not")

UNSUPPORTED_KEYS = (
    # numeric/string constraints
    "exclusiveMaximum",
    "exclusiveMinimum",
    "const",
    "contentEncoding",
    "contentMediaType",
    # array features
    "prefixItems",
    "contains",
    "minContains",
    "maxContains",
    # object features
    "propertyNames",
    "patternProperties",
    "dependentSchemas",
    "dependentRequired",
)

DROPPED_KEYS = frozenset(METADATA_KEYS + COMBINATOR_KEYS + UNSUPPORTED_KEYS)

SUPPORTED_FORMATS = frozenset({"enum", "date-time"})
NUMERIC_TYPES = frozenset({"number", "integer"})
NUMERIC_CONSTRAINTS = ("minimum", "maximum", "multipleOf")


def sanitize_schema(node: Any) -> Any:
    """Return a Gemini-compatible copy of a JSON Schema fragment.

    Accepts any JSON value. Objects are cleaned and recursed into, arrays are
    sanitized element-wise, scalars come back unchanged.
    """
    if isinstance(node, dict):
        return _sanitize_object(node)
    if isinstance(node, list):
        return [sanitize_schema(item) for item in node]
    return node


def _sanitize_object(node: dict[str, Any]) -> dict[str, Any]:
    clean = {key: value for key, value in node.items() if key not in DROPPED_KEYS}

    if "format" in clean and not _is_one_of(clean["format"], SUPPORTED_FORMATS):
        del clean["format"]

    if isinstance(clean.get("type"), list):
        types = clean["type"]
        non_null = [t for t in types if t != "null"]
        if non_null:
            clean["type"] = non_null[0]
            if "null" in types:
                clean["nullable"] = True
        else:
            clean["type"] = "string"

    if clean.get("additionalProperties") is False:
        del clean["additionalProperties"]

    if isinstance(clean.get("required"), list) and not clean["required"]:
        del clean["required"]

    # Untyped nodes keep their bounds
    if clean.get("type") and not _is_one_of(clean["type"], NUMERIC_TYPES):
        for key in NUMERIC_CONSTRAINTS:
            clean.pop(key, None)

    properties = clean.get("properties")
    if isinstance(properties, dict):
        clean["properties"] = {
            name: sanitize_schema(value) for name, value in properties.items()
        }

    if "items" in clean:
        clean["items"] = sanitize_schema(clean["items"])

    if isinstance(clean.get("additionalProperties"), dict):
        clean["additionalProperties"] = sanitize_schema(clean["additionalProperties"])

    return clean


def _is_one_of(value: Any, allowed: frozenset[str]) -> bool:
    return isinstance(value, str) and value in allowed


def sanitize_tools(tools: Any) -> Any:
    """Sanitize the parameter schema of every function tool in a request."""
    if not isinstance(tools, list):
        return tools

    sanitized = []
    for tool in tools:
        function = tool.get("function") if isinstance(tool, dict) else None
        if not isinstance(function, dict) or not function.get("parameters"):
            sanitized.append(tool)
            continue
        sanitized.append(
            {
                **tool,
                "function": {
                    **function,
                    "parameters": sanitize_schema(function["parameters"]),
                },
            }
        )
    return sanitized
