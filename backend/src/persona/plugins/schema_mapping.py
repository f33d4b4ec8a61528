"""Map a plugin's JSON Schema onto a pydantic model.

The model validates tool-call arguments before they reach the sandbox.
Supported keywords: ``type`` (string, number, integer, boolean, array,
object, and ``[T, "null"]`` unions), ``properties``, ``required``,
``items``, ``enum``, ``description`` and ``default``. Anything else maps to
``Any`` and logs a warning, since validation for that field is lost.
"""

import keyword
import re
from typing import Any, Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, create_model

logger = structlog.get_logger(__name__)

_SCALAR_TYPES: dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
}

_MODEL_NAME_RE = re.compile(r"[^0-9A-Za-z_]")


def _model_name(raw: str) -> str:
    name = "".join(part[:1].upper() + part[1:] for part in _MODEL_NAME_RE.split(raw) if part)
    if not name or name[0].isdigit():
        name = f"Args{name}"
    return name


def _field_name(raw: str, index: int) -> tuple[str, str | None]:
    """Python attribute name for a property, plus the alias when they differ."""
    if raw.isidentifier() and not keyword.iskeyword(raw) and not raw.startswith("_"):
        return raw, None
    return f"field_{index}", raw


def _degraded(path: str, node: Any, reason: str) -> Any:
    logger.warning("json_schema_degraded_to_any", path=path, reason=reason, node=str(node)[:200])
    return Any


def _annotation_for(node: Any, path: str) -> Any:
    if not isinstance(node, dict):
        return _degraded(path, node, "schema node is not an object")

    if "enum" in node:
        values = node["enum"]
        if isinstance(values, list) and values and all(isinstance(v, (str, int, float, bool)) for v in values):
            return Literal[tuple(values)]
        return _degraded(path, node, "enum must be a non-empty list of scalars")

    node_type = node.get("type")
    if isinstance(node_type, list):
        non_null = [t for t in node_type if t != "null"]
        if len(non_null) != 1:
            return _degraded(path, node, "multi-type unions are not supported")
        inner = _annotation_for({**node, "type": non_null[0]}, path)
        return Optional[inner] if "null" in node_type else inner

    if node_type is None and isinstance(node.get("properties"), dict):
        node_type = "object"

    if node_type in _SCALAR_TYPES:
        return _SCALAR_TYPES[node_type]
    if node_type == "array":
        items = node.get("items")
        if items is None:
            return list[Any]
        return list[_annotation_for(items, f"{path}[]")]
    if node_type == "object":
        if isinstance(node.get("properties"), dict):
            return _build_model(_model_name(path), node, path)
        return dict[str, Any]
    if node_type == "null":
        return type(None)
    return _degraded(path, node, f"unsupported type {node_type!r}")


def _build_model(name: str, schema: dict[str, Any], path: str) -> type[BaseModel]:
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or [])

    fields: dict[str, Any] = {}
    for index, (prop_name, prop_schema) in enumerate(properties.items()):
        attr, alias = _field_name(str(prop_name), index)
        annotation = _annotation_for(prop_schema, f"{path}.{prop_name}")
        description = prop_schema.get("description") if isinstance(prop_schema, dict) else None

        if prop_name in required:
            fields[attr] = (annotation, Field(..., alias=alias, description=description))
        else:
            default = prop_schema.get("default") if isinstance(prop_schema, dict) else None
            fields[attr] = (Optional[annotation], Field(default, alias=alias, description=description))

    # Extra keys are tolerated, mirroring JSON Schema's default additionalProperties
    config = ConfigDict(populate_by_name=True, extra="ignore")
    return create_model(name, __config__=config, **fields)


def json_schema_to_model(name: str, schema: dict[str, Any] | None) -> type[BaseModel]:
    """Build a pydantic model for the arguments described by *schema*.

    A missing or non-object schema yields a permissive model that passes any
    keyword arguments through unchanged.
    """
    model_name = _model_name(f"{name}_args")
    if not isinstance(schema, dict) or not (schema.get("type") == "object" or "properties" in schema):
        if schema:
            schema_type = schema.get("type") if isinstance(schema, dict) else type(schema).__name__
            logger.warning("plugin_schema_not_object", plugin=name, schema_type=str(schema_type))
        return create_model(model_name, __config__=ConfigDict(extra="allow"))
    return _build_model(model_name, schema, name)


def tool_parameters(schema: dict[str, Any] | None) -> dict[str, Any]:
    """JSON Schema sent to the model as the tool's ``parameters``."""
    if isinstance(schema, dict) and (schema.get("type") == "object" or "properties" in schema):
        return {
            "type": "object",
            "properties": schema.get("properties") or {},
            "required": list(schema.get("required") or []),
        }
    return {"type": "object", "properties": {}}
