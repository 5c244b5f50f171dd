"""Tool input schemas: parsing, pydantic input models and parameter validation."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from .errors import ValidationFailed
from .models import InputSchema, ParameterSpec, ToolDescriptor


logger = logging.getLogger(__name__)


def parse_input_schema(raw: Optional[Mapping[str, Any]]) -> InputSchema:
    """Build an InputSchema from either supported shape.

    JSON-schema style ``{"type": "object", "properties": {...}, "required": [...]}``
    as emitted by the adapter generator, or a flat mapping of parameter name to
    ``{"type", "required", "description"}``.
    """
    if not raw:
        return InputSchema()

    if "properties" in raw and isinstance(raw.get("properties"), Mapping):
        properties = raw["properties"]
        required = list(raw.get("required") or [])
    else:
        properties = raw
        required = [name for name, spec in raw.items() if (spec or {}).get("required")]

    specs: List[ParameterSpec] = []
    for name, spec in properties.items():
        spec = spec or {}
        enum = spec.get("enum")
        specs.append(
            ParameterSpec(
                name=name,
                type=spec.get("type", "string"),
                required=name in required,
                description=spec.get("description", ""),
                enum=tuple(enum) if enum is not None else None,
            )
        )
    return InputSchema(properties=tuple(specs), required=tuple(required))


def _schema_to_type(param_type: str) -> Any:
    if param_type == "integer":
        return int
    if param_type == "number":
        return float
    if param_type == "boolean":
        return bool
    if param_type == "array":
        return List[Any]
    if param_type == "object":
        return Dict[str, Any]
    return str


def sanitize_name(name: str) -> str:
    return "".join(ch if ch.isalnum() else "_" for ch in name)


@lru_cache(maxsize=1024)
def input_model_for(tool: ToolDescriptor) -> type[BaseModel]:
    """Pydantic model for a tool's parameters.

    Provider parameter names (``_expand``, ``model_config``) are not always
    valid pydantic field names, so fields get positional internal names and
    carry the provider name as their alias. Dump with ``by_alias=True``.
    """
    fields: Dict[str, Tuple[Any, Any]] = {}
    for index, prop in enumerate(tool.input_schema.properties):
        field_type = _schema_to_type(prop.type)
        options = {
            "alias": prop.name,
            "title": prop.name,
            "description": prop.description or None,
        }
        if tool.input_schema.is_required(prop.name):
            fields[f"p_{index}"] = (field_type, Field(..., **options))
        else:
            fields[f"p_{index}"] = (Optional[field_type], Field(None, **options))

    model_config = ConfigDict(extra="allow")
    model_name = f"{sanitize_name(tool.name)}Input"
    return create_model(model_name, __config__=model_config, **fields)


def validate_parameters(tool: ToolDescriptor, parameters: Mapping[str, Any]) -> Dict[str, Any]:
    """Check required fields and declared types; raise ValidationFailed listing every offender."""
    if not isinstance(parameters, Mapping):
        raise ValidationFailed(
            "Parameters must be an object",
            details={"fields": [{"field": "parameters", "reason": "must be an object"}]},
        )

    problems: List[Dict[str, Any]] = []
    model = input_model_for(tool)
    try:
        model.model_validate(dict(parameters), strict=True)
    except ValidationError as exc:
        for error in exc.errors():
            loc = error.get("loc") or ("parameters",)
            field_name = str(loc[0])
            if any(p["field"] == field_name for p in problems):
                continue
            if error.get("type") == "missing":
                reason = "required parameter is missing"
            else:
                prop = tool.input_schema.get(field_name)
                expected = prop.type if prop else "valid value"
                reason = f"expected {expected}"
            problems.append({"field": field_name, "reason": reason})

    for prop in tool.input_schema.properties:
        if prop.enum is None or prop.name not in parameters:
            continue
        if any(p["field"] == prop.name for p in problems):
            continue
        value = parameters[prop.name]
        if value is not None and value not in prop.enum:
            problems.append(
                {"field": prop.name, "reason": f"must be one of: {', '.join(map(str, prop.enum))}"}
            )

    if problems:
        names = ", ".join(p["field"] for p in problems)
        logger.debug("Parameter validation failed for tool=%s fields=%s", tool.name, names)
        raise ValidationFailed(f"Invalid parameters: {names}", details={"fields": problems})

    return dict(parameters)
