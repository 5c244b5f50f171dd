"""Internal models for adapters, tools and executions."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .errors import ErrorKind


_ADAPTER_NAME = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")

PARAMETER_TYPES = frozenset({"string", "number", "integer", "boolean", "array", "object"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthType(str, Enum):
    BEARER = "bearer"
    API_KEY = "api_key"
    BASIC = "basic"
    HMAC = "hmac"
    OAUTH2 = "oauth2"

    @classmethod
    def parse(cls, value: Union[str, "AuthType"]) -> "AuthType":
        if isinstance(value, AuthType):
            return value
        normalized = value.strip().lower().replace("-", "_")
        if normalized == "apikey":
            normalized = "api_key"
        return cls(normalized)


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    type: str = "string"
    required: bool = False
    description: str = ""
    enum: Optional[Tuple[Any, ...]] = None

    def __post_init__(self) -> None:
        if self.type not in PARAMETER_TYPES:
            raise ValueError(f"Unsupported parameter type '{self.type}' for '{self.name}'")


@dataclass(frozen=True)
class InputSchema:
    properties: Tuple[ParameterSpec, ...] = ()
    required: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        declared = {prop.name for prop in self.properties}
        if len(declared) != len(self.properties):
            raise ValueError("Duplicate parameter names in input schema")
        missing = [name for name in self.required if name not in declared]
        if missing:
            raise ValueError(f"Required parameters not declared: {', '.join(missing)}")

    def get(self, name: str) -> Optional[ParameterSpec]:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def is_required(self, name: str) -> bool:
        return name in self.required

    def to_json_schema(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        for prop in self.properties:
            entry: Dict[str, Any] = {"type": prop.type}
            if prop.description:
                entry["description"] = prop.description
            if prop.enum is not None:
                entry["enum"] = list(prop.enum)
            properties[prop.name] = entry
        return {"type": "object", "properties": properties, "required": list(self.required)}


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str = ""
    input_schema: InputSchema = field(default_factory=InputSchema)
    method: str = "POST"
    path: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Tool name must not be empty")
        object.__setattr__(self, "method", self.method.upper())
        if self.path is None:
            object.__setattr__(self, "path", f"/{self.name}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema.to_json_schema(),
            "method": self.method,
            "path": self.path,
        }


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: float

    def __post_init__(self) -> None:
        if self.limit < 0 or self.window_seconds <= 0:
            raise ValueError("Rate limit must be non-negative with a positive window")


@dataclass(frozen=True)
class AdapterDescriptor:
    name: str
    version: str
    base_url: str
    auth_type: AuthType
    tools: Tuple[ToolDescriptor, ...] = ()
    description: str = ""
    category: str = "general"
    auth_config: Mapping[str, Any] = field(default_factory=dict)
    rate_limit: Optional[RateLimitPolicy] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Adapter name must not be empty")
        if not _ADAPTER_NAME.match(self.name):
            raise ValueError(f"Adapter name '{self.name}' must be lowercase-hyphenated")
        object.__setattr__(self, "auth_type", AuthType.parse(self.auth_type))
        object.__setattr__(self, "tools", tuple(self.tools))
        object.__setattr__(self, "auth_config", dict(self.auth_config))
        names = [tool.name for tool in self.tools]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(
                f"Duplicate tool names in adapter '{self.name}': {', '.join(duplicates)}"
            )

    def tool(self, name: str) -> Optional[ToolDescriptor]:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    @property
    def tool_names(self) -> List[str]:
        return [tool.name for tool in self.tools]

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "tools": self.tool_names,
            "description": self.description,
            "authType": self.auth_type.value,
        }

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "baseUrl": self.base_url,
            "authType": self.auth_type.value,
            "description": self.description,
            "category": self.category,
            "authConfig": dict(self.auth_config),
            "tools": [tool.to_dict() for tool in self.tools],
        }
        if self.rate_limit:
            data["rateLimit"] = {
                "limit": self.rate_limit.limit,
                "windowSeconds": self.rate_limit.window_seconds,
            }
        return data


@dataclass(frozen=True)
class ExecutionRequest:
    adapter_name: str
    tool_name: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    caller_id: str = "anonymous"
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Success:
    data: Any
    duration_ms: float
    timestamp: datetime = field(default_factory=utcnow)

    ok = True


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    ok = False


ExecutionResult = Union[Success, Failure]


@dataclass(frozen=True)
class OutgoingRequest:
    method: str
    url: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None

    def with_headers(self, headers: Mapping[str, str]) -> "OutgoingRequest":
        return OutgoingRequest(
            method=self.method,
            url=self.url,
            path=self.path,
            headers={**self.headers, **headers},
            params=dict(self.params),
            body=self.body,
        )

    def with_params(self, params: Mapping[str, str]) -> "OutgoingRequest":
        return OutgoingRequest(
            method=self.method,
            url=self.url,
            path=self.path,
            headers=dict(self.headers),
            params={**self.params, **params},
            body=self.body,
        )


@dataclass(frozen=True)
class AuditRecord:
    adapter_name: str
    tool_name: str
    caller_id: str
    request_snapshot: Mapping[str, Any]
    result_snapshot: Mapping[str, Any]
    status_code: int
    duration_ms: float
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adapter_name": self.adapter_name,
            "tool_name": self.tool_name,
            "caller_id": self.caller_id,
            "request_snapshot": dict(self.request_snapshot),
            "result_snapshot": dict(self.result_snapshot),
            "status_code": self.status_code,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }
