"""Adapter manifests produced by the adapter generator."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import AdapterDescriptor, AuthType, RateLimitPolicy, ToolDescriptor
from .schema import parse_input_schema


logger = logging.getLogger(__name__)


class RateLimitManifest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    limit: int = Field(..., ge=0)
    window_seconds: float = Field(60, gt=0, alias="windowSeconds")


class ToolManifest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., min_length=1)
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")
    method: str = "POST"
    path: Optional[str] = None


class AdapterManifest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., min_length=1)
    version: str = "1.0.0"
    base_url: str = Field(..., alias="baseUrl")
    auth_type: str = Field(..., alias="authType")
    description: str = ""
    category: str = "general"
    auth_config: Dict[str, Any] = Field(default_factory=dict, alias="authConfig")
    rate_limit: Optional[RateLimitManifest] = Field(None, alias="rateLimit")
    tools: List[ToolManifest] = Field(default_factory=list)

    def to_descriptor(self) -> AdapterDescriptor:
        tools = tuple(
            ToolDescriptor(
                name=tool.name,
                description=tool.description,
                input_schema=parse_input_schema(tool.input_schema),
                method=tool.method,
                path=tool.path,
            )
            for tool in self.tools
        )
        rate_limit = None
        if self.rate_limit:
            rate_limit = RateLimitPolicy(
                limit=self.rate_limit.limit, window_seconds=self.rate_limit.window_seconds
            )
        return AdapterDescriptor(
            name=self.name,
            version=self.version,
            base_url=self.base_url,
            auth_type=AuthType.parse(self.auth_type),
            tools=tools,
            description=self.description,
            category=self.category,
            auth_config=self.auth_config,
            rate_limit=rate_limit,
        )


class ManifestError(ValueError):
    pass


def descriptor_from_manifest(payload: Dict[str, Any]) -> AdapterDescriptor:
    try:
        return AdapterManifest.model_validate(payload).to_descriptor()
    except ValidationError as exc:
        raise ManifestError(f"Invalid adapter manifest: {exc.errors()}") from exc
    except ValueError as exc:
        raise ManifestError(str(exc)) from exc


def load_manifest_file(path: Union[str, Path]) -> List[AdapterDescriptor]:
    path = Path(path)
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    items = payload if isinstance(payload, list) else [payload]
    return [descriptor_from_manifest(item) for item in items]


def load_manifest_directory(path: Union[str, Path]) -> List[AdapterDescriptor]:
    """Load every ``*.json`` manifest in ``path``; broken files are logged and skipped."""
    directory = Path(path)
    if not directory.is_dir():
        logger.warning("Adapter manifest directory not found: %s", directory)
        return []

    descriptors: List[AdapterDescriptor] = []
    for manifest_path in sorted(directory.glob("*.json")):
        try:
            descriptors.extend(load_manifest_file(manifest_path))
        except (OSError, json.JSONDecodeError, ManifestError) as exc:
            logger.error("Skipping adapter manifest %s: %s", manifest_path.name, exc)
    return descriptors
