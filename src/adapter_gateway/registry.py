"""Adapter registry for the gateway.

The registry publishes an immutable snapshot (a read-only mapping of adapter
name to descriptor). Writers build a complete new mapping and swap the
reference in a single assignment, so readers see either the old or the new
set and never a descriptor in the middle of an update.
"""

from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import AdapterNotFound, ToolNotFound
from .models import AdapterDescriptor, ToolDescriptor


logger = logging.getLogger(__name__)


def _normalize_tool_name(name: str) -> str:
    return name.strip().lower().replace("-", "_")


class AdapterRegistry:
    def __init__(self, descriptors: Iterable[AdapterDescriptor] = ()) -> None:
        self._write_lock = threading.Lock()
        self._snapshot: Mapping[str, AdapterDescriptor] = MappingProxyType({})
        self._loaded = False
        descriptors = list(descriptors)
        if descriptors:
            self.reload_all(descriptors)

    @property
    def snapshot(self) -> Mapping[str, AdapterDescriptor]:
        return self._snapshot

    @property
    def loaded(self) -> bool:
        return self._loaded and bool(self._snapshot)

    def register(self, descriptor: AdapterDescriptor) -> None:
        self._validate(descriptor)
        with self._write_lock:
            current = self._snapshot
            replaced = descriptor.name in current
            updated: Dict[str, AdapterDescriptor] = dict(current)
            updated[descriptor.name] = descriptor
            self._snapshot = MappingProxyType(updated)
            self._loaded = True
        logger.info(
            "%s adapter: %s (%s tools)",
            "Replaced" if replaced else "Registered",
            descriptor.name,
            len(descriptor.tools),
        )

    def unregister(self, name: str) -> bool:
        with self._write_lock:
            if name not in self._snapshot:
                return False
            updated = {key: value for key, value in self._snapshot.items() if key != name}
            self._snapshot = MappingProxyType(updated)
        logger.info("Unregistered adapter: %s", name)
        return True

    def reload_all(self, descriptors: Iterable[AdapterDescriptor]) -> None:
        new_set: Dict[str, AdapterDescriptor] = {}
        for descriptor in descriptors:
            self._validate(descriptor)
            if descriptor.name in new_set:
                raise ValueError(f"Duplicate adapter name in reload: {descriptor.name}")
            new_set[descriptor.name] = descriptor

        with self._write_lock:
            self._snapshot = MappingProxyType(new_set)
            self._loaded = True
        logger.info("Reloaded adapter registry: %s adapters", len(new_set))

    def get(self, name: str) -> Optional[AdapterDescriptor]:
        return self._snapshot.get(name)

    def lookup(self, name: str) -> AdapterDescriptor:
        descriptor = self._snapshot.get(name)
        if descriptor is None:
            raise AdapterNotFound(
                f"Adapter '{name}' not found", details={"adapter": name}
            )
        return descriptor

    def list(self) -> List[AdapterDescriptor]:
        snapshot = self._snapshot
        return [snapshot[name] for name in sorted(snapshot)]

    def resolve_tool(self, adapter_name: str, tool_name: str) -> Tuple[AdapterDescriptor, ToolDescriptor]:
        """Resolve a tool, accepting snake/kebab-case and case variants of its name."""
        descriptor = self.lookup(adapter_name)
        tool = descriptor.tool(tool_name)
        if tool is None:
            wanted = _normalize_tool_name(tool_name)
            tool = next(
                (t for t in descriptor.tools if _normalize_tool_name(t.name) == wanted), None
            )
        if tool is None:
            raise ToolNotFound(
                f"Tool '{tool_name}' not found on adapter '{adapter_name}'",
                details={
                    "adapter": adapter_name,
                    "tool": tool_name,
                    "available_tools": descriptor.tool_names,
                },
            )
        return descriptor, tool

    def stats(self) -> Dict[str, int]:
        snapshot = self._snapshot
        return {
            "adapters": len(snapshot),
            "tools": sum(len(d.tools) for d in snapshot.values()),
        }

    def _validate(self, descriptor: AdapterDescriptor) -> None:
        if not isinstance(descriptor, AdapterDescriptor):
            raise TypeError("AdapterRegistry accepts AdapterDescriptor instances only")
        if not descriptor.name:
            raise ValueError("Adapter name must not be empty")
        names = descriptor.tool_names
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate tool names in adapter '{descriptor.name}'")
