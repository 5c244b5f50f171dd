"""Per-adapter credential resolution."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


logger = logging.getLogger(__name__)

ENV_PREFIX = "GATEWAY_CRED_"


def _env_key(adapter_name: str) -> str:
    return ENV_PREFIX + adapter_name.upper().replace("-", "_") + "_"


class CredentialProvider:
    """Static secrets keyed by adapter name.

    Values come from a JSON file (``{"paystack-api": {"token": "..."}}``) and
    from environment variables such as ``GATEWAY_CRED_PAYSTACK_API_TOKEN``;
    environment values win over the file.
    """

    def __init__(
        self,
        credentials: Optional[Mapping[str, Mapping[str, Any]]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._credentials: Dict[str, Dict[str, Any]] = {
            name: dict(values) for name, values in (credentials or {}).items()
        }
        self._environ = environ if environ is not None else os.environ

    @classmethod
    def from_file(
        cls, path: Optional[str], environ: Optional[Mapping[str, str]] = None
    ) -> "CredentialProvider":
        if not path:
            return cls(environ=environ)
        file_path = Path(path)
        if not file_path.exists():
            logger.warning("Credentials file not found: %s", file_path)
            return cls(environ=environ)
        with file_path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError("Credentials file must contain an object keyed by adapter name")
        return cls(data, environ=environ)

    def resolve(self, adapter_name: str) -> Dict[str, Any]:
        resolved = dict(self._credentials.get(adapter_name, {}))
        prefix = _env_key(adapter_name)
        for key, value in self._environ.items():
            if key.startswith(prefix) and value:
                resolved[key[len(prefix):].lower()] = value
        return resolved

    def set(self, adapter_name: str, credentials: Mapping[str, Any]) -> None:
        self._credentials[adapter_name] = dict(credentials)
