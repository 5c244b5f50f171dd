"""Import adapter manifests from disk into the gateway descriptor store."""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any, Dict, List

from adapter_gateway.descriptor_store import DescriptorStore
from adapter_gateway.manifests import ManifestError, descriptor_from_manifest


def _load_documents(path: Path) -> List[Dict[str, Any]]:
    files = sorted(path.glob("*.json")) if path.is_dir() else [path]
    documents: List[Dict[str, Any]] = []
    for file_path in files:
        with file_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        documents.extend(payload if isinstance(payload, list) else [payload])
    return documents


def main() -> None:
    parser = argparse.ArgumentParser(description="Import adapter manifests into the descriptor store")
    parser.add_argument(
        "--manifests",
        default=os.getenv("GATEWAY_ADAPTERS_PATH", "adapters"),
        help="Manifest file or directory of *.json manifests",
    )
    parser.add_argument(
        "--database-url",
        default=os.getenv("GATEWAY_DATABASE_URL", ""),
        help="Gateway Postgres database URL",
    )
    parser.add_argument(
        "--disabled",
        action="store_true",
        help="Store imported adapters as disabled",
    )
    parser.add_argument(
        "--skip-existing",
        action="store_true",
        help="Skip adapters already present (by name).",
    )

    args = parser.parse_args()
    if not args.database_url:
        raise SystemExit("Database URL missing. Set --database-url or GATEWAY_DATABASE_URL.")

    manifests_path = Path(args.manifests).expanduser().resolve()
    if not manifests_path.exists():
        raise SystemExit(f"Manifest path not found: {manifests_path}")

    store = DescriptorStore(args.database_url)
    existing_names = {d.name for d in store.list_descriptors(enabled_only=False)}

    imported = 0
    skipped = 0
    invalid = 0
    for document in _load_documents(manifests_path):
        try:
            descriptor = descriptor_from_manifest(document)
        except ManifestError as exc:
            print(f"Invalid manifest {document.get('name', '<unnamed>')}: {exc}")
            invalid += 1
            continue
        if args.skip_existing and descriptor.name in existing_names:
            skipped += 1
            continue
        store.upsert(document, enabled=not args.disabled)
        existing_names.add(descriptor.name)
        imported += 1

    print(f"Imported adapters: {imported} imported, {skipped} skipped, {invalid} invalid")


if __name__ == "__main__":
    main()
