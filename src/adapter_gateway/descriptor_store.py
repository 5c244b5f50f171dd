"""Postgres-backed adapter descriptor store for the gateway."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg
from psycopg.types.json import Jsonb

from .manifests import ManifestError, descriptor_from_manifest
from .models import AdapterDescriptor


logger = logging.getLogger(__name__)


class DescriptorStore:
    """Stores one manifest document per adapter; the name is the primary key."""

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._init_db()

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self.database_url)

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS adapter_descriptors (
                    name TEXT PRIMARY KEY,
                    version TEXT NOT NULL,
                    enabled BOOLEAN NOT NULL DEFAULT TRUE,
                    document JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """
            )

    def list_descriptors(self, enabled_only: bool = True) -> List[AdapterDescriptor]:
        with self._connect() as conn:
            query = "SELECT name, document FROM adapter_descriptors"
            if enabled_only:
                query += " WHERE enabled = TRUE"
            query += " ORDER BY name"
            rows = conn.execute(query).fetchall()

        descriptors: List[AdapterDescriptor] = []
        for name, document in rows:
            try:
                descriptors.append(descriptor_from_manifest(document))
            except ManifestError as exc:
                logger.error("Skipping stored adapter %s: %s", name, exc)
        return descriptors

    def get_descriptor(self, name: str) -> Optional[AdapterDescriptor]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT document FROM adapter_descriptors WHERE name = %s", (name,)
            ).fetchone()
        return descriptor_from_manifest(row[0]) if row else None

    def upsert(self, document: Dict[str, Any], enabled: bool = True) -> AdapterDescriptor:
        descriptor = descriptor_from_manifest(document)
        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO adapter_descriptors (name, version, enabled, document, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (name) DO UPDATE SET
                    version = EXCLUDED.version,
                    enabled = EXCLUDED.enabled,
                    document = EXCLUDED.document,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    descriptor.name,
                    descriptor.version,
                    enabled,
                    Jsonb(document),
                    now,
                    now,
                ),
            )
        return descriptor

    def delete(self, name: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM adapter_descriptors WHERE name = %s", (name,))

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1")
            return True
        except psycopg.Error as exc:
            logger.warning("Descriptor store unreachable: %s", exc)
            return False
