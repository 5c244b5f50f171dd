"""Append-only audit sinks."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import psycopg
from psycopg.types.json import Jsonb

from .models import AuditRecord


logger = logging.getLogger(__name__)


class AuditSink(ABC):
    @abstractmethod
    async def append(self, record: AuditRecord) -> None:
        """Persist one record. Raising is allowed; the pipeline contains it."""

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


class InMemoryAuditSink(AuditSink):
    def __init__(self) -> None:
        self._records: List[AuditRecord] = []

    async def append(self, record: AuditRecord) -> None:
        self._records.append(record)

    @property
    def records(self) -> List[AuditRecord]:
        return list(self._records)


class LoggingAuditSink(AuditSink):
    """One JSON log line per record on the ``adapter_gateway.audit.records`` logger."""

    def __init__(self, logger_name: str = "adapter_gateway.audit.records") -> None:
        self._logger = logging.getLogger(logger_name)

    async def append(self, record: AuditRecord) -> None:
        self._logger.info(json.dumps(record.to_dict(), default=str, sort_keys=True))


class PostgresAuditSink(AuditSink):
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._conn: Optional[psycopg.AsyncConnection] = None
        self._initialized = False
        self._connect_lock = asyncio.Lock()

    async def _connect(self) -> psycopg.AsyncConnection:
        async with self._connect_lock:
            return await self._open()

    async def _open(self) -> psycopg.AsyncConnection:
        if self._conn is None or self._conn.closed:
            self._conn = await psycopg.AsyncConnection.connect(self.database_url, autocommit=True)
            self._initialized = False
        if not self._initialized:
            await self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_records (
                    id BIGSERIAL PRIMARY KEY,
                    adapter_name TEXT NOT NULL,
                    tool_name TEXT NOT NULL,
                    caller_id TEXT NOT NULL,
                    request_snapshot JSONB NOT NULL,
                    result_snapshot JSONB NOT NULL,
                    status_code INTEGER NOT NULL,
                    duration_ms DOUBLE PRECISION NOT NULL,
                    recorded_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            self._initialized = True
        return self._conn

    async def append(self, record: AuditRecord) -> None:
        conn = await self._connect()
        await conn.execute(
            """
            INSERT INTO audit_records (
                adapter_name, tool_name, caller_id, request_snapshot,
                result_snapshot, status_code, duration_ms, recorded_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.adapter_name,
                record.tool_name,
                record.caller_id,
                Jsonb(record.request_snapshot),
                Jsonb(record.result_snapshot),
                record.status_code,
                record.duration_ms,
                record.timestamp,
            ),
        )

    async def ping(self) -> bool:
        try:
            conn = await self._connect()
            await conn.execute("SELECT 1")
            return True
        except psycopg.Error as exc:
            logger.warning("Audit store unreachable: %s", exc)
            return False

    async def aclose(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
