"""
Request Log Sinks
Bulk destinations for flushed batches. Each sink reports one outcome per batch.
"""

import asyncio
from datetime import date
from pathlib import Path
from threading import Lock
from typing import Optional, Protocol, Sequence

import httpx
import structlog
from sqlalchemy import insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from log_record import LogRecord
from storage import request_logs

logger = structlog.get_logger()


class Sink(Protocol):
    """Accepts a whole batch and returns True only if all of it was persisted."""

    async def write_batch(self, records: Sequence[LogRecord]) -> bool:
        ...

    async def close(self) -> None:
        ...


class SQLAlchemySink:
    """Bulk insert into the request_logs table, one transaction per batch."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _insert(self, rows) -> None:
        with self.engine.begin() as conn:
            conn.execute(insert(request_logs), rows)

    async def write_batch(self, records: Sequence[LogRecord]) -> bool:
        if not records:
            return True
        rows = [record.to_row() for record in records]
        try:
            await asyncio.to_thread(self._insert, rows)
        except SQLAlchemyError as e:
            logger.error("sql_sink_insert_failed", records=len(rows), error=str(e))
            return False
        return True

    async def close(self) -> None:
        self.engine.dispose()


class HttpSink:
    """POST each batch as a JSON array to a remote log collector."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = httpx.Timeout(timeout, connect=min(timeout, 5.0))
        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            limits=httpx.Limits(max_keepalive_connections=2, max_connections=4),
            transport=transport,
        )

    async def write_batch(self, records: Sequence[LogRecord]) -> bool:
        if not records:
            return True
        body = b"[" + b",".join(record.to_json() for record in records) + b"]"
        try:
            response = await self.client.post(
                self.url,
                content=body,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("http_sink_post_failed", records=len(records), error=str(e))
            return False
        return True

    async def close(self) -> None:
        await self.client.aclose()


class JsonlSink:
    """Append request logs as JSONL records, one file per day."""

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    def output_path(self) -> Path:
        return self.log_dir / f"request_logs_{date.today().isoformat()}.jsonl"

    def _append(self, lines: bytes) -> None:
        with self._lock:
            with open(self.output_path(), "ab") as handle:
                handle.write(lines)

    async def write_batch(self, records: Sequence[LogRecord]) -> bool:
        if not records:
            return True
        lines = b"".join(record.to_json() + b"\n" for record in records)
        try:
            await asyncio.to_thread(self._append, lines)
        except OSError as e:
            logger.error("jsonl_sink_write_failed", records=len(records), error=str(e))
            return False
        return True

    async def close(self) -> None:
        return None
