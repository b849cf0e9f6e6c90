"""
Request Log Service - FastAPI Application
Hosts the request log pipeline: capture middleware, ingestion queue,
batch writer and the configured sink.
"""

from contextlib import asynccontextmanager
from typing import List, Optional
from urllib.parse import quote

import structlog
from fastapi import FastAPI, Request
from pydantic_settings import BaseSettings

from batch_writer import DEFAULT_BATCH_SIZE, DEFAULT_FLUSH_INTERVAL, BatchWriter
from capture import MAX_UPLOAD_BYTES, RequestLogMiddleware
from ingest import DEFAULT_QUEUE_CAPACITY, IngestionQueue, Submitter
from sinks import HttpSink, JsonlSink, Sink, SQLAlchemySink
from storage import create_log_engine, create_schema

logger = structlog.get_logger()


class Settings(BaseSettings):
    """Application settings from environment."""
    service_name: str = ""
    service_host: str = "127.0.0.1"
    service_port: int = 8000
    log_level: str = "INFO"

    queue_capacity: int = DEFAULT_QUEUE_CAPACITY
    batch_size: int = DEFAULT_BATCH_SIZE
    flush_interval: float = DEFAULT_FLUSH_INTERVAL
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    upload_field: str = "file"
    skip_paths: List[str] = []

    sink: str = "sql"  # "sql", "http" or "jsonl"

    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "postgres"
    db_password: str = ""
    db_name: str = "request-log"
    database_url: Optional[str] = None

    http_sink_url: str = "http://127.0.0.1:9000/logs"
    http_sink_timeout: float = 10.0

    jsonl_dir: str = "logs"

    class Config:
        env_file = "config/.env"
        env_file_encoding = "utf-8"

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{quote(self.db_user, safe='')}:{quote(self.db_password, safe='')}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


def build_sink(settings: Settings) -> Sink:
    """Create the sink selected by settings.sink."""
    if settings.sink == "sql":
        engine = create_log_engine(settings.resolved_database_url())
        create_schema(engine)
        return SQLAlchemySink(engine)
    if settings.sink == "http":
        return HttpSink(settings.http_sink_url, timeout=settings.http_sink_timeout)
    if settings.sink == "jsonl":
        return JsonlSink(settings.jsonl_dir)
    raise ValueError(f"Unknown sink: {settings.sink}")


class Pipeline:
    """The queue, submitter and writer shared by one application."""

    def __init__(self, settings: Settings):
        self.queue = IngestionQueue(settings.queue_capacity)
        self.submitter = Submitter(self.queue)
        self.writer: Optional[BatchWriter] = None

    async def start(self, sink: Sink, settings: Settings):
        self.writer = BatchWriter(
            self.queue,
            sink,
            max_batch_size=settings.batch_size,
            flush_interval=settings.flush_interval,
        )
        self.writer.start()

    async def stop(self):
        await self.submitter.join()
        if self.writer:
            await self.writer.stop(drain=True)
            await self.writer.sink.close()


def create_app(settings: Optional[Settings] = None, sink: Optional[Sink] = None) -> FastAPI:
    """Build the service around a pipeline; sink defaults to the configured one."""
    settings = settings or Settings()
    pipeline = Pipeline(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        logger.info("service_startup", version="0.1.0", sink=settings.sink)
        await pipeline.start(sink or build_sink(settings), settings)

        yield

        logger.info("service_shutdown", queued=pipeline.queue.qsize())
        await pipeline.stop()

    app = FastAPI(
        title="Request Log Service",
        description="Asynchronous per-request telemetry pipeline",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.pipeline = pipeline

    app.add_middleware(
        RequestLogMiddleware,
        submitter=pipeline.submitter,
        service_name=settings.service_name,
        file_field=settings.upload_field,
        skip_paths=settings.skip_paths,
        max_upload_bytes=settings.max_upload_bytes,
    )

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        writer = pipeline.writer
        return {
            "status": "healthy" if writer and writer.running else "degraded",
            "queue": {
                "depth": pipeline.queue.qsize(),
                "capacity": pipeline.queue.capacity,
                "dropped": pipeline.queue.dropped,
            },
            "writer": {
                "batches_written": writer.batches_written if writer else 0,
                "records_written": writer.records_written if writer else 0,
                "batches_failed": writer.batches_failed if writer else 0,
                "records_failed": writer.records_failed if writer else 0,
            },
        }

    @app.get("/")
    async def root(request: Request):
        """Root endpoint."""
        return {
            "service": settings.service_name or "request-log-service",
            "version": "0.1.0",
            "request_id": request.scope.get("state", {}).get("request_id"),
            "endpoints": {
                "health": "/health",
            },
        }

    return app


settings = Settings()
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "request_log_service:app",
        host=settings.service_host,
        port=settings.service_port,
        log_level=settings.log_level.lower(),
        reload=False
    )
