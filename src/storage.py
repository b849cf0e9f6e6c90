"""
Request Log Storage
SQLAlchemy Core schema for persisted request logs and engine helpers.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine

TABLE_NAME = "request_logs"

metadata = MetaData()

request_logs = Table(
    TABLE_NAME,
    metadata,
    Column("id", BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True),
    Column("request_id", String(64), nullable=False, index=True),
    Column("service_name", String(128), nullable=False, default=""),
    Column("method", String(10), nullable=False),
    Column("path", String(255), nullable=False, index=True),
    Column("query_string", Text),
    Column("status_code", Integer, nullable=False),
    Column("remote_ip", String(45), nullable=False),
    Column("user_agent", Text),
    Column("request_time", Float, nullable=False),
    Column(
        "created_at",
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        index=True,
    ),
    Column("file_name", String(255)),
    Column("file_size", BigInteger),
    Column("content_type", String(255)),
    Column("file_content_json", JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")),
)


def create_log_engine(database_url: str, pool_size: int = 5, max_overflow: int = 5) -> Engine:
    """Create the engine used by the SQL sink."""
    if database_url.startswith("sqlite"):
        return create_engine(database_url)
    return create_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )


def create_schema(engine: Engine) -> None:
    """Create the request_logs table and its indexes if missing."""
    metadata.create_all(engine)
