"""
Request Log Record
Immutable per-request value handed from the capture middleware to the sinks.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import orjson
from pydantic import BaseModel, ConfigDict, Field

from classifier import payload_data


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LogRecord(BaseModel):
    """One completed HTTP request, ready for persistence."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    service_name: str = ""
    method: str
    path: str
    query_string: str = ""
    remote_ip: str = ""
    user_agent: str = ""
    content_type: str = ""
    status_code: int
    request_time: float = Field(default=0.0, ge=0.0)
    created_at: datetime = Field(default_factory=utc_now)
    file_name: Optional[str] = None
    file_size: int = Field(default=0, ge=0)
    payload: Optional[bytes] = None

    def with_payload(self, payload: Optional[bytes]) -> "LogRecord":
        """Return a copy of this record carrying the classified payload."""
        return self.model_copy(update={"payload": payload})

    def to_row(self) -> Dict[str, Any]:
        """Column values for the request_logs table."""
        return {
            "request_id": self.request_id,
            "service_name": self.service_name,
            "method": self.method,
            "path": self.path,
            "query_string": self.query_string,
            "status_code": self.status_code,
            "remote_ip": self.remote_ip,
            "user_agent": self.user_agent,
            "request_time": self.request_time,
            "created_at": self.created_at,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "content_type": self.content_type,
            "file_content_json": payload_data(self.payload),
        }

    def to_json(self) -> bytes:
        """Serialize for wire/file sinks, embedding the payload verbatim."""
        document = self.model_dump(mode="json", exclude={"payload"})
        document["file_content_json"] = (
            orjson.Fragment(self.payload) if self.payload is not None else None
        )
        return orjson.dumps(document)
