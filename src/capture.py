"""
Request Log Capture
ASGI middleware that observes each request/response pair, captures a bounded
amount of body or upload content, and submits a log record without delaying
the response.
"""

from enum import Enum
from tempfile import SpooledTemporaryFile
from typing import Iterable, Optional, Tuple

import structlog
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import Request

from ingest import Submitter
from log_record import LogRecord
from utils import LatencyTracker, generate_request_id

logger = structlog.get_logger()

MAX_UPLOAD_BYTES = 100 * 1024 * 1024
FILE_TOO_LARGE = b"file too large, skip content"
SPOOL_MAX_MEMORY = 1024 * 1024
REPLAY_CHUNK_SIZE = 64 * 1024


class CaptureKind(Enum):
    """What to capture for a given request content type."""
    NONE = "none"
    JSON = "json"
    MULTIPART = "multipart"


def capture_kind(content_type: Optional[str]) -> CaptureKind:
    """Pick the capture policy from the declared Content-Type."""
    if not content_type:
        return CaptureKind.NONE
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type == "multipart/form-data":
        return CaptureKind.MULTIPART
    if media_type == "application/json":
        return CaptureKind.JSON
    return CaptureKind.NONE


async def read_upload(upload: UploadFile, max_bytes: int = MAX_UPLOAD_BYTES) -> bytes:
    """
    Read an uploaded file under the size ceiling.

    Oversized uploads are replaced with FILE_TOO_LARGE and read failures with
    a short description; this never raises.
    """
    size = upload.size
    if size is not None and size > max_bytes:
        return FILE_TOO_LARGE
    try:
        content = await upload.read(max_bytes + 1)
    except OSError as e:
        return f"read file error: {e}".encode()
    if len(content) > max_bytes:
        return FILE_TOO_LARGE
    return content


class PathFilter:
    """
    Paths excluded from request logging.

    Patterns are exact paths, or "prefix/*" to exclude the prefix itself and
    everything below it.
    """

    def __init__(self, patterns: Iterable[str] = ()):
        self.exact = set()
        self.prefixes = []
        for pattern in patterns:
            if pattern.endswith("/*"):
                self.prefixes.append(pattern[:-2])
            else:
                self.exact.add(pattern)

    def __bool__(self):
        return bool(self.exact or self.prefixes)

    def skips(self, path: str) -> bool:
        if path in self.exact:
            return True
        return any(path.startswith(prefix) for prefix in self.prefixes)


def _replay_receive(body: bytes, receive):
    """Hand an already-consumed body to the downstream app, then defer to the server."""
    replayed = False

    async def replay():
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


def _spooled_receive(spool, receive, chunk_size: int = REPLAY_CHUNK_SIZE):
    """Replay a spooled body from the start in chunks, then defer to receive."""
    spool.seek(0)
    finished = False

    async def replay():
        nonlocal finished
        if finished:
            return await receive()
        chunk = await run_in_threadpool(spool.read, chunk_size)
        more_body = len(chunk) == chunk_size
        finished = not more_body
        return {"type": "http.request", "body": chunk, "more_body": more_body}

    return replay


async def _spool_body(request: Request) -> SpooledTemporaryFile:
    """Copy the request body to a spooled file that rolls to disk past SPOOL_MAX_MEMORY."""
    spool = SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY)
    try:
        async for chunk in request.stream():
            if chunk:
                await run_in_threadpool(spool.write, chunk)
    except BaseException:
        spool.close()
        raise
    return spool


def declared_length(request: Request) -> Optional[int]:
    """Content-Length header as an int, or None when absent or malformed."""
    value = request.headers.get("content-length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class RequestLogMiddleware:
    """Middleware to capture one log record per HTTP request."""

    def __init__(
        self,
        app,
        submitter: Submitter,
        service_name: str = "",
        file_field: str = "file",
        skip_paths: Iterable[str] = (),
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
    ):
        self.app = app
        self.submitter = submitter
        self.service_name = service_name
        self.file_field = file_field
        self.path_filter = PathFilter(skip_paths)
        self.max_upload_bytes = max_upload_bytes

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or self.path_filter.skips(scope["path"]):
            await self.app(scope, receive, send)
            return

        tracker = LatencyTracker()
        tracker.start()

        request_id = generate_request_id()
        scope.setdefault("state", {})["request_id"] = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        request = Request(scope, receive)
        content_type = request.headers.get("content-type", "")
        kind = capture_kind(content_type)

        file_name = None
        file_size = 0
        content = b""
        spool = None
        if kind is CaptureKind.JSON:
            content = await request.body()
            receive = _replay_receive(content, receive)
        elif kind is CaptureKind.MULTIPART:
            length = declared_length(request)
            if length is not None and length > self.max_upload_bytes:
                # Body passes through untouched
                content = FILE_TOO_LARGE
            else:
                spool = await _spool_body(request)
                file_name, file_size, content = await self._capture_upload(scope, spool)
                receive = _spooled_receive(spool, receive)

        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            if spool is not None:
                spool.close()
            draft = LogRecord(
                request_id=request_id,
                service_name=self.service_name,
                method=scope["method"],
                path=scope["path"],
                query_string=scope.get("query_string", b"").decode("latin-1"),
                remote_ip=scope["client"][0] if scope.get("client") else "",
                user_agent=request.headers.get("user-agent", ""),
                content_type=content_type,
                status_code=status_code,
                request_time=tracker.elapsed_seconds(),
                file_name=file_name,
                file_size=file_size,
            )
            self.submitter.submit_later(draft, content)

    async def _capture_upload(self, scope, spool) -> Tuple[Optional[str], int, bytes]:
        """Parse a spooled multipart body and read the designated file field."""
        request = Request(scope, _spooled_receive(spool, _no_more_body))
        try:
            form = await request.form()
        except (HTTPException, MultiPartException) as e:
            logger.warning("multipart_parse_failed", error=str(e))
            return None, 0, b""

        try:
            upload = form.get(self.file_field)
            if not isinstance(upload, UploadFile):
                return None, 0, b""
            content = await read_upload(upload, self.max_upload_bytes)
            return upload.filename, upload.size or 0, content
        finally:
            await form.close()


async def _no_more_body():
    return {"type": "http.disconnect"}
