"""
Request Log Ingestion
Bounded drop-on-full queue between request handlers and the batch writer,
plus the submission entry point used by the capture middleware.
"""

import asyncio
from typing import Optional, Set

import structlog

from classifier import classify_content
from log_record import LogRecord

logger = structlog.get_logger()

DEFAULT_QUEUE_CAPACITY = 10_000


class IngestionQueue:
    """
    Fixed-capacity FIFO shared by many producers and one consumer.

    Producers call offer(), which never waits: a full queue drops the record.
    Only the batch writer consumes, through get() / get_nowait().
    """

    def __init__(self, capacity: int = DEFAULT_QUEUE_CAPACITY):
        if capacity < 1:
            raise ValueError("queue capacity must be positive")
        self.capacity = capacity
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)

    def offer(self, record: LogRecord) -> bool:
        """Enqueue a record if there is room. Returns False when dropped."""
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "log_queue_full",
                request_id=record.request_id,
                capacity=self.capacity,
                dropped_total=self.dropped,
            )
            return False
        return True

    async def get(self) -> LogRecord:
        return await self._queue.get()

    def get_nowait(self) -> LogRecord:
        return self._queue.get_nowait()

    def qsize(self) -> int:
        return self._queue.qsize()

    def full(self) -> bool:
        return self._queue.full()

    def empty(self) -> bool:
        return self._queue.empty()


class Submitter:
    """Classifies captured content and hands finished records to the queue."""

    def __init__(self, queue: IngestionQueue):
        self.queue = queue
        self._tasks: Set[asyncio.Task] = set()
        self._last_task: Optional[asyncio.Task] = None

    def submit(self, draft: LogRecord, raw_content: Optional[bytes] = None) -> bool:
        """Classify raw_content, attach it to the draft and enqueue without blocking."""
        record = draft.with_payload(classify_content(raw_content))
        return self.queue.offer(record)

    def submit_later(self, draft: LogRecord, raw_content: Optional[bytes] = None) -> None:
        """
        Fire-and-forget submission from a request handler.

        The caller never waits on classification or enqueue and never sees
        an error from either. Classification runs concurrently, but records
        reach the queue in the order submit_later was called.
        """
        task = asyncio.create_task(self._submit_async(draft, raw_content, self._last_task))
        self._last_task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _submit_async(
        self,
        draft: LogRecord,
        raw_content: Optional[bytes],
        previous: Optional[asyncio.Task],
    ) -> None:
        try:
            payload = None
            if raw_content:
                # Large uploads are parsed off the event loop
                payload = await asyncio.to_thread(classify_content, raw_content)
            if previous is not None and not previous.done():
                await asyncio.wait({previous})
            self.queue.offer(draft.with_payload(payload))
        except Exception as e:
            logger.error(
                "log_submit_failed",
                request_id=draft.request_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait for every in-flight submission to reach the queue (or be dropped)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
