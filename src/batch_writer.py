"""
Batch Writer
Single long-running consumer that drains the ingestion queue into bounded
batches and flushes each batch to a sink in one bulk write.
"""

import asyncio
import contextlib
from typing import List, Optional

import structlog

from ingest import IngestionQueue
from log_record import LogRecord
from sinks import Sink

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 100
DEFAULT_FLUSH_INTERVAL = 0.5
DEFAULT_STOP_TIMEOUT = 10.0


class BatchWriter:
    """
    Accumulate / flush / repeat loop.

    A batch closes when it holds max_batch_size records or when
    flush_interval seconds have passed since it was opened, whichever comes
    first. Empty batches are never flushed. A failed flush loses the batch;
    nothing is retried or requeued.

    The loop ends when the stop event is set. The batch being accumulated at
    that point is flushed (or discarded without drain) by the loop itself, so
    a write in progress is never interrupted.
    """

    def __init__(
        self,
        queue: IngestionQueue,
        sink: Sink,
        max_batch_size: int = DEFAULT_BATCH_SIZE,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
    ):
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be positive")
        if flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        self.queue = queue
        self.sink = sink
        self.max_batch_size = max_batch_size
        self.flush_interval = flush_interval
        self.stop_timeout = stop_timeout

        self.batches_written = 0
        self.records_written = 0
        self.batches_failed = 0
        self.records_failed = 0

        self._stopping = asyncio.Event()
        self._drain = True
        self._task: Optional[asyncio.Task] = None

    async def _next_record(self, timeout: float) -> Optional[LogRecord]:
        """Wait for a record, the stop event or the timeout, whichever is first."""
        get_task = asyncio.ensure_future(self.queue.get())
        stop_task = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait(
                {get_task, stop_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_task.cancel()
            if not get_task.done():
                # A cancelled get leaves the record in the queue
                get_task.cancel()
            await asyncio.gather(get_task, stop_task, return_exceptions=True)
        if not get_task.cancelled():
            return get_task.result()
        return None

    async def accumulate(self) -> List[LogRecord]:
        """Collect the next batch, bounded by size, the flush deadline and stop()."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.flush_interval
        batch: List[LogRecord] = []

        while len(batch) < self.max_batch_size:
            try:
                record = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                remaining = deadline - loop.time()
                if remaining <= 0 or self._stopping.is_set():
                    break
                record = await self._next_record(remaining)
                if record is None:
                    break
            batch.append(record)

        return batch

    async def flush(self, batch: List[LogRecord]) -> bool:
        """Write one batch to the sink. Failures are logged and the batch dropped."""
        if not batch:
            return True

        try:
            ok = await self.sink.write_batch(batch)
        except asyncio.CancelledError:
            logger.error("batch_write_cancelled", records=len(batch))
            self.batches_failed += 1
            self.records_failed += len(batch)
            raise
        except Exception as e:
            logger.error(
                "batch_write_failed",
                records=len(batch),
                error=str(e),
                error_type=type(e).__name__,
            )
            ok = False
        else:
            if not ok:
                logger.error("batch_write_failed", records=len(batch))

        if ok:
            self.batches_written += 1
            self.records_written += len(batch)
        else:
            self.batches_failed += 1
            self.records_failed += len(batch)
        return ok

    async def run_once(self) -> None:
        """One accumulate + flush cycle."""
        batch = await self.accumulate()
        if self._stopping.is_set() and not self._drain:
            if batch:
                logger.warning("writer_discarded_batch", records=len(batch))
            return
        await self.flush(batch)

    async def run(self) -> None:
        """Run until stop() is requested."""
        logger.info(
            "writer_started",
            max_batch_size=self.max_batch_size,
            flush_interval=self.flush_interval,
        )
        while not self._stopping.is_set():
            await self.run_once()

    def start(self) -> asyncio.Task:
        """Spawn the writer loop as a background task."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._drain = True
            self._task = asyncio.create_task(self.run())
        return self._task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self, drain: bool = True) -> None:
        """
        Signal the writer loop to finish and wait up to stop_timeout for it.

        With drain=True the batch being accumulated and everything still
        queued are flushed before returning. A loop that does not finish in
        time is cancelled.
        """
        self._drain = drain
        self._stopping.set()

        task, self._task = self._task, None
        if task is not None:
            done, _ = await asyncio.wait({task}, timeout=self.stop_timeout)
            if not done:
                logger.warning("writer_stop_timeout", timeout=self.stop_timeout)
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            elif not task.cancelled() and task.exception() is not None:
                logger.error("writer_crashed", error=str(task.exception()))

        if not drain:
            if not self.queue.empty():
                logger.warning("writer_stopped_without_drain", discarded=self.queue.qsize())
            return

        await self.drain()
        logger.info("writer_stopped", records_written=self.records_written)

    async def drain(self) -> None:
        """Flush the queue contents in max_batch_size chunks."""
        while not self.queue.empty():
            batch = []
            while len(batch) < self.max_batch_size and not self.queue.empty():
                batch.append(self.queue.get_nowait())
            await self.flush(batch)
