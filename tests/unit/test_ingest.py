import asyncio
import time

import orjson
import pytest

import ingest
from classifier import classify_content
from ingest import IngestionQueue, Submitter
from log_record import LogRecord


class FakeLogger:
    def __init__(self):
        self.warning_calls = []
        self.error_calls = []

    def warning(self, *args, **kwargs):
        self.warning_calls.append((args, kwargs))

    def error(self, *args, **kwargs):
        self.error_calls.append((args, kwargs))

    def info(self, *args, **kwargs):
        pass


def _draft(i=0):
    return LogRecord(request_id=f"req-{i}", method="GET", path="/items", status_code=200)


@pytest.mark.asyncio
async def test_offer_appends_until_capacity():
    queue = IngestionQueue(capacity=3)
    assert all(queue.offer(_draft(i)) for i in range(3))
    assert queue.qsize() == 3
    assert queue.full()


@pytest.mark.asyncio
async def test_offer_on_full_queue_drops_without_blocking(monkeypatch):
    fake_logger = FakeLogger()
    monkeypatch.setattr(ingest, "logger", fake_logger)

    queue = IngestionQueue(capacity=2)
    queue.offer(_draft(1))
    queue.offer(_draft(2))

    assert queue.offer(_draft(3)) is False
    assert queue.qsize() == 2
    assert queue.dropped == 1
    assert len(fake_logger.warning_calls) == 1
    assert fake_logger.warning_calls[0][1]["request_id"] == "req-3"

    # The dropped record never shows up, earlier ones keep FIFO order
    assert queue.get_nowait().request_id == "req-1"
    assert queue.get_nowait().request_id == "req-2"
    assert queue.empty()


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        IngestionQueue(capacity=0)


@pytest.mark.asyncio
async def test_submit_attaches_classified_payload():
    queue = IngestionQueue(capacity=4)
    submitter = Submitter(queue)

    draft = _draft()
    assert submitter.submit(draft, b'{"a":1}') is True

    record = queue.get_nowait()
    assert record.payload == b'{"a":1}'
    assert draft.payload is None


@pytest.mark.asyncio
async def test_submit_without_content_leaves_payload_absent():
    queue = IngestionQueue(capacity=4)
    Submitter(queue).submit(_draft(), b"")
    assert queue.get_nowait().payload is None


@pytest.mark.asyncio
async def test_submit_later_is_fire_and_forget():
    queue = IngestionQueue(capacity=4)
    submitter = Submitter(queue)

    submitter.submit_later(_draft(1), b"not json")
    submitter.submit_later(_draft(2), None)
    await submitter.join()

    assert submitter.pending == 0
    records = [queue.get_nowait(), queue.get_nowait()]
    by_id = {r.request_id: r for r in records}
    assert "not json" in orjson.loads(by_id["req-1"].payload)["error"]
    assert by_id["req-2"].payload is None


@pytest.mark.asyncio
async def test_submit_later_swallows_and_logs_errors(monkeypatch):
    fake_logger = FakeLogger()
    monkeypatch.setattr(ingest, "logger", fake_logger)

    def exploding_classifier(_content):
        raise RuntimeError("boom")

    monkeypatch.setattr(ingest, "classify_content", exploding_classifier)

    queue = IngestionQueue(capacity=4)
    submitter = Submitter(queue)
    submitter.submit_later(_draft(), b"{}")
    await submitter.join()

    assert queue.empty()
    assert len(fake_logger.error_calls) == 1


@pytest.mark.asyncio
async def test_concurrent_submitters_fill_to_capacity_and_drop_the_rest():
    queue = IngestionQueue(capacity=50)
    submitter = Submitter(queue)

    async def producer(base):
        for i in range(20):
            submitter.submit(_draft(base + i))
            await asyncio.sleep(0)

    await asyncio.gather(*(producer(p * 100) for p in range(5)))

    assert queue.qsize() == 50
    assert queue.dropped == 50


@pytest.mark.asyncio
async def test_submit_later_keeps_call_order_when_classification_is_slow(monkeypatch):
    def slow_classifier(content):
        time.sleep(0.1)
        return classify_content(content)

    monkeypatch.setattr(ingest, "classify_content", slow_classifier)

    queue = IngestionQueue(capacity=4)
    submitter = Submitter(queue)
    submitter.submit_later(_draft(1), b'{"big": "upload"}')
    submitter.submit_later(_draft(2), None)
    submitter.submit_later(_draft(3), b"")
    await submitter.join()

    assert [queue.get_nowait().request_id for _ in range(3)] == ["req-1", "req-2", "req-3"]
