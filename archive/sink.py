"""
Archive sink: buffers every enriched record and writes gzip batches.

Records are serialized as one JSON object per line and buffered in arrival
order. A batch is flushed when the buffer interval elapses or the buffer
reaches its size limit, whichever comes first. Flush failures are retried
with exponential backoff; a batch that still cannot be written goes back to
the front of the buffer for the next flush.

Buffered records are not durable. ``pending_flush()`` returns a future that
resolves once everything buffered so far has been written, or fails with
ArchiveFlushError if the sink closes with records it could not write. The
queue consumer holds its acknowledgement on that future, so a crash between
processing and flushing leaves the batch on the queue for redelivery.
"""

import asyncio
import gzip
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from archive.writers import ArchiveWriter
from ingestion.models import EnrichedRecord
from resilience.retry import RetryConfig, RetryExhaustedException, retry_async
from telemetry.service import get_telemetry_service

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_INTERVAL_SECONDS = 120
DEFAULT_BUFFER_SIZE_BYTES = 5 * 1024 * 1024


class ArchiveFlushError(Exception):
    """Buffered records were never written to the archive."""

    def __init__(self, pipeline: str, records: int):
        self.pipeline = pipeline
        self.records = records
        super().__init__(f"{records} records of pipeline '{pipeline}' were not archived")


def _consume_outcome(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


def _copy_outcome(source: asyncio.Future, target: asyncio.Future) -> None:
    if target.done():
        return
    if source.cancelled():
        target.cancel()
    elif source.exception() is not None:
        target.set_exception(source.exception())
    else:
        target.set_result(source.result())


def batch_key(prefix: str, pipeline: str, flushed_at: float) -> str:
    """``{prefix}YYYY/MM/DD/HH/{pipeline}-{epoch_ms}-{uuid}.jsonl.gz`` in UTC."""
    stamp = datetime.fromtimestamp(flushed_at, tz=timezone.utc)
    epoch_ms = int(flushed_at * 1000)
    return (
        f"{prefix}{stamp:%Y/%m/%d/%H}/"
        f"{pipeline}-{epoch_ms}-{uuid.uuid4().hex}.jsonl.gz"
    )


class ArchiveSink:
    """
    Args:
        writer: Destination for flushed batches
        pipeline_name: Used in object keys and logs
        prefix: Object key prefix
        buffer_interval_seconds: Max age of the buffer before a flush
        buffer_size_bytes: Uncompressed buffer size that forces a flush
        retry_config: Backoff for failed flushes
        clock: Source of the flush timestamp used in keys
    """

    def __init__(
        self,
        writer: ArchiveWriter,
        pipeline_name: str = "assets",
        prefix: str = "",
        buffer_interval_seconds: float = DEFAULT_BUFFER_INTERVAL_SECONDS,
        buffer_size_bytes: int = DEFAULT_BUFFER_SIZE_BYTES,
        retry_config: Optional[RetryConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.writer = writer
        self.pipeline_name = pipeline_name
        self.prefix = prefix
        self.buffer_interval_seconds = buffer_interval_seconds
        self.buffer_size_bytes = buffer_size_bytes
        self.retry_config = retry_config or RetryConfig(max_attempts=3, initial_delay=1.0)
        self._clock = clock

        self._buffer: List[bytes] = []
        self._buffered_bytes = 0
        # Resolves when the records currently in _buffer are written
        self._durable: Optional[asyncio.Future] = None
        # Resolves when the batch being written by flush() is written
        self._in_flight: Optional[asyncio.Future] = None
        self._lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def buffered_records(self) -> int:
        return len(self._buffer)

    @property
    def buffered_bytes(self) -> int:
        return self._buffered_bytes

    def _new_future(self) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_outcome)
        return future

    def pending_flush(self) -> asyncio.Future:
        """
        Future that resolves once every record appended so far is written.

        Already resolved when nothing is buffered or being written.
        """
        if self._durable is not None:
            return self._durable
        if self._in_flight is not None:
            return self._in_flight
        future = self._new_future()
        future.set_result(None)
        return future

    def start(self) -> None:
        """Start the background flusher on the running loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"archive-flusher-{self.pipeline_name}")

    async def _run(self) -> None:
        while not self._closed:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.buffer_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if self._closed:
                break
            await self.flush()

    async def append(self, record: EnrichedRecord) -> None:
        """Enqueue a record; returns once it is buffered."""
        line = record.to_json().encode("utf-8") + b"\n"
        async with self._lock:
            if self._durable is None:
                self._durable = self._new_future()
            self._buffer.append(line)
            self._buffered_bytes += len(line)
            full = self._buffered_bytes >= self.buffer_size_bytes

        if full:
            if self._task is not None and not self._task.done():
                self._wake.set()
            else:
                await self.flush()

    async def flush(self) -> int:
        """
        Write everything currently buffered as one batch.

        Returns:
            Number of records written; 0 if the buffer was empty or the
            write failed (the batch is then back in the buffer)
        """
        async with self._flush_lock:
            async with self._lock:
                if not self._buffer:
                    return 0
                lines, self._buffer = self._buffer, []
                size, self._buffered_bytes = self._buffered_bytes, 0
                waiter, self._durable = self._durable, None
                self._in_flight = waiter

            key = batch_key(self.prefix, self.pipeline_name, self._clock())
            body = gzip.compress(b"".join(lines))

            try:
                await retry_async(
                    self.writer.write_batch, key, body,
                    config=self.retry_config,
                    operation_name="archive_flush",
                )
            except RetryExhaustedException as e:
                async with self._lock:
                    self._buffer = lines + self._buffer
                    self._buffered_bytes += size
                    if self._durable is None:
                        self._durable = waiter
                    elif waiter is not None:
                        # Records appended meanwhile; both resolve on the next write
                        self._durable.add_done_callback(
                            lambda done, target=waiter: _copy_outcome(done, target)
                        )
                    self._in_flight = None
                logger.error(
                    "Archive flush failed, batch returned to buffer",
                    extra={"extra_data": {
                        "pipeline": self.pipeline_name,
                        "key": key,
                        "records": len(lines),
                        "attempts": e.attempts,
                        "error": str(e.last_exception),
                    }}
                )
                return 0

            self._in_flight = None
            if waiter is not None and not waiter.done():
                waiter.set_result(None)

            logger.info(
                "Archive batch flushed",
                extra={"extra_data": {
                    "pipeline": self.pipeline_name,
                    "key": key,
                    "records": len(lines),
                    "bytes_raw": size,
                    "bytes_gzip": len(body),
                }}
            )
            telemetry = get_telemetry_service()
            if telemetry:
                telemetry.record_metric(
                    "archive.records_flushed", len(lines), {"pipeline": self.pipeline_name}
                )
            return len(lines)

    async def close(self) -> None:
        """
        Stop the flusher and drain the buffer.

        Records that still cannot be written fail their pending_flush()
        future with ArchiveFlushError.
        """
        self._closed = True
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        await self.flush()
        if self._buffer:
            logger.error(
                "Archive sink closed with unwritten records",
                extra={"extra_data": {
                    "pipeline": self.pipeline_name,
                    "records": len(self._buffer),
                }}
            )
            async with self._lock:
                waiter, self._durable = self._durable, None
            if waiter is not None and not waiter.done():
                waiter.set_exception(ArchiveFlushError(self.pipeline_name, len(self._buffer)))
