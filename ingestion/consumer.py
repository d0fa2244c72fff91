"""
Queue consumer: pulls batches from the ingestion queue and drives a pipeline.

One consumer runs per (pipeline, queue). Each batch is one invocation: it
gets its own correlation id and is bounded by the invocation timeout. A
failed or timed-out batch is released back to the queue for redelivery.

A processed batch is acknowledged once its records are durable. When the
pipeline's result carries an ``archived`` future (records still sitting in
the archive buffer) the acknowledgement waits for that flush; if the flush
never happens the batch is released instead, so a crash between processing
and flushing leaves it on the queue.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Sequence, Set

from errors.exceptions import AppException
from ingestion.queue import IngestionQueue, QueueMessage
from middleware.request_id import correlation_scope, new_correlation_id
from telemetry.service import get_telemetry_service

logger = logging.getLogger(__name__)


class BatchProcessor(Protocol):
    name: str

    async def process_batch(self, messages: Sequence[QueueMessage]) -> Any:
        ...


class QueueConsumer:
    """
    Attributes:
        queue: Source queue
        pipeline: Object with ``process_batch(messages)``
        batch_size: Max messages per invocation
        invocation_timeout: Seconds one invocation may take
        poll_interval: Idle wait between empty fetches, in seconds
    """

    def __init__(
        self,
        queue: IngestionQueue,
        pipeline: BatchProcessor,
        batch_size: int = 25,
        invocation_timeout: float = 30.0,
        poll_interval: float = 1.0,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.batch_size = batch_size
        self.invocation_timeout = invocation_timeout
        self.poll_interval = poll_interval
        self._stopping = asyncio.Event()
        self._pending_acks: Set[asyncio.Task] = set()

    @property
    def pending_acks(self) -> int:
        """Processed batches waiting on an archive flush."""
        return len(self._pending_acks)

    async def run_once(self) -> Optional[Any]:
        """
        Process one batch.

        Returns:
            The pipeline's batch result, or None if the queue was empty or
            the batch failed (and was released for redelivery)
        """
        messages = await self.queue.fetch_batch(self.batch_size)
        if not messages:
            return None

        with correlation_scope(new_correlation_id("batch-")) as batch_id:
            log_context = {
                "pipeline": self.pipeline.name,
                "batch_id": batch_id,
                "batch_size": len(messages),
            }
            try:
                result = await asyncio.wait_for(
                    self.pipeline.process_batch(messages),
                    timeout=self.invocation_timeout,
                )
            except asyncio.TimeoutError:
                logger.error(
                    f"Batch exceeded invocation timeout of {self.invocation_timeout}s",
                    extra={"extra_data": log_context}
                )
                self._record_failure("timeout")
                await self.queue.release(messages)
                return None
            except AppException as e:
                logger.error(
                    f"Batch failed: {e.message}",
                    extra={"extra_data": {
                        **log_context,
                        "error_code": e.error_code.value,
                        "details": e.details,
                    }}
                )
                self._record_failure(e.error_code.value)
                await self.queue.release(messages)
                return None
            except Exception:
                await self.queue.release(messages)
                raise

            archived = getattr(result, "archived", None)
            if archived is None or archived.done():
                await self._acknowledge(messages, archived, log_context)
            else:
                task = asyncio.create_task(
                    self._acknowledge(messages, archived, log_context),
                    name=f"ack-{batch_id}",
                )
                self._pending_acks.add(task)
                task.add_done_callback(self._ack_done)
                logger.debug(
                    "Batch acknowledgement waits for archive flush",
                    extra={"extra_data": log_context}
                )
            return result

    async def _acknowledge(
        self,
        messages: Sequence[QueueMessage],
        archived: Optional[asyncio.Future],
        log_context: Dict[str, Any],
    ) -> None:
        if archived is not None:
            try:
                await asyncio.shield(archived)
            except Exception as e:
                logger.error(
                    "Batch records were not archived, released for redelivery",
                    extra={"extra_data": {**log_context, "error": str(e)}}
                )
                self._record_failure("archive")
                await self.queue.release(messages)
                return

        await self.queue.ack(messages)
        logger.info(
            "Batch acknowledged",
            extra={"extra_data": log_context}
        )

    def _ack_done(self, task: asyncio.Task) -> None:
        self._pending_acks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Deferred batch acknowledgement failed",
                extra={"extra_data": {
                    "pipeline": self.pipeline.name,
                    "error_type": type(error).__name__,
                    "error": str(error),
                }},
                exc_info=error,
            )

    async def drain(self) -> None:
        """Wait for every acknowledgement held on an archive flush."""
        if self._pending_acks:
            await asyncio.gather(*list(self._pending_acks), return_exceptions=True)

    def _record_failure(self, reason: str) -> None:
        telemetry = get_telemetry_service()
        if telemetry:
            telemetry.record_metric(
                "consumer.batch_failed", 1,
                {"pipeline": self.pipeline.name, "reason": reason}
            )

    async def run_forever(self) -> None:
        """Consume until stop() is called."""
        logger.info(
            "Queue consumer started",
            extra={"extra_data": {
                "pipeline": self.pipeline.name,
                "batch_size": self.batch_size,
            }}
        )
        while not self._stopping.is_set():
            try:
                result = await self.run_once()
            except Exception as e:
                logger.error(
                    "Unexpected error in queue consumer",
                    extra={"extra_data": {
                        "pipeline": self.pipeline.name,
                        "error_type": type(e).__name__,
                        "error": str(e),
                    }},
                    exc_info=e,
                )
                result = None

            if result is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

        logger.info(
            "Queue consumer stopped",
            extra={"extra_data": {"pipeline": self.pipeline.name}}
        )

    def stop(self) -> None:
        self._stopping.set()
