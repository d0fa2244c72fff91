"""
Asset pipeline: decode, filter, enrich, store, archive and publish.

One AssetPipeline is one isolated deployment of the processing logic,
configured by a PipelineConfig and given its own clients. Records in a batch
are handled sequentially in delivery order. Per-record problems with the
message itself (malformed JSON, a bad coordinate pair) skip the record;
enrichment and state store failures abort the batch so the queue redelivers
it; live publish failures are logged and ignored.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from archive.sink import ArchiveSink
from enrichment.engine import EnrichmentEngine
from errors.exceptions import AppException, publish_failed, store_write_failed
from ingestion.models import EnrichedRecord, PositionReport, decode_message
from ingestion.queue import QueueMessage
from live.publisher import LivePublisher
from store.store import StateStore
from telemetry.service import get_telemetry_service

logger = logging.getLogger(__name__)

PROCESSED = "processed"
SKIPPED = "skipped"
FILTERED = "filtered"

RecordFilter = Callable[[PositionReport], bool]


def id_filter(asset_ids: Iterable[int]) -> RecordFilter:
    """Filter that keeps only reports for the given asset ids."""
    wanted = frozenset(asset_ids)

    def _keep(report: PositionReport) -> bool:
        return report.id in wanted

    return _keep


@dataclass(frozen=True)
class PipelineConfig:
    """
    Attributes:
        name: Pipeline name, used in logs, archive keys and query routes
        ttl_seconds: Seconds a record stays live after its timestamp
        channel: Live channel records are published to
        record_filter: Optional predicate; reports it rejects are dropped
        output_fields: Optional passthrough allow-list; None forwards every
            extra field, an empty tuple forwards none
    """
    name: str = "assets"
    ttl_seconds: int = 300
    channel: str = "frontend"
    record_filter: Optional[RecordFilter] = None
    output_fields: Optional[Tuple[str, ...]] = None


@dataclass
class BatchResult:
    total: int = 0
    processed: int = 0
    skipped: int = 0
    filtered: int = 0
    skipped_refs: List[str] = field(default_factory=list)
    # Resolves once the archived records of this batch are flushed
    archived: Optional[asyncio.Future] = None

    def count(self, outcome: str, reference: str) -> None:
        if outcome == PROCESSED:
            self.processed += 1
        elif outcome == FILTERED:
            self.filtered += 1
        else:
            self.skipped += 1
            self.skipped_refs.append(reference)


class AssetPipeline:
    def __init__(
        self,
        config: PipelineConfig,
        engine: EnrichmentEngine,
        state_store: StateStore,
        archive_sink: ArchiveSink,
        publisher: LivePublisher,
    ):
        self.config = config
        self.engine = engine
        self.state_store = state_store
        self.archive_sink = archive_sink
        self.publisher = publisher

    @property
    def name(self) -> str:
        return self.config.name

    async def process_batch(self, messages: Sequence[QueueMessage]) -> BatchResult:
        """
        Process a batch in delivery order.

        Raises:
            AppException: ENRICHMENT_FAILED or STORE_WRITE_FAILED; the batch
                must not be acknowledged
        """
        result = BatchResult(total=len(messages))
        telemetry = get_telemetry_service()

        for message in messages:
            outcome = await self.process_message(message)
            result.count(outcome, message.reference)
        if result.processed:
            result.archived = self.archive_sink.pending_flush()

        logger.info(
            "Batch processed",
            extra={"extra_data": {
                "pipeline": self.name,
                "total": result.total,
                "processed": result.processed,
                "skipped": result.skipped,
                "filtered": result.filtered,
            }}
        )
        if telemetry:
            tags = {"pipeline": self.name}
            telemetry.record_metric("pipeline.records_processed", result.processed, tags)
            telemetry.record_metric("pipeline.records_skipped", result.skipped, tags)
        return result

    async def process_message(self, message: QueueMessage) -> str:
        """Handle one message; returns processed, skipped or filtered."""
        try:
            report = decode_message(message.payload, message.reference)
        except AppException as e:
            if not e.is_skippable:
                raise
            logger.warning(
                f"Skipping record: {e.message}",
                extra={"extra_data": {
                    "pipeline": self.name,
                    "message_ref": message.reference,
                    "error_code": e.error_code.value,
                    "record_id": e.record_id,
                    "details": e.details,
                }}
            )
            return SKIPPED

        if self.config.record_filter is not None and not self.config.record_filter(report):
            logger.debug(
                f"Record {report.id} filtered out",
                extra={"extra_data": {"pipeline": self.name, "record_id": report.id}}
            )
            return FILTERED

        record = await self.engine.enrich(
            report, self.config.ttl_seconds, self.config.output_fields
        )
        await self._write(record)
        await self._publish(record)
        return PROCESSED

    async def _write(self, record: EnrichedRecord) -> None:
        try:
            await self.state_store.upsert(record)
        except Exception as e:
            raise store_write_failed(record.id, "state_store", cause=e) from e

        try:
            await self.archive_sink.append(record)
        except Exception as e:
            raise store_write_failed(record.id, "archive", cause=e) from e

    async def _publish(self, record: EnrichedRecord) -> None:
        try:
            await self.publisher.publish(self.config.channel, record)
        except Exception as e:
            error = publish_failed(record.id, self.config.channel, cause=e)
            logger.warning(
                error.message,
                extra={"extra_data": {
                    "pipeline": self.name,
                    "error_code": error.error_code.value,
                    **error.details,
                }}
            )
