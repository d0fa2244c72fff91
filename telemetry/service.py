"""
Telemetry service for structured logging and observability.

Every component of the pipeline logs through the standard logging module;
this service installs a JSON formatter on the root logger so each entry
carries a timestamp, level, message and the correlation id bound for the
current HTTP request or batch invocation. Tracing is exported through
OpenTelemetry when an OTLP endpoint is configured.
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from middleware.request_id import request_id_var


class JSONFormatter(logging.Formatter):
    """
    Log formatter that renders each record as a single JSON object.

    Base fields: timestamp, level, message, logger, request_id. Structured
    context is merged in from the record's ``extra_data`` attribute, e.g.
    ``logger.info("...", extra={"extra_data": {"record_id": 7}})``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "request_id": request_id_var.get(""),
        }

        if record.module:
            log_data["module"] = record.module
        if record.funcName and record.funcName != "<module>":
            log_data["function"] = record.funcName
        if record.lineno:
            log_data["line"] = record.lineno

        if hasattr(record, "extra_data") and record.extra_data:
            log_data.update(record.extra_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            log_data["stack_trace"] = record.stack_info

        return json.dumps(log_data, default=str)


class TelemetryService:
    """
    Centralized logging, metrics and tracing for the pipeline.

    Metrics are emitted as structured debug log entries (metric_name,
    metric_value, tags); spans go to OpenTelemetry when configured and
    are no-ops otherwise.
    """

    def __init__(self, settings: Optional[Any] = None):
        """
        Args:
            settings: Application settings providing log_level, otel_endpoint
                and otel_service_name
        """
        self.settings = settings
        self.tracer = None
        self._logger = None
        self._setup_logging()
        self._setup_tracing()

    def _setup_logging(self) -> None:
        log_level_str = "INFO"
        if self.settings and hasattr(self.settings, "log_level"):
            log_level_str = self.settings.log_level

        log_level = getattr(logging, log_level_str.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)

        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(log_level)
        stdout_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(stdout_handler)

        self._logger = logging.getLogger("telemetry")
        self._logger.info("Telemetry service initialized", extra={
            "extra_data": {"log_level": log_level_str}
        })

    def _setup_tracing(self) -> None:
        """Configure an OTLP span exporter if an endpoint is set."""
        if not self.settings:
            return

        otel_endpoint = getattr(self.settings, "otel_endpoint", None)
        if not otel_endpoint:
            self._logger.debug("OpenTelemetry endpoint not configured, tracing disabled")
            return

        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import SERVICE_NAME, Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        service_name = getattr(self.settings, "otel_service_name", "asset-tracking")

        try:
            provider = TracerProvider(resource=Resource(attributes={
                SERVICE_NAME: service_name
            }))
            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=otel_endpoint))
            )
            trace.set_tracer_provider(provider)
            self.tracer = trace.get_tracer(service_name)

            self._logger.info("OpenTelemetry tracing configured", extra={
                "extra_data": {
                    "otel_endpoint": otel_endpoint,
                    "service_name": service_name
                }
            })
        except Exception as e:
            self._logger.error(
                "Failed to configure OpenTelemetry tracing",
                extra={"extra_data": {"error": str(e)}}
            )

    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """
        Record a custom metric as a structured log entry.

        Args:
            name: Metric name, e.g. "pipeline.records_written"
            value: Metric value
            tags: Optional dimensions, e.g. {"pipeline": "assets"}
        """
        metric_data: Dict[str, Any] = {
            "metric_name": name,
            "metric_value": value,
        }
        if tags:
            metric_data["tags"] = tags

        self._logger.debug(
            f"Metric: {name}={value}",
            extra={"extra_data": metric_data}
        )

    @contextmanager
    def timed(self, name: str, tags: Optional[Dict[str, str]] = None) -> Iterator[None]:
        """Record the wall-clock duration of a block as ``<name>`` in ms."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_metric(name, round((time.perf_counter() - start) * 1000, 2), tags)

    def create_span(self, name: str, attributes: Optional[Dict[str, Any]] = None):
        """
        Create a tracing span.

        Returns:
            A span context manager, or a no-op one if tracing is not configured
        """
        if self.tracer:
            return self.tracer.start_as_current_span(name, attributes=attributes)
        return _NoOpSpanContextManager()

    def create_external_service_span(
        self,
        service_name: str,
        operation: str,
        attributes: Optional[Dict[str, Any]] = None
    ):
        """
        Create a client span for a call to an external service.

        Args:
            service_name: e.g. "elevation", "geofence", "redis", "s3"
            operation: e.g. "lookup", "put_object"
            attributes: Additional span attributes
        """
        span_attributes: Dict[str, Any] = {
            "service.name": service_name,
            "operation.name": operation,
            "span.kind": "client",
        }
        if attributes:
            span_attributes.update(attributes)

        return self.create_span(f"{service_name}.{operation}", span_attributes)


class _NoOpSpanContextManager:
    """Stand-in span used when tracing is not configured."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def add_event(self, name: str, attributes: Optional[Dict[str, Any]] = None) -> None:
        pass

    def record_exception(self, exception: Exception) -> None:
        pass


_telemetry_service: Optional[TelemetryService] = None


def get_telemetry_service() -> Optional[TelemetryService]:
    """
    Get the global telemetry service instance.

    Returns:
        The telemetry service, or None if not initialized
    """
    return _telemetry_service


def initialize_telemetry(settings: Optional[Any] = None) -> TelemetryService:
    """Initialize the global telemetry service from settings."""
    global _telemetry_service
    _telemetry_service = TelemetryService(settings)
    return _telemetry_service
