"""
Asset tracking API.

Serves the live asset set as GeoJSON, accepts position reports into the
ingestion queue, streams enriched records over WebSocket channels, and runs
the pipeline consumer in the background for the lifetime of the app.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import Settings, get_settings, validate_startup
from errors.exceptions import AppException, queue_unavailable, validation_error
from errors.handlers import PUBLIC_CORS_HEADERS, register_exception_handlers
from health.service import HealthCheckService
from ingestion.models import parse_report
from middleware.rate_limiter import limiter, query_rate_limit, setup_rate_limiting
from middleware.request_id import RequestIDMiddleware
from pipeline.runtime import PipelineRuntime, build_runtime
from query.service import QueryService
from telemetry.service import initialize_telemetry
from websocket.connection_manager import ConnectionManager, get_connection_manager

logger = logging.getLogger(__name__)

SERVICE_NAME = "Asset Tracking API"
SERVICE_VERSION = "1.0.0"


def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[PipelineRuntime] = None,
    connection_manager: Optional[ConnectionManager] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings; loaded from the environment if omitted
        runtime: Pre-built pipeline runtime; built from settings if omitted
        connection_manager: WebSocket subscriber registry
    """
    if settings is None:
        settings = get_settings()
        validate_startup()
    initialize_telemetry(settings)

    connection_manager = connection_manager or get_connection_manager()
    runtime = runtime or build_runtime(settings, connection_manager)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting asset tracking API",
            extra={"extra_data": {"environment": settings.environment.value}}
        )
        await runtime.start()
        yield
        logger.info("Shutting down asset tracking API")
        await runtime.stop()

    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime
    app.state.connection_manager = connection_manager
    app.state.health_check_service = HealthCheckService(
        {
            "state_store": runtime.default_pipeline.state_store.health_check,
            "queue": runtime.queue.health_check,
        },
        check_timeout=5.0,
    )

    register_exception_handlers(app)

    # The asset listing is public and read-only
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Accept", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=600,
    )
    app.add_middleware(RequestIDMiddleware)

    setup_rate_limiting(app, requests_per_minute=settings.rate_limit_requests_per_minute)

    _register_routes(app)
    return app


async def _list_assets(runtime: PipelineRuntime, pipeline_name: str) -> JSONResponse:
    pipeline = runtime.get_pipeline(pipeline_name)
    body = await QueryService(pipeline.state_store).list_assets()
    return JSONResponse(content=body, headers=PUBLIC_CORS_HEADERS)


def _register_routes(app: FastAPI) -> None:

    @app.get("/")
    @limiter.limit(query_rate_limit)
    async def list_assets(request: Request):
        """
        Every live asset as a GeoJSON FeatureCollection.

        Returns ``{"message": "No assets are currently available."}`` when
        nothing is live, and 503 if the state store cannot be scanned.
        """
        runtime: PipelineRuntime = request.app.state.runtime
        return await _list_assets(runtime, runtime.default_pipeline.name)

    @app.get("/pipelines/{name}/assets")
    @limiter.limit(query_rate_limit)
    async def list_pipeline_assets(name: str, request: Request):
        """Live assets of a named pipeline."""
        return await _list_assets(request.app.state.runtime, name)

    @app.post("/api/assets/ingest", status_code=202)
    async def ingest_position_report(request: Request, payload: Any = Body(...)):
        """
        Accept one position report into the ingestion queue.

        The report is validated before it is queued so producers get a 400
        for payloads the pipeline would skip anyway.
        """
        try:
            report = parse_report(payload)
        except AppException as e:
            if not e.is_skippable:
                raise
            raise validation_error(e.message, details=e.details) from e

        runtime: PipelineRuntime = request.app.state.runtime
        try:
            message_id = await runtime.queue.publish(
                json.dumps(payload).encode("utf-8"), partition_key=report.id
            )
        except Exception as e:
            logger.error(
                "Failed to publish position report",
                extra={"extra_data": {"record_id": report.id, "error": str(e)}}
            )
            raise queue_unavailable(details={"record_id": report.id}) from e

        logger.debug(
            f"Position report {report.id} queued",
            extra={"extra_data": {"record_id": report.id, "message_id": message_id}}
        )
        return {"accepted": True, "id": report.id, "message_id": message_id}

    @app.websocket("/live/{channel}")
    async def live_channel(websocket: WebSocket, channel: str):
        """
        Subscribe to enriched records published on ``channel``.

        Messages sent to clients::

            {"type": "connection", "status": "connected", "channel": "frontend", ...}
            {"type": "asset_update", "data": {<enriched record>}}
            {"type": "pong", "timestamp": "..."}   (reply to {"type": "ping"})
        """
        manager: ConnectionManager = websocket.app.state.connection_manager
        await manager.connect(websocket, channel)
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug(f"Received non-JSON WebSocket message: {data[:100]}")
                    continue
                if isinstance(message, dict) and message.get("type") == "ping":
                    await websocket.send_json({
                        "type": "pong",
                        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                    })
        except WebSocketDisconnect:
            pass
        finally:
            await manager.disconnect(websocket, channel)

    @app.get("/health")
    async def health_basic(request: Request):
        """200 whenever the service is accepting requests."""
        result = await request.app.state.health_check_service.check_health()
        return {
            "status": result["status"],
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "timestamp": result["timestamp"],
        }

    @app.get("/health/ready")
    async def health_ready(request: Request):
        """
        Readiness: checks the state store and the ingestion queue.

        503 with failure reasons when a critical dependency is down.
        """
        health_status = await request.app.state.health_check_service.check_readiness()
        response_data: Dict[str, Any] = {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            **health_status.to_dict(),
        }

        if health_status.status == "unhealthy":
            response_data["failure_reasons"] = [
                {"dependency": dep.name, "error": dep.error}
                for dep in health_status.dependencies
                if not dep.healthy
            ]
            return JSONResponse(status_code=503, content=response_data)

        return response_data

    @app.get("/health/live")
    async def health_live(request: Request):
        result = await request.app.state.health_check_service.check_liveness()
        return {
            "status": result["status"],
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "timestamp": result["timestamp"],
        }


if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(create_app(), host="0.0.0.0", port=port, log_level="info")
