"""
Standalone pipeline worker.

Consumes the ingestion queue without serving HTTP, for deployments that
scale consumers separately from the query API. Requires the Redis queue
backend, since an in-memory queue cannot be shared between processes.

    python worker.py
"""

import asyncio
import logging
import signal

from config.settings import get_settings, validate_startup
from pipeline.runtime import build_runtime
from telemetry.service import initialize_telemetry
from websocket.connection_manager import get_connection_manager

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    settings = get_settings()
    validate_startup()
    initialize_telemetry(settings)

    if settings.queue_backend != "redis":
        logger.warning(
            "Worker started with the in-memory queue; it will only see reports "
            "published from this process"
        )

    runtime = build_runtime(settings, get_connection_manager())
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms
            pass

    await runtime.start()
    logger.info(
        "Worker running",
        extra={"extra_data": {"pipelines": list(runtime.pipelines)}}
    )
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


if __name__ == "__main__":
    asyncio.run(run_worker())
