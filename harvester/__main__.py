"""Entry point: ``python -m harvester`` runs the API, ``python -m harvester worker`` runs headless workers."""

import asyncio
import logging
import signal
import sys

import uvicorn
from prometheus_client import start_http_server

from harvester.config import settings
from harvester.logging_config import setup_logging
from harvester.worker.runner import Pipeline

logger = logging.getLogger(__name__)


async def run_worker():
    """Run the pipeline workers and scheduler until SIGINT/SIGTERM."""
    start_http_server(settings.metrics_port)
    logger.info(f"Metrics exposed on :{settings.metrics_port}")

    pipeline = Pipeline()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await pipeline.start()
    await stop.wait()
    await pipeline.stop()


def main(argv: list[str]):
    setup_logging()
    if argv and argv[0] == "worker":
        asyncio.run(run_worker())
        return

    uvicorn.run(
        "harvester.api.app:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


def cli():
    main(sys.argv[1:])


if __name__ == "__main__":
    cli()
