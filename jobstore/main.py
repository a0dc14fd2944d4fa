"""Main application entry point."""

import asyncio
import logging
import signal
import sys

import structlog
from prometheus_client import start_http_server

from jobstore.config import settings
from jobstore.server.processes import BackgroundProcessPool
from jobstore.storage import SqlJobStorage

logger = structlog.get_logger()


def configure_logging(level: str = None):
    """Configure structlog on top of the standard library logger."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, (level or settings.log_level).upper()),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


async def run(storage: SqlJobStorage):
    """Run the background process pool until a shutdown signal arrives."""
    pool = BackgroundProcessPool(storage)
    loop = asyncio.get_running_loop()

    def signal_handler(signum):
        logger.info("Received shutdown signal", signal=signum)
        asyncio.ensure_future(pool.stop())

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, signal_handler, signum)

    try:
        await pool.start()
    finally:
        await pool.stop()


def main():
    """Main function."""
    configure_logging()
    logger.info("Starting job storage server", version="1.0.0")

    storage = SqlJobStorage(settings)
    storage.create_tables()

    if settings.metrics_enabled:
        start_http_server(settings.metrics_port, registry=storage.metrics.registry)
        logger.info("Metrics endpoint started", port=settings.metrics_port)

    try:
        asyncio.run(run(storage))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    finally:
        storage.dispose()


if __name__ == "__main__":
    main()
