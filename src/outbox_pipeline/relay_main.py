"""
Outbox relay worker entry point.

Runs ``EventRelayWorker`` against the configured database, Kafka and Redis
until SIGTERM or SIGINT, then stops it gracefully.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from dishka import make_async_container
from sqlalchemy.ext.asyncio import create_async_engine

from outbox_pipeline.config import PipelineSettings
from outbox_pipeline.di import PipelineProvider
from outbox_pipeline.logging_utils import configure_service_logging, create_service_logger
from outbox_pipeline.outbox.relay import EventRelayWorker
from outbox_pipeline.protocols import RedisClientProtocol

logger = create_service_logger("outbox_pipeline.relay_main")


def _install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _request_shutdown, signum, shutdown_event)


def _request_shutdown(signum: int, shutdown_event: asyncio.Event) -> None:
    logger.info(f"Received signal {signum}, initiating shutdown...")
    shutdown_event.set()


async def check_redis_health(redis_client: RedisClientProtocol) -> bool:
    """PING Redis before the relay starts; wake-ups degrade to polling without it."""
    healthy = await redis_client.ping()
    if healthy:
        logger.info("Redis health check passed")
    else:
        logger.warning("Redis health check failed, relay wake-ups will fall back to polling")
    return healthy


async def main(settings: PipelineSettings | None = None) -> None:
    """Main entry point for the outbox relay worker."""
    settings = settings or PipelineSettings()
    configure_service_logging(settings.SERVICE_NAME, log_level=settings.LOG_LEVEL)

    shutdown_event = asyncio.Event()
    _install_signal_handlers(shutdown_event)

    logger.info(
        "Outbox relay worker starting...",
        extra={
            "service": settings.SERVICE_NAME,
            "poll_interval": settings.OUTBOX_POLL_INTERVAL_SECONDS,
            "batch_size": settings.OUTBOX_BATCH_SIZE,
            "max_attempt_count": settings.MAX_ATTEMPT_COUNT,
            "partition_count": settings.PARTITION_COUNT,
        },
    )

    engine = create_async_engine(
        settings.DATABASE_URL,
        echo=False,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=3600,
    )
    container = make_async_container(PipelineProvider(engine=engine, settings=settings))

    relay_worker: EventRelayWorker | None = None
    try:
        await check_redis_health(await container.get(RedisClientProtocol))
        relay_worker = await container.get(EventRelayWorker)
        await relay_worker.start()

        await shutdown_event.wait()
        logger.info("Shutdown signal received, stopping outbox relay worker...")
    except Exception as e:
        logger.error(
            "Outbox relay worker failed",
            extra={"error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        raise
    finally:
        if relay_worker is not None:
            await relay_worker.stop()

        # Stops the Kafka producer and the Redis client
        await container.close()
        await engine.dispose()
        logger.info("Outbox relay worker shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
        logger.info("Outbox relay worker exited normally")
    except KeyboardInterrupt:
        logger.info("Outbox relay worker interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Outbox relay worker failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
