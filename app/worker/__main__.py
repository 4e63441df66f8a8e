"""
Entry point for running the queue worker as a module.

Usage: python -m app.worker
"""
import asyncio
import logging
import signal

from app.config import settings
from app.db import SessionLocal
from app.logging import configure_logging
from app.services.events import EventDispatcher
from app.services.queue import create_queue_provider
from app.worker import EventDeliveryHandler, QueueWorker, build_worker_connectors

logger = logging.getLogger(__name__)


async def main():
    """Entry point for the queue worker service."""
    configure_logging()

    dispatcher = EventDispatcher(connectors=build_worker_connectors())
    db = SessionLocal()
    try:
        # Runtime subscribers such as webhooks belong to the producing process
        dispatcher.load_database_subscriptions(db)
    finally:
        db.close()

    provider = create_queue_provider()
    worker = QueueWorker(provider, EventDeliveryHandler(dispatcher))

    loop = asyncio.get_running_loop()

    def handle_signal():
        logger.info("Received shutdown signal")
        asyncio.create_task(worker.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal)

    logger.info("Starting queue worker for %s backend", settings.queue_backend)
    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
