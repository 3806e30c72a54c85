# /talkflow/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from talkflow.config.settings import settings
from talkflow.utils.dependencies import build_container
from talkflow.utils.logging import setup_logging
from talkflow.utils.queue import InMemoryCommandBus

# This file manages the application's lifespan: wiring the services on startup
# and releasing connections on shutdown.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info("Application starting up...")

    # Tests may install their own container before startup
    container = getattr(app.state, "container", None) or build_container(settings)
    app.state.container = container

    await container.database.create_indexes()

    # The Redis bus is consumed by talkflow.workers.command_worker; an
    # in-memory bus can only be consumed from this process.
    inline_workers = isinstance(container.bus, InMemoryCommandBus) and settings.environment != "test"
    if inline_workers:
        await container.bus.start_workers()

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    if inline_workers:
        await container.bus.stop_workers()
    await container.close()
