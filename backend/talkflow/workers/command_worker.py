#!/usr/bin/env python3
"""
Command Worker

Consumes the command stream and runs the conversation engine's handlers:
message processing, step evaluation, reply generation and audit events.
Run as many copies as needed; commands for the same Talk are serialized
through the Redis talk lock.
"""

import asyncio
import logging
import signal

from talkflow.config.settings import settings
from talkflow.utils.dependencies import build_container
from talkflow.utils.logging import setup_logging

logger = logging.getLogger("CommandWorker")


async def main():
    setup_logging()

    if settings.storage_backend == "memory":
        logger.error("The command worker needs the Redis bus; STORAGE_BACKEND=memory runs workers inside the API.")
        return

    container = build_container(settings)
    await container.database.create_indexes()
    await container.bus.start_workers()
    logger.info("Command worker started. Press Ctrl+C to exit.")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
    finally:
        logger.info("Command worker shutting down...")
        await container.bus.stop_workers()
        await container.close()


if __name__ == "__main__":
    asyncio.run(main())
