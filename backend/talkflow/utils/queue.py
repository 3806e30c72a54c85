# /talkflow/utils/queue.py

import json
import time
import uuid
import asyncio
import logging
import redis as redis_package
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import ValidationError

from talkflow.config.settings import Settings, settings as default_settings
from talkflow.models.commands import COMMAND_TYPES, Command
from talkflow.services.handlers.base import CommandHandler, HandlerResult
from talkflow.utils.logging import command_context
from talkflow.utils.metrics import command_duration_histogram, commands_counter
from talkflow.utils.talk_lock import LocalTalkLock

# Command bus for the conversation engine. Producers call dispatch(); workers
# pull commands and run the registered handler under the Talk's lock. Redis
# Streams is the production transport; the in-memory bus serves tests and
# single-process runs.

logger = logging.getLogger(__name__)


def encode_command(command: Command) -> Dict[str, Any]:
    return {"command": command.command_name, "payload": command.model_dump(mode="json")}


def decode_command(data: Dict[str, Any]) -> Command:
    command_type = COMMAND_TYPES.get(data.get("command"))
    if command_type is None:
        raise ValueError(f"Unknown command '{data.get('command')}'")
    return command_type.model_validate(data.get("payload") or {})


class CommandBus:
    """Registry binding each command type to exactly one handler."""

    def __init__(self, talk_lock=None):
        self._handlers: Dict[Type[Command], CommandHandler] = {}
        self.talk_lock = talk_lock or LocalTalkLock()

    def register(self, command_type: Type[Command], handler: CommandHandler) -> None:
        if command_type in self._handlers:
            raise ValueError(f"A handler is already registered for {command_type.__name__}")
        self._handlers[command_type] = handler

    def handler_for(self, command: Command) -> CommandHandler:
        handler = self._handlers.get(type(command))
        if handler is None:
            raise LookupError(f"No handler registered for {type(command).__name__}")
        return handler

    async def dispatch(self, command: Command) -> None:
        raise NotImplementedError

    async def execute(self, command: Command) -> HandlerResult:
        """
        Run the handler for a command.

        Commands that carry a talk key run under that Talk's lock. A retry
        result is turned back into the handler's original exception here.
        """
        handler = self.handler_for(command)
        talk_id = command.talk_key()
        start_time = time.time()
        try:
            with command_context(command.command_name, talk_id):
                if talk_id:
                    async with self.talk_lock.hold(talk_id):
                        result = await handler.handle(command)
                else:
                    result = await handler.handle(command)
        except Exception:
            commands_counter.labels(command=command.command_name, status="error").inc()
            raise
        finally:
            command_duration_histogram.labels(command=command.command_name).observe(time.time() - start_time)

        commands_counter.labels(command=command.command_name, status=result.status.value).inc()
        result.raise_for_retry()
        return result


class InMemoryCommandBus(CommandBus):
    def __init__(self, talk_lock=None, max_workers: int = 1):
        super().__init__(talk_lock)
        self.queue: asyncio.Queue = asyncio.Queue()
        self.max_workers = max_workers
        self.workers: List[asyncio.Task] = []
        self.failed: List[Tuple[Command, BaseException]] = []

    async def dispatch(self, command: Command) -> None:
        await self.queue.put(command)

    async def _run(self, command: Command) -> Optional[HandlerResult]:
        try:
            return await self.execute(command)
        except Exception as e:
            logger.error(f"Command {command.command_name} failed: {e}", exc_info=True)
            self.failed.append((command, e))
            return None

    async def drain(self, max_commands: int = 1000) -> List[Optional[HandlerResult]]:
        """Run queued commands, including those they dispatch, until the queue is empty."""
        results = []
        while not self.queue.empty() and len(results) < max_commands:
            command = self.queue.get_nowait()
            try:
                results.append(await self._run(command))
            finally:
                self.queue.task_done()
        return results

    async def _worker(self):
        while True:
            command = await self.queue.get()
            try:
                await self._run(command)
            finally:
                self.queue.task_done()

    async def start_workers(self):
        for _ in range(self.max_workers):
            self.workers.append(asyncio.create_task(self._worker()))
        logger.info(f"Started {self.max_workers} in-memory command workers.")

    async def stop_workers(self):
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []


class RedisCommandBus(CommandBus):
    def __init__(self, redis_client, talk_lock=None, config: Settings = default_settings):
        super().__init__(talk_lock)
        self.redis = redis_client
        self.stream_name = config.command_stream_name
        self.dead_letter_stream = config.dead_letter_stream_name
        self.consumer_group = config.command_consumer_group
        self.max_workers = config.command_workers
        self.max_deliveries = config.command_max_deliveries
        self.claim_idle_ms = config.command_claim_idle_ms
        self.workers = []
        self.running = False

    async def initialize(self):
        try:
            await self.redis.xgroup_create(self.stream_name, self.consumer_group, id="0", mkstream=True)
        except redis_package.exceptions.ResponseError as e:
            if "BUSYGROUP" not in str(e): raise

    async def start_workers(self):
        await self.initialize()
        self.running = True
        for i in range(self.max_workers):
            self.workers.append(asyncio.create_task(self._worker(f"worker-{i}-{uuid.uuid4().hex[:4]}")))
        logger.info(f"Started {self.max_workers} Redis command workers on '{self.stream_name}'.")

    async def stop_workers(self):
        self.running = False
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []

    async def dispatch(self, command: Command) -> None:
        await self.redis.xadd(self.stream_name, {"data": json.dumps(encode_command(command))})

    async def _worker(self, consumer_name: str):
        while self.running:
            try:
                await self._claim_stale(consumer_name)

                messages = await self.redis.xreadgroup(self.consumer_group, consumer_name, {self.stream_name: ">"}, count=1, block=1000)
                if not messages: continue

                stream_name, stream_messages = messages[0]
                for message_id, fields in stream_messages:
                    await self._handle_entry(message_id, fields)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self.running:
                    logger.error(f"Redis worker '{consumer_name}' error: {e}")
                    await asyncio.sleep(5)

    async def _handle_entry(self, message_id, fields: Dict) -> None:
        try:
            command = decode_command(json.loads(fields[b"data"].decode()))
        except (KeyError, ValueError, ValidationError) as e:
            logger.error(f"Undecodable command {message_id}: {e}")
            await self._dead_letter(message_id, fields, f"undecodable: {e}")
            return

        try:
            await self.execute(command)
        except Exception as e:
            # Left pending; _claim_stale redelivers it once it has been idle long enough
            logger.error(f"Error processing command {message_id}: {e}", exc_info=True)
            return

        await self.redis.xack(self.stream_name, self.consumer_group, message_id)

    async def _claim_stale(self, consumer_name: str) -> None:
        """Take over entries another delivery left unacknowledged, dead-lettering those retried too often."""
        result = await self.redis.xautoclaim(
            self.stream_name, self.consumer_group, consumer_name,
            min_idle_time=self.claim_idle_ms, start_id="0-0", count=10,
        )
        claimed = result[1] if result else []
        for message_id, fields in claimed:
            if not fields: continue
            deliveries = await self._delivery_count(message_id)
            if deliveries > self.max_deliveries:
                logger.error(f"Command {message_id} failed {deliveries - 1} times, moving to dead letter stream.")
                await self._dead_letter(message_id, fields, "max deliveries exceeded")
                continue
            await self._handle_entry(message_id, fields)

    async def _delivery_count(self, message_id) -> int:
        pending = await self.redis.xpending_range(self.stream_name, self.consumer_group, min=message_id, max=message_id, count=1)
        return pending[0]["times_delivered"] if pending else 0

    async def _dead_letter(self, message_id, fields: Dict, reason: str) -> None:
        await self.redis.xadd(self.dead_letter_stream, {
            "data": fields.get(b"data", b""),
            "reason": reason,
            "source_id": message_id,
        })
        await self.redis.xack(self.stream_name, self.consumer_group, message_id)
