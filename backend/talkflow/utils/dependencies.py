# /talkflow/utils/dependencies.py

import structlog
import redis.asyncio as redis
from fastapi import Depends, Request

from talkflow.config.settings import Settings, settings
from talkflow.services.ai_service import AIService
from talkflow.services.db_service import DatabaseService
from talkflow.services.handlers.audit_event import AuditEventHandler
from talkflow.services.handlers.evaluate_step_completion import EvaluateStepCompletionHandler
from talkflow.services.handlers.generate_agent_response import GenerateAgentResponseHandler
from talkflow.services.handlers.process_talk_message import ProcessTalkMessageHandler
from talkflow.services.memory_store import InMemoryDatabase
from talkflow.services.repositories import BaseSession
from talkflow.utils.queue import CommandBus, InMemoryCommandBus, RedisCommandBus
from talkflow.utils.talk_lock import RedisTalkLock

log = structlog.get_logger(__name__)

HANDLER_TYPES = (
    ProcessTalkMessageHandler,
    EvaluateStepCompletionHandler,
    GenerateAgentResponseHandler,
    AuditEventHandler,
)


class ServiceContainer:
    """Everything a request or a worker needs, wired once per process."""

    def __init__(self, database, bus: CommandBus, ai_service: AIService, config: Settings = settings, redis_client=None):
        self.database = database
        self.bus = bus
        self.ai_service = ai_service
        self.config = config
        self.redis = redis_client

    def register_handlers(self) -> None:
        for handler_type in HANDLER_TYPES:
            handler = handler_type(self.database, self.ai_service, self.bus, self.config)
            self.bus.register(handler_type.command_type, handler)

    async def close(self) -> None:
        self.database.close()
        if self.redis is not None:
            await self.redis.aclose()


def build_container(config: Settings = settings, ai_service: AIService = None) -> ServiceContainer:
    """
    Wire storage, bus and AI service for the configured backend.

    The database publishes its audit events onto the bus, and the handlers on
    the bus read the database, so the bus is created first and the handlers are
    registered last.
    """
    ai_service = ai_service or AIService(config)

    if config.storage_backend == "memory":
        bus = InMemoryCommandBus()
        database = InMemoryDatabase(audit_publisher=bus.dispatch)
        container = ServiceContainer(database, bus, ai_service, config)
    else:
        redis_client = redis.from_url(config.redis_url)
        talk_lock = RedisTalkLock(
            redis_client,
            timeout=config.talk_lock_timeout_seconds,
            blocking_timeout=config.talk_lock_wait_seconds,
        )
        bus = RedisCommandBus(redis_client, talk_lock, config)
        database = DatabaseService(config.mongo_uri, audit_publisher=bus.dispatch)
        container = ServiceContainer(database, bus, ai_service, config, redis_client=redis_client)

    container.register_handlers()
    log.info("Service container built", storage_backend=config.storage_backend)
    return container


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_session(container: ServiceContainer = Depends(get_container)) -> BaseSession:
    """One session per request, like one session per handler invocation."""
    return container.database.session()
