# /talkflow/services/handlers/base.py

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional, Protocol, Type

from talkflow.config.settings import Settings, settings as default_settings
from talkflow.models.commands import Command
from talkflow.services.ai_service import AIService
from talkflow.services.repositories import BaseSession

# Shared plumbing for command handlers. A handler never raises to ask for a
# retry: it returns HandlerResult.retry(error) and the bus decides.


class HandlerStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    RETRY = "retry"


@dataclass(frozen=True)
class HandlerResult:
    status: HandlerStatus
    reason: Optional[str] = None
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls) -> "HandlerResult":
        return cls(HandlerStatus.OK)

    @classmethod
    def skipped(cls, reason: str) -> "HandlerResult":
        return cls(HandlerStatus.SKIPPED, reason=reason)

    @classmethod
    def retry(cls, error: BaseException) -> "HandlerResult":
        return cls(HandlerStatus.RETRY, reason=str(error), error=error)

    @property
    def should_retry(self) -> bool:
        return self.status == HandlerStatus.RETRY

    def raise_for_retry(self) -> None:
        """Re-raise the original exception of a retry result so transport redelivery applies."""
        if self.should_retry and self.error is not None:
            raise self.error


class Database(Protocol):
    def session(self) -> BaseSession: ...


class Dispatcher(Protocol):
    async def dispatch(self, command: Command) -> None: ...


class CommandHandler:
    """Base for handlers. Each `handle` call opens its own session, so state is always re-read."""

    command_type: ClassVar[Type[Command]] = Command

    def __init__(
        self,
        database: Database,
        ai_service: Optional[AIService] = None,
        dispatcher: Optional[Dispatcher] = None,
        config: Settings = default_settings,
    ):
        self.database = database
        self.ai_service = ai_service
        self.dispatcher = dispatcher
        self.config = config

    async def handle(self, command: Command) -> HandlerResult:
        raise NotImplementedError
