# /talkflow/models/commands.py

from typing import Any, ClassVar, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

from talkflow.models.talk import utcnow

# Commands travelling on the bus. Each one carries only identifiers; handlers
# re-read everything else from persistence when they run.


class Command(BaseModel):
    command_name: ClassVar[str] = "command"

    model_config = ConfigDict(frozen=True)

    def talk_key(self) -> Optional[str]:
        """Talk this command mutates, used to serialize work per Talk. None means no lock."""
        return None


class ProcessTalkMessageCommand(Command):
    command_name: ClassVar[str] = "process_talk_message"

    talk_message_id: str
    # Stamped by the ingest path so workers can lock the Talk before loading the message
    talk_id: Optional[str] = None

    def talk_key(self) -> Optional[str]:
        return self.talk_id


class EvaluateStepCompletionCommand(Command):
    command_name: ClassVar[str] = "evaluate_step_completion"

    talk_id: str

    def talk_key(self) -> Optional[str]:
        return self.talk_id


class GenerateAgentResponseCommand(Command):
    command_name: ClassVar[str] = "generate_agent_response"

    talk_id: str
    context_message: Optional[str] = None

    def talk_key(self) -> Optional[str]:
        return self.talk_id


class AuditEventMessage(Command):
    command_name: ClassVar[str] = "audit_event"

    action: str
    entity_class: str
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    changes: Optional[Dict[str, Any]] = None


COMMAND_TYPES = {
    command_type.command_name: command_type
    for command_type in (
        ProcessTalkMessageCommand,
        EvaluateStepCompletionCommand,
        GenerateAgentResponseCommand,
        AuditEventMessage,
    )
}
