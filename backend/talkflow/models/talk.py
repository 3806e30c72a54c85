# /talkflow/models/talk.py

import uuid
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

# Conversation-side entities. The flow graph itself is immutable (see models/flow.py);
# everything that changes while a Talk progresses lives here.


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TalkStatus(IntEnum):
    ACTIVE = 0
    PAUSED = 1
    COMPLETED = 2


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageSender(str, Enum):
    AGENT = "agent"
    USER = "user"
    CONTACT = "contact"


class StepProgress(BaseModel):
    """Answers and routing bookkeeping recorded for one Step of a Talk."""
    order: int = 0
    answers: Dict[str, str] = Field(default_factory=dict, description="Question slug -> recorded answer")
    attempts: int = Field(default=0, description="Inbound messages processed while this step was current")
    attempted_message_ids: List[str] = Field(default_factory=list, description="Messages already counted in attempts")
    completed: bool = False
    completed_at: Optional[datetime] = None
    selected_output: Optional[str] = None


class Talk(BaseModel):
    """One live conversation bound to an organization and, optionally, a flow."""
    id: str = Field(default_factory=new_id)
    organization_id: str
    tree_flow_id: Optional[str] = Field(default=None, description="Flow driving the automation; None disables it")
    agent_ids: List[str] = Field(default_factory=list)
    status: TalkStatus = TalkStatus.ACTIVE
    paused_reason: Optional[str] = None
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    current_step_slug: Optional[str] = None
    flow_progress: Dict[str, StepProgress] = Field(default_factory=dict)
    flow_terminated_at: Optional[datetime] = Field(
        default=None, description="Set when a transition left the flow through an unconnected output"
    )
    message_count: int = 0
    date_last_message: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(validate_assignment=True)

    @property
    def is_paused(self) -> bool:
        return self.status == TalkStatus.PAUSED

    @property
    def is_completed(self) -> bool:
        return self.status == TalkStatus.COMPLETED

    @property
    def has_flow(self) -> bool:
        return self.tree_flow_id is not None

    def progress_for(self, step_slug: str) -> StepProgress:
        """Progress record for a step, created lazily for steps added after initialization."""
        progress = self.flow_progress.get(step_slug)
        if progress is None:
            progress = StepProgress(order=len(self.flow_progress) + 1)
            self.flow_progress[step_slug] = progress
        return progress


class TalkMessage(BaseModel):
    """A single chat message. Immutable once persisted."""
    id: str = Field(default_factory=new_id)
    talk_id: str
    organization_id: Optional[str] = None
    direction: MessageDirection
    body: str
    sender: MessageSender
    agent_id: Optional[str] = None
    message_type: str = "text"
    sent_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class Agent(BaseModel):
    """Persona that speaks for the organization in a Talk."""
    id: str = Field(default_factory=new_id)
    organization_id: str
    name: str
    prompt: Optional[str] = None
    active: bool = True
    available: bool = True
