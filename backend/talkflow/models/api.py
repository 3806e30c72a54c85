# /talkflow/models/api.py

from pydantic import BaseModel, Field
from typing import Dict, Optional
from datetime import datetime

from talkflow.models.talk import MessageSender, utcnow

# This file contains Pydantic models that define the structure of data for
# API requests and responses, ensuring type safety and validation.


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=utcnow)
    version: str


class InboundMessageRequest(BaseModel):
    body: str = Field(..., min_length=1, max_length=4096)
    sender: MessageSender = MessageSender.CONTACT
    message_type: str = "text"


class PauseTalkRequest(BaseModel):
    reason: str = Field(default="Paused by operator", max_length=500)
