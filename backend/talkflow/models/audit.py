# /talkflow/models/audit.py

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

from talkflow.models.talk import new_id, utcnow


class AuditLog(BaseModel):
    """Durable, write-once record of something that happened to an entity."""
    id: str = Field(default_factory=new_id)
    action: str
    entity_class: str
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    changes: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)
