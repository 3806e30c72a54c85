# /talkflow/services/repositories.py

"""
Persistence contracts for the conversation engine.

A Session is opened per handler invocation. It keeps an identity map of the
entities it has loaded, and flush() writes new and changed entities back in
one go. Nothing is shared between sessions, so every handler run works on
freshly read state.

Concrete storage lives in memory_store.py (dicts) and db_service.py (MongoDB).
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar

import structlog
from pydantic import BaseModel

from talkflow.models.audit import AuditLog
from talkflow.models.commands import AuditEventMessage
from talkflow.models.flow import FlowGraph
from talkflow.models.talk import Agent, MessageDirection, Talk, TalkMessage

log = structlog.get_logger(__name__)

EntityT = TypeVar("EntityT", bound=BaseModel)
AuditPublisher = Callable[[AuditEventMessage], Awaitable[None]]

COLLECTIONS: Dict[type, str] = {
    Talk: "talks",
    TalkMessage: "talk_messages",
    Agent: "agents",
    FlowGraph: "tree_flows",
    AuditLog: "audit_logs",
}

# Written once, never replaced
APPEND_ONLY = (TalkMessage, AuditLog)
# Never written by the engine
READ_ONLY = (FlowGraph,)
# Not audited, otherwise every audit row would produce another audit event
NOT_AUDITED = (AuditLog,)

SENSITIVE_FIELDS = {"body", "prompt", "answers", "paused_reason"}

Filter = Dict[str, Any]
Sort = Optional[Tuple[str, int]]

ASCENDING = 1
DESCENDING = -1


def sanitize_changes(changes: Dict[str, List[Any]]) -> Dict[str, List[Any]]:
    """Drop conversation content from a change set before it reaches the audit trail."""
    sanitized = {}
    for field, (old, new) in changes.items():
        if field in SENSITIVE_FIELDS or field == "flow_progress":
            sanitized[field] = ["[redacted]", "[redacted]"]
        else:
            sanitized[field] = [old, new]
    return sanitized


class BaseSession:
    """Unit of work with an identity map. Subclasses provide the storage primitives."""

    def __init__(self, audit_publisher: Optional[AuditPublisher] = None):
        self._audit_publisher = audit_publisher
        self._identity: Dict[Tuple[type, str], BaseModel] = {}
        self._snapshots: Dict[Tuple[type, str], Dict[str, Any]] = {}
        self._new: List[Tuple[type, str]] = []

        self.talks = TalkRepository(self)
        self.messages = TalkMessageRepository(self)
        self.agents = AgentRepository(self)
        self.flows = FlowRepository(self)
        self.audit_logs = AuditLogRepository(self)

    # ==================== Storage primitives ====================

    async def _fetch(self, collection: str, entity_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def _find_many(self, collection: str, query: Filter, sort: Sort = None, limit: int = 0) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def _insert(self, collection: str, document: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _replace(self, collection: str, document: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _delete_many(self, collection: str, query: Filter) -> int:
        raise NotImplementedError

    # ==================== Identity map ====================

    def _track(self, entity: EntityT) -> EntityT:
        key = (type(entity), entity.id)
        existing = self._identity.get(key)
        if existing is not None:
            return existing
        self._identity[key] = entity
        self._snapshots[key] = entity.model_dump(mode="json")
        return entity

    async def get(self, entity_type: Type[EntityT], entity_id: Optional[str]) -> Optional[EntityT]:
        if not entity_id:
            return None
        key = (entity_type, entity_id)
        if key in self._identity:
            return self._identity[key]
        document = await self._fetch(COLLECTIONS[entity_type], entity_id)
        if document is None:
            return None
        return self._track(entity_type.model_validate(document))

    async def query(self, entity_type: Type[EntityT], query: Filter, sort: Sort = None, limit: int = 0) -> List[EntityT]:
        documents = await self._find_many(COLLECTIONS[entity_type], query, sort, limit)
        return [self._track(entity_type.model_validate(document)) for document in documents]

    def add(self, entity: BaseModel) -> None:
        """Schedule a new entity for insertion on the next flush."""
        if isinstance(entity, READ_ONLY):
            raise TypeError(f"{type(entity).__name__} is read-only for the engine")
        key = (type(entity), entity.id)
        if key in self._identity:
            return
        self._identity[key] = entity
        self._new.append(key)

    async def flush(self) -> None:
        """Write pending inserts and changed entities, then publish their audit events."""
        events: List[AuditEventMessage] = []

        for key in self._new:
            entity = self._identity[key]
            await self._insert(COLLECTIONS[key[0]], entity.model_dump())
            self._snapshots[key] = entity.model_dump(mode="json")
            if not isinstance(entity, NOT_AUDITED):
                events.append(self._audit_event("entity_created", entity))
        new_keys = set(self._new)
        self._new.clear()

        for key, entity in self._identity.items():
            if key in new_keys or issubclass(key[0], READ_ONLY + APPEND_ONLY):
                continue
            current = entity.model_dump(mode="json")
            before = self._snapshots.get(key, {})
            if current == before:
                continue
            await self._replace(COLLECTIONS[key[0]], entity.model_dump())
            self._snapshots[key] = current
            if not isinstance(entity, NOT_AUDITED):
                changes = {
                    field: [before.get(field), value]
                    for field, value in current.items()
                    if before.get(field) != value
                }
                events.append(self._audit_event("entity_updated", entity, sanitize_changes(changes)))

        await self._publish(events)

    def _audit_event(self, action: str, entity: BaseModel, changes: Optional[Dict[str, Any]] = None) -> AuditEventMessage:
        return AuditEventMessage(
            action=action,
            entity_class=type(entity).__name__,
            entity_id=entity.id,
            changes=changes or None,
        )

    async def _publish(self, events: List[AuditEventMessage]) -> None:
        if not self._audit_publisher:
            return
        for event in events:
            try:
                await self._audit_publisher(event)
            except Exception as e:
                # The data is already committed; a lost audit event must not fail the caller
                log.error("Failed to publish audit event", error=str(e), action=event.action,
                          entity_class=event.entity_class, entity_id=event.entity_id)


class _Repository:
    entity_type: type = BaseModel

    def __init__(self, session: BaseSession):
        self._session = session

    async def find(self, entity_id: Optional[str]):
        return await self._session.get(self.entity_type, entity_id)


class TalkRepository(_Repository):
    entity_type = Talk


class TalkMessageRepository(_Repository):
    entity_type = TalkMessage

    async def latest_inbound(self, talk_id: str) -> Optional[TalkMessage]:
        messages = await self._session.query(
            TalkMessage,
            {"talk_id": talk_id, "direction": MessageDirection.INBOUND.value},
            sort=("sent_at", DESCENDING),
            limit=1,
        )
        return messages[0] if messages else None

    async def recent(self, talk_id: str, limit: int) -> List[TalkMessage]:
        """Last `limit` messages of a Talk in either direction, oldest first."""
        messages = await self._session.query(
            TalkMessage, {"talk_id": talk_id}, sort=("sent_at", DESCENDING), limit=limit
        )
        return list(reversed(messages))


class AgentRepository(_Repository):
    entity_type = Agent

    async def first_available(self, organization_id: str) -> Optional[Agent]:
        agents = await self._session.query(
            Agent,
            {"organization_id": organization_id, "active": True, "available": True},
            limit=1,
        )
        return agents[0] if agents else None


class FlowRepository(_Repository):
    entity_type = FlowGraph


class AuditLogRepository(_Repository):
    entity_type = AuditLog

    async def purge_before(self, cutoff: datetime) -> int:
        return await self._session._delete_many(COLLECTIONS[AuditLog], {"created_at": {"$lt": cutoff}})
