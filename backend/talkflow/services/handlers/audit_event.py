# /talkflow/services/handlers/audit_event.py

import uuid
from datetime import datetime
from typing import Optional

import structlog

from talkflow.models.audit import AuditLog
from talkflow.models.commands import AuditEventMessage
from talkflow.models.talk import utcnow
from talkflow.services.handlers.base import CommandHandler, HandlerResult
from talkflow.utils.logging import AUDIT_LOGGER_NAME
from talkflow.utils.metrics import audit_events_counter

log = structlog.get_logger(__name__)
audit_log = structlog.get_logger(AUDIT_LOGGER_NAME)


def is_persistable_id(entity_id: Optional[str]) -> bool:
    """Only entities that already carry a generated UUID get a durable audit row."""
    if not entity_id or entity_id in ("unknown", "not-generated-yet"):
        return False
    try:
        uuid.UUID(str(entity_id))
    except (ValueError, AttributeError, TypeError):
        return False
    return True


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return utcnow()


class AuditEventHandler(CommandHandler):
    """
    Side channel for entity lifecycle events. It never raises: a failing audit
    write is logged and dropped so it cannot trigger redelivery.
    """

    command_type = AuditEventMessage

    async def handle(self, event: AuditEventMessage) -> HandlerResult:
        try:
            audit_log.info(
                "Audit event",
                action=event.action,
                entity_class=event.entity_class,
                entity_id=event.entity_id,
                user_id=event.user_id,
                timestamp=event.timestamp,
            )

            if not is_persistable_id(event.entity_id):
                audit_events_counter.labels(status="log_only").inc()
                return HandlerResult.skipped("entity id not persistable")

            entry = AuditLog(
                action=event.action,
                entity_class=event.entity_class,
                entity_id=event.entity_id,
                user_id=event.user_id,
                changes=event.changes,
                metadata={
                    "ip_address": event.ip_address,
                    "user_agent": event.user_agent,
                    "user_email": event.user_email,
                },
                created_at=_parse_timestamp(event.timestamp),
            )
            session = self.database.session()
            session.add(entry)
            await session.flush()
            audit_events_counter.labels(status="persisted").inc()
        except Exception as e:
            audit_events_counter.labels(status="error").inc()
            log.error("Failed to persist audit log", action=getattr(event, "action", None),
                      entity_id=getattr(event, "entity_id", None), error=str(e))
            return HandlerResult.skipped("audit persistence failed")

        return HandlerResult.ok()
