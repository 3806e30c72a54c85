# /talkflow/services/audit_service.py

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from talkflow.config.settings import settings
from talkflow.models.audit import AuditLog
from talkflow.models.talk import utcnow
from talkflow.services.handlers.base import Database
from talkflow.services.repositories import ASCENDING

# Read and retention helpers for the audit trail. Rows are written by
# AuditEventHandler; this module only lists and expires them.

logger = logging.getLogger(__name__)


async def get_entity_history(database: Database, entity_class: str, entity_id: str, limit: int = 100) -> List[AuditLog]:
    """Audit rows for one entity, oldest first."""
    session = database.session()
    return await session.query(
        AuditLog,
        {"entity_class": entity_class, "entity_id": entity_id},
        sort=("created_at", ASCENDING),
        limit=limit,
    )


async def purge_expired(database: Database, retention_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
    """Delete audit rows older than the retention window. Returns the number removed."""
    days = retention_days if retention_days is not None else settings.audit_retention_days
    cutoff = (now or utcnow()) - timedelta(days=days)

    session = database.session()
    deleted = await session.audit_logs.purge_before(cutoff)
    logger.info(f"Purged {deleted} audit log(s) older than {cutoff.isoformat()}")
    return deleted
