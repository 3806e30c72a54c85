# /talkflow/services/memory_store.py

import copy
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from talkflow.services.repositories import (
    COLLECTIONS,
    AuditPublisher,
    BaseSession,
    Filter,
    Sort,
)

# Dict-backed storage with the same session semantics as MongoDB: documents
# are copied on the way in and out, so an un-flushed change never leaks into
# another session.


def _matches(document: Dict[str, Any], query: Filter) -> bool:
    for field, expected in query.items():
        value = document.get(field)
        if isinstance(expected, dict):
            for operator, operand in expected.items():
                if operator == "$lt" and not (value is not None and value < operand):
                    return False
                if operator == "$gte" and not (value is not None and value >= operand):
                    return False
        elif value != expected:
            return False
    return True


class InMemorySession(BaseSession):
    def __init__(self, store: "InMemoryDatabase", audit_publisher: Optional[AuditPublisher] = None):
        super().__init__(audit_publisher)
        self._store = store

    async def _fetch(self, collection, entity_id):
        document = self._store.collections[collection].get(entity_id)
        return copy.deepcopy(document) if document is not None else None

    async def _find_many(self, collection, query, sort: Sort = None, limit: int = 0):
        documents = [d for d in self._store.collections[collection].values() if _matches(d, query)]
        if sort:
            field, direction = sort
            documents.sort(key=lambda d: d.get(field), reverse=direction < 0)
        if limit:
            documents = documents[:limit]
        return [copy.deepcopy(d) for d in documents]

    async def _insert(self, collection, document):
        if document["id"] in self._store.collections[collection]:
            raise ValueError(f"Duplicate id '{document['id']}' in {collection}")
        self._store.collections[collection][document["id"]] = copy.deepcopy(document)

    async def _replace(self, collection, document):
        self._store.collections[collection][document["id"]] = copy.deepcopy(document)

    async def _delete_many(self, collection, query):
        doomed = [key for key, d in self._store.collections[collection].items() if _matches(d, query)]
        for key in doomed:
            del self._store.collections[collection][key]
        return len(doomed)


class InMemoryDatabase:
    """Process-local storage for tests and single-process runs."""

    def __init__(self, audit_publisher: Optional[AuditPublisher] = None):
        self.audit_publisher = audit_publisher
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in COLLECTIONS.values()}

    def session(self) -> InMemorySession:
        return InMemorySession(self, self.audit_publisher)

    def seed(self, *entities: BaseModel) -> None:
        """Store entities directly, bypassing sessions and audit events."""
        for entity in entities:
            self.collections[COLLECTIONS[type(entity)]][entity.id] = entity.model_dump()

    def all(self, entity_type: type) -> List[BaseModel]:
        return [entity_type.model_validate(copy.deepcopy(d)) for d in self.collections[COLLECTIONS[entity_type]].values()]

    async def create_indexes(self):
        return None

    def close(self):
        return None
