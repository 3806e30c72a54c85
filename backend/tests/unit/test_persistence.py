# backend/tests/unit/test_persistence.py
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from talkflow.models.audit import AuditLog
from talkflow.models.talk import MessageDirection, MessageSender, Talk, TalkMessage, utcnow
from talkflow.services.audit_service import get_entity_history, purge_expired
from talkflow.services.memory_store import InMemoryDatabase
from talkflow.services.repositories import sanitize_changes


@pytest.mark.asyncio
async def test_session_identity_map_returns_same_instance(database, make_talk):
    seeded = make_talk()
    session = database.session()
    assert await session.talks.find(seeded.id) is await session.talks.find(seeded.id)
    assert await session.talks.find(None) is None


@pytest.mark.asyncio
async def test_unflushed_changes_stay_in_session(database, make_talk):
    seeded = make_talk()
    first = database.session()
    talk = await first.talks.find(seeded.id)
    talk.message_count = 7

    other = await database.session().talks.find(seeded.id)
    assert other.message_count == 0

    await first.flush()
    assert (await database.session().talks.find(seeded.id)).message_count == 7


@pytest.mark.asyncio
async def test_flush_publishes_sanitized_audit_events():
    publisher = AsyncMock()
    database = InMemoryDatabase(audit_publisher=publisher)
    session = database.session()

    talk = Talk(organization_id="org-1")
    session.add(talk)
    session.add(TalkMessage(talk_id=talk.id, direction=MessageDirection.INBOUND, body="secret", sender=MessageSender.CONTACT))
    await session.flush()

    created = [call.args[0] for call in publisher.await_args_list]
    assert [(e.action, e.entity_class) for e in created] == [("entity_created", "Talk"), ("entity_created", "TalkMessage")]

    publisher.reset_mock()
    talk.paused_reason = "private"
    talk.message_count = 1
    await session.flush()

    (updated,) = [call.args[0] for call in publisher.await_args_list]
    assert updated.action == "entity_updated"
    assert updated.entity_id == talk.id
    assert updated.changes["message_count"] == [0, 1]
    assert updated.changes["paused_reason"] == ["[redacted]", "[redacted]"]


@pytest.mark.asyncio
async def test_flush_without_changes_writes_nothing():
    publisher = AsyncMock()
    database = InMemoryDatabase(audit_publisher=publisher)
    database.seed(Talk(id="t-1", organization_id="org-1"))

    session = database.session()
    await session.talks.find("t-1")
    await session.flush()

    publisher.assert_not_awaited()


@pytest.mark.asyncio
async def test_publisher_failure_does_not_fail_flush():
    database = InMemoryDatabase(audit_publisher=AsyncMock(side_effect=ConnectionError("redis down")))
    session = database.session()
    session.add(Talk(id="t-1", organization_id="org-1"))

    await session.flush()

    assert len(database.all(Talk)) == 1


@pytest.mark.asyncio
async def test_flows_are_read_only(database, two_step_flow):
    with pytest.raises(TypeError):
        database.session().add(two_step_flow)


@pytest.mark.asyncio
async def test_message_queries(database, make_talk, make_message):
    talk = make_talk()
    now = utcnow()
    first = make_message(talk, "one", sent_at=now - timedelta(minutes=3))
    make_message(talk, "reply", direction=MessageDirection.OUTBOUND, sent_at=now - timedelta(minutes=2))
    last_inbound = make_message(talk, "two", sent_at=now - timedelta(minutes=1))

    session = database.session()
    assert (await session.messages.latest_inbound(talk.id)).id == last_inbound.id
    assert [m.body for m in await session.messages.recent(talk.id, 2)] == ["reply", "two"]
    assert (await session.messages.recent(talk.id, 10))[0].id == first.id
    assert await session.messages.latest_inbound("other") is None


def test_sanitize_changes():
    changes = {"status": [0, 1], "flow_progress": [{}, {"a": {}}], "body": ["x", "y"]}
    assert sanitize_changes(changes) == {
        "status": [0, 1],
        "flow_progress": ["[redacted]", "[redacted]"],
        "body": ["[redacted]", "[redacted]"],
    }


@pytest.mark.asyncio
async def test_purge_expired_and_history(database):
    now = utcnow()
    old = AuditLog(action="entity_created", entity_class="Talk", entity_id="t-1", created_at=now - timedelta(days=400))
    recent = AuditLog(action="entity_updated", entity_class="Talk", entity_id="t-1", created_at=now - timedelta(days=2))
    database.seed(old, recent)

    assert [row.id for row in await get_entity_history(database, "Talk", "t-1")] == [old.id, recent.id]

    deleted = await purge_expired(database, retention_days=365, now=now)

    assert deleted == 1
    assert [row.id for row in database.all(AuditLog)] == [recent.id]
