# backend/tests/integration/test_pipeline.py
import pytest

from talkflow.models.audit import AuditLog
from talkflow.models.commands import ProcessTalkMessageCommand
from talkflow.models.talk import MessageDirection, MessageSender, Talk, TalkMessage, TalkStatus
from talkflow.services.ai_service import EscalationDecision
from talkflow.services.talk_flow_service import TalkFlowService

# End-to-end runs of the command pipeline on the in-memory bus: an inbound
# message is processed, the step evaluated and the agent reply generated,
# with every command (and the audit events they cause) drained in order.


async def start_talk(database, make_talk, flow, agent):
    database.seed(agent)
    talk = make_talk(flow)
    session = database.session()
    await TalkFlowService(session).initialize_talk_flow(await session.talks.find(talk.id))
    return talk


async def receive(container, database, talk, body):
    session = database.session()
    message = TalkMessage(
        talk_id=talk.id, organization_id=talk.organization_id,
        direction=MessageDirection.INBOUND, body=body, sender=MessageSender.CONTACT,
    )
    session.add(message)
    await session.flush()
    await container.bus.dispatch(ProcessTalkMessageCommand(talk_message_id=message.id, talk_id=talk.id))
    await container.bus.drain()


def reload(database, talk) -> Talk:
    return next(t for t in database.all(Talk) if t.id == talk.id)


def outbound(database, talk):
    return [m for m in database.all(TalkMessage) if m.talk_id == talk.id and m.direction == MessageDirection.OUTBOUND]


@pytest.mark.asyncio
async def test_answer_moves_talk_to_next_step(container, database, ai_service, make_talk, two_step_flow, agent):
    talk = await start_talk(database, make_talk, two_step_flow, agent)
    ai_service.extract_answers.return_value = {"name": "Ana"}

    await receive(container, database, talk, "Hi, I'm Ana")

    stored = reload(database, talk)
    assert container.bus.failed == []
    assert stored.current_step_slug == "step2"
    assert stored.flow_progress["step1"].completed is True
    assert stored.flow_progress["step1"].selected_output == "next"
    assert stored.flow_progress["step1"].answers == {"name": "Ana"}
    assert stored.status == TalkStatus.ACTIVE
    assert stored.agent_ids == [agent.id]

    (reply,) = outbound(database, talk)
    assert reply.body == "Thanks! Could you tell me a bit more?"
    assert reply.sender == MessageSender.AGENT
    assert reply.agent_id == agent.id
    generated_for = ai_service.generate_agent_response.await_args.args[2]
    assert generated_for.slug == "step2"


@pytest.mark.asyncio
async def test_unanswered_step_stays_current(container, database, ai_service, make_talk, two_step_flow, agent):
    talk = await start_talk(database, make_talk, two_step_flow, agent)

    await receive(container, database, talk, "hello?")

    stored = reload(database, talk)
    assert stored.current_step_slug == "step1"
    assert stored.flow_progress["step1"].attempts == 1
    assert stored.flow_progress["step1"].completed is False
    assert len(outbound(database, talk)) == 1


@pytest.mark.asyncio
async def test_last_output_without_connection_completes_talk(container, database, ai_service, make_talk, single_step_flow, agent):
    talk = await start_talk(database, make_talk, single_step_flow, agent)
    ai_service.extract_answers.return_value = {"name": "Ana"}

    await receive(container, database, talk, "Ana")

    stored = reload(database, talk)
    assert stored.current_step_slug is None
    assert stored.flow_terminated_at is not None
    assert stored.status == TalkStatus.COMPLETED
    assert stored.closed_at is not None
    assert outbound(database, talk) == []
    ai_service.generate_agent_response.assert_not_awaited()


@pytest.mark.asyncio
async def test_extraction_failure_escalates_to_human(container, database, ai_service, make_talk, two_step_flow, agent):
    talk = await start_talk(database, make_talk, two_step_flow, agent)
    ai_service.extract_answers.side_effect = RuntimeError("model unavailable")
    ai_service.should_escalate.return_value = EscalationDecision(
        should_escalate=True, reason="contains profanity", urgency="high"
    )

    await receive(container, database, talk, "this is useless")

    stored = reload(database, talk)
    assert stored.status == TalkStatus.PAUSED
    assert stored.paused_reason == "Escalated to human: contains profanity"
    assert stored.current_step_slug == "step1"
    assert len(container.bus.failed) == 1
    assert isinstance(container.bus.failed[0][1], RuntimeError)
    assert outbound(database, talk) == []


@pytest.mark.asyncio
async def test_paused_talk_receives_no_automation(container, database, ai_service, make_talk, two_step_flow, agent):
    talk = await start_talk(database, make_talk, two_step_flow, agent)
    session = database.session()
    await TalkFlowService(session).pause_talk(await session.talks.find(talk.id), "Operator took over")

    await receive(container, database, talk, "Ana")

    ai_service.extract_answers.assert_not_awaited()
    assert reload(database, talk).current_step_slug == "step1"
    assert outbound(database, talk) == []


@pytest.mark.asyncio
async def test_changes_are_audited(container, database, ai_service, make_talk, two_step_flow, agent):
    talk = await start_talk(database, make_talk, two_step_flow, agent)
    ai_service.extract_answers.return_value = {"name": "Ana"}

    await receive(container, database, talk, "Hi, I'm Ana")

    talk_rows = [row for row in database.all(AuditLog) if row.entity_class == "Talk" and row.entity_id == talk.id]
    assert talk_rows
    assert all(row.action == "entity_updated" for row in talk_rows)
    assert all(row.changes.get("flow_progress", ["[redacted]"])[0] == "[redacted]" for row in talk_rows)
    assert any(row.entity_class == "TalkMessage" and row.action == "entity_created" for row in database.all(AuditLog))
