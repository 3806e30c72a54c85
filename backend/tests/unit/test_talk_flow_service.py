# backend/tests/unit/test_talk_flow_service.py
import pytest

from talkflow.models.talk import Talk, TalkStatus
from talkflow.services.talk_flow_service import TalkFlowService
from talkflow.utils.errors import FlowDefinitionError, FlowNotAttachedError, StepNotFoundError, TalkStateError
from talkflow.workflows.definitions import load_flow


async def _service_and_talk(database, talk_id):
    session = database.session()
    talk = await session.talks.find(talk_id)
    return TalkFlowService(session), talk


@pytest.mark.asyncio
async def test_initialize_places_talk_on_first_step(database, make_talk, two_step_flow):
    seeded = make_talk(two_step_flow)
    service, talk = await _service_and_talk(database, seeded.id)

    first = await service.initialize_talk_flow(talk)

    assert first.slug == "step1"
    stored = database.all(Talk)[0]
    assert stored.current_step_slug == "step1"
    assert list(stored.flow_progress) == ["step1", "step2"]


@pytest.mark.asyncio
async def test_initialize_without_flow_raises(database, make_talk):
    seeded = make_talk()
    service, talk = await _service_and_talk(database, seeded.id)
    with pytest.raises(FlowNotAttachedError):
        await service.initialize_talk_flow(talk)


@pytest.mark.asyncio
async def test_initialize_degenerate_flow_raises(database, make_talk):
    flow = load_flow({"f": {"steps": {"a": {}, "b": {}}}}, flow_id="flow-degenerate")
    seeded = make_talk(flow)
    service, talk = await _service_and_talk(database, seeded.id)
    with pytest.raises(FlowDefinitionError):
        await service.initialize_talk_flow(talk)


@pytest.mark.asyncio
async def test_current_step_resolution(database, make_talk, two_step_flow):
    new_talk = make_talk(two_step_flow)
    stale_talk = make_talk(two_step_flow, current_step_slug="deleted-step")
    active_talk = make_talk(two_step_flow, current_step_slug="step2")

    session = database.session()
    service = TalkFlowService(session)

    assert await service.get_current_step(await session.talks.find(new_talk.id)) is None
    assert await service.get_current_step(await session.talks.find(stale_talk.id)) is None
    assert await service.get_current_step_slug(await session.talks.find(active_talk.id)) == "step2"


@pytest.mark.asyncio
async def test_complete_step_moves_talk(database, make_talk, two_step_flow):
    seeded = make_talk(two_step_flow, current_step_slug="step1")
    service, talk = await _service_and_talk(database, seeded.id)

    await service.complete_step(talk, "step1", "next", "step2")

    assert await service.get_current_step_slug(talk) == "step2"
    assert talk.flow_progress["step1"].completed
    assert talk.flow_progress["step1"].selected_output == "next"
    assert not await service.is_flow_complete(talk)
    assert database.all(Talk)[0].current_step_slug == "step2"


@pytest.mark.asyncio
async def test_complete_step_without_next_terminates_flow(database, make_talk, single_step_flow):
    seeded = make_talk(single_step_flow, current_step_slug="step1")
    service, talk = await _service_and_talk(database, seeded.id)

    await service.complete_step(talk, "step1", "o1", None)

    assert talk.current_step_slug is None
    assert talk.flow_terminated_at is not None
    assert await service.is_flow_complete(talk)


@pytest.mark.asyncio
async def test_new_talk_is_not_flow_complete(database, make_talk, two_step_flow):
    seeded = make_talk(two_step_flow)
    service, talk = await _service_and_talk(database, seeded.id)
    assert not await service.is_flow_complete(talk)


@pytest.mark.asyncio
async def test_record_action_answer_is_an_upsert(database, make_talk, two_step_flow):
    seeded = make_talk(two_step_flow, current_step_slug="step1")
    service, talk = await _service_and_talk(database, seeded.id)

    await service.record_action_answer(talk, "step1", "name", "Ana")
    await service.record_action_answer(talk, "step1", "name", "Ana")
    assert talk.flow_progress["step1"].answers == {"name": "Ana"}

    await service.record_action_answer(talk, "step1", "name", "Ana Maria")
    assert database.all(Talk)[0].flow_progress["step1"].answers == {"name": "Ana Maria"}


@pytest.mark.asyncio
async def test_record_action_answer_ignores_blank_and_unknown_step(database, make_talk, two_step_flow):
    seeded = make_talk(two_step_flow, current_step_slug="step1")
    service, talk = await _service_and_talk(database, seeded.id)

    await service.record_action_answer(talk, "step1", "name", "   ")
    assert talk.flow_progress.get("step1") is None or talk.flow_progress["step1"].answers == {}

    with pytest.raises(StepNotFoundError):
        await service.record_action_answer(talk, "nope", "name", "Ana")


@pytest.mark.asyncio
async def test_fully_completed_requires_all_questions(database, make_talk):
    flow = load_flow({"f": {"steps": {"s": {
        "first": True,
        "questions": {"name": {}, "budget": {}},
        "inputs": {"in": {"type": "fully_completed"}},
    }}}}, flow_id="flow-full")
    seeded = make_talk(flow, current_step_slug="s")
    service, talk = await _service_and_talk(database, seeded.id)

    assert not await service.is_step_complete(talk, "s")
    await service.record_action_answer(talk, "s", "name", "Ana")
    assert not await service.is_step_complete(talk, "s")
    await service.record_action_answer(talk, "s", "budget", "10k")
    assert await service.is_step_complete(talk, "s")
    # Monotonic: more answers keep it complete
    await service.record_action_answer(talk, "s", "name", "Ana Maria")
    assert await service.is_step_complete(talk, "s")


@pytest.mark.asyncio
async def test_any_input_is_satisfied_by_one_answer(database, make_talk):
    flow = load_flow({"f": {"steps": {"s": {
        "first": True,
        "questions": {"name": {}, "budget": {}},
        "inputs": {"in": {"type": "any"}},
    }}}}, flow_id="flow-any")
    seeded = make_talk(flow, current_step_slug="s")
    service, talk = await _service_and_talk(database, seeded.id)

    assert not await service.is_step_complete(talk, "s")
    await service.record_action_answer(talk, "s", "budget", "10k")
    assert await service.is_step_complete(talk, "s")


@pytest.mark.asyncio
async def test_attempts_input_uses_authored_threshold(database, make_talk):
    flow = load_flow({"f": {"steps": {"s": {
        "first": True,
        "questions": {"name": {}},
        "inputs": {"in": {"type": "not_completed_after_attempts", "maxAttempts": 2}},
    }}}}, flow_id="flow-attempts")
    seeded = make_talk(flow, current_step_slug="s")
    service, talk = await _service_and_talk(database, seeded.id)

    assert await service.record_attempt(talk, "s") == 1
    assert not await service.is_step_complete(talk, "s")
    assert await service.record_attempt(talk, "s") == 2
    assert await service.is_step_complete(talk, "s")


@pytest.mark.asyncio
async def test_same_message_counts_as_one_attempt(database, make_talk):
    flow = load_flow({"f": {"steps": {"s": {
        "first": True,
        "questions": {"name": {}},
        "inputs": {"in": {"type": "not_completed_after_attempts", "maxAttempts": 2}},
    }}}}, flow_id="flow-attempts-once")
    seeded = make_talk(flow, current_step_slug="s")
    service, talk = await _service_and_talk(database, seeded.id)

    assert await service.record_attempt(talk, "s", "m-1") == 1
    assert await service.record_attempt(talk, "s", "m-1") == 1
    assert not await service.is_step_complete(talk, "s")
    assert await service.record_attempt(talk, "s", "m-2") == 2
    assert await service.is_step_complete(talk, "s")


@pytest.mark.asyncio
async def test_step_without_inputs_completes_when_questions_answered(database, make_talk):
    flow = load_flow({"f": {"steps": {"s": {"first": True, "questions": {"name": {}}}}}}, flow_id="flow-no-inputs")
    seeded = make_talk(flow, current_step_slug="s")
    service, talk = await _service_and_talk(database, seeded.id)

    assert not await service.is_step_complete(talk, "s")
    await service.record_action_answer(talk, "s", "name", "Ana")
    assert await service.is_step_complete(talk, "s")
    assert not await service.is_step_complete(talk, "unknown-step")


@pytest.mark.asyncio
async def test_answers_next_question_and_progress(database, make_talk, two_step_flow):
    seeded = make_talk(two_step_flow)
    service, talk = await _service_and_talk(database, seeded.id)
    await service.initialize_talk_flow(talk)

    assert (await service.get_next_question(talk)).slug == "name"
    assert await service.get_progress(talk) == 0.0

    await service.record_action_answer(talk, "step1", "name", "Ana")
    assert await service.get_next_question(talk) is None
    await service.complete_step(talk, "step1", "next", "step2")

    assert await service.get_all_answers(talk) == {"step1.name": "Ana"}
    assert (await service.get_next_question(talk)).slug == "email"
    assert await service.get_progress(talk) == 50.0


@pytest.mark.asyncio
async def test_pause_and_resume(database, make_talk, two_step_flow):
    seeded = make_talk(two_step_flow, current_step_slug="step1")
    service, talk = await _service_and_talk(database, seeded.id)

    with pytest.raises(TalkStateError):
        await service.resume_talk(talk)

    await service.pause_talk(talk, "Operator takeover")
    stored = database.all(Talk)[0]
    assert stored.status == TalkStatus.PAUSED
    assert stored.paused_reason == "Operator takeover"
    assert stored.paused_at is not None

    await service.resume_talk(talk)
    stored = database.all(Talk)[0]
    assert stored.status == TalkStatus.ACTIVE
    assert stored.resumed_at is not None


@pytest.mark.asyncio
async def test_completed_talk_cannot_be_paused(database, make_talk, two_step_flow):
    seeded = make_talk(two_step_flow)
    service, talk = await _service_and_talk(database, seeded.id)
    await service.mark_completed(talk)

    assert talk.closed_at is not None
    with pytest.raises(TalkStateError):
        await service.pause_talk(talk, "too late")
