# /talkflow/routes/talks.py

from fastapi import APIRouter, Depends
import structlog

from talkflow.config.settings import settings
from talkflow.models.api import APIResponse, InboundMessageRequest, PauseTalkRequest
from talkflow.models.commands import ProcessTalkMessageCommand
from talkflow.models.talk import MessageDirection, Talk, TalkMessage
from talkflow.services.repositories import BaseSession
from talkflow.services.talk_flow_service import TalkFlowService
from talkflow.utils.dependencies import ServiceContainer, get_container, get_session
from talkflow.utils.errors import TalkNotFoundError

# Operator and integration endpoints over a single Talk: flow state, inbound
# messages and human handoff. Domain errors are turned into HTTP responses by
# the exception handler registered in main.py.

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/talks", tags=["Talks"])


async def _load_talk(session: BaseSession, talk_id: str) -> Talk:
    talk = await session.talks.find(talk_id)
    if talk is None:
        raise TalkNotFoundError(f"Talk {talk_id} not found")
    return talk


def _progress_payload(talk: Talk) -> dict:
    return {slug: progress.model_dump(mode="json", exclude={"answers"}) for slug, progress in talk.flow_progress.items()}


@router.post("/{talk_id}/flow/initialize", response_model=APIResponse)
async def initialize_flow(talk_id: str, session: BaseSession = Depends(get_session)):
    """Place the Talk on its flow's first step, resetting any earlier progress."""
    talk = await _load_talk(session, talk_id)
    talk_flow = TalkFlowService(session)
    first = await talk_flow.initialize_talk_flow(talk)
    return APIResponse(
        success=True,
        message="Talk flow initialized",
        data={"current_step_slug": first.slug, "steps": _progress_payload(talk)},
        version=settings.api_version
    )


@router.get("/{talk_id}/flow", response_model=APIResponse)
async def get_flow_state(talk_id: str, session: BaseSession = Depends(get_session)):
    talk = await _load_talk(session, talk_id)
    talk_flow = TalkFlowService(session)
    step = await talk_flow.get_current_step(talk)
    next_question = await talk_flow.get_next_question(talk)
    return APIResponse(
        success=True,
        message="Talk flow state retrieved",
        data={
            "tree_flow_id": talk.tree_flow_id,
            "status": talk.status.name.lower(),
            "current_step": {"slug": step.slug, "name": step.name, "objective": step.objective} if step else None,
            "next_question": next_question.slug if next_question else None,
            "is_flow_complete": await talk_flow.is_flow_complete(talk),
        },
        version=settings.api_version
    )


@router.get("/{talk_id}/flow/progress", response_model=APIResponse)
async def get_flow_progress(talk_id: str, session: BaseSession = Depends(get_session)):
    talk = await _load_talk(session, talk_id)
    talk_flow = TalkFlowService(session)
    return APIResponse(
        success=True,
        message="Talk flow progress retrieved",
        data={"progress": await talk_flow.get_progress(talk), "steps": _progress_payload(talk)},
        version=settings.api_version
    )


@router.get("/{talk_id}/flow/answers", response_model=APIResponse)
async def get_flow_answers(talk_id: str, session: BaseSession = Depends(get_session)):
    talk = await _load_talk(session, talk_id)
    answers = await TalkFlowService(session).get_all_answers(talk)
    return APIResponse(
        success=True,
        message="Talk answers retrieved",
        data={"answers": answers},
        version=settings.api_version
    )


@router.post("/{talk_id}/messages", response_model=APIResponse, status_code=201)
async def receive_message(
    talk_id: str,
    request: InboundMessageRequest,
    container: ServiceContainer = Depends(get_container),
    session: BaseSession = Depends(get_session),
):
    """Store an inbound message and hand it to the automation when the Talk has a flow."""
    talk = await _load_talk(session, talk_id)

    message = TalkMessage(
        talk_id=talk.id,
        organization_id=talk.organization_id,
        direction=MessageDirection.INBOUND,
        body=request.body,
        sender=request.sender,
        message_type=request.message_type,
    )
    session.add(message)
    talk.message_count += 1
    talk.date_last_message = message.sent_at
    await session.flush()

    dispatched = talk.has_flow
    if dispatched:
        await container.bus.dispatch(ProcessTalkMessageCommand(talk_message_id=message.id, talk_id=talk.id))
        log.info("Inbound message queued for processing", talk_id=talk.id, talk_message_id=message.id)

    return APIResponse(
        success=True,
        message="Message received",
        data={"talk_message_id": message.id, "dispatched": dispatched},
        version=settings.api_version
    )


@router.post("/{talk_id}/pause", response_model=APIResponse)
async def pause_talk(talk_id: str, request: PauseTalkRequest, session: BaseSession = Depends(get_session)):
    talk = await _load_talk(session, talk_id)
    await TalkFlowService(session).pause_talk(talk, request.reason)
    log.info("Talk paused by operator", talk_id=talk.id)
    return APIResponse(success=True, message="Talk paused", version=settings.api_version)


@router.post("/{talk_id}/resume", response_model=APIResponse)
async def resume_talk(talk_id: str, session: BaseSession = Depends(get_session)):
    talk = await _load_talk(session, talk_id)
    await TalkFlowService(session).resume_talk(talk)
    log.info("Talk resumed by operator", talk_id=talk.id)
    return APIResponse(success=True, message="Talk resumed", version=settings.api_version)


@router.get("/{talk_id}/pause/status", response_model=APIResponse)
async def get_pause_status(talk_id: str, session: BaseSession = Depends(get_session)):
    talk = await _load_talk(session, talk_id)
    return APIResponse(
        success=True,
        message="Pause status retrieved",
        data={
            "is_paused": talk.is_paused,
            "paused_reason": talk.paused_reason,
            "paused_at": talk.paused_at.isoformat() if talk.paused_at else None,
            "resumed_at": talk.resumed_at.isoformat() if talk.resumed_at else None,
        },
        version=settings.api_version
    )
