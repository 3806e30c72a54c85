# /talkflow/routes/flows.py

from fastapi import APIRouter, Depends, HTTPException

from talkflow.config.settings import settings
from talkflow.models.api import APIResponse
from talkflow.models.flow import FlowGraph
from talkflow.services.repositories import BaseSession
from talkflow.utils.dependencies import get_session
from talkflow.workflows.definitions import flow_to_json
from talkflow.workflows.validator import validate_flow

router = APIRouter(prefix="/flows", tags=["Flows"])


async def _load_flow(session: BaseSession, flow_id: str) -> FlowGraph:
    flow = await session.flows.find(flow_id)
    if flow is None:
        raise HTTPException(status_code=404, detail="Flow not found")
    return flow


@router.get("/{flow_id}", response_model=APIResponse)
async def export_flow(flow_id: str, session: BaseSession = Depends(get_session)):
    """The flow in its authored document format, steps in routing order."""
    flow = await _load_flow(session, flow_id)
    return APIResponse(
        success=True,
        message="Flow exported",
        data=flow_to_json(flow),
        version=settings.api_version
    )


@router.get("/{flow_id}/validation", response_model=APIResponse)
async def validate(flow_id: str, session: BaseSession = Depends(get_session)):
    flow = await _load_flow(session, flow_id)
    errors = validate_flow(flow)
    return APIResponse(
        success=True,
        message="Flow is valid" if not errors else "Flow has problems",
        data={
            "is_valid": not errors,
            "errors": errors,
            "unreachable_steps": [step.slug for step in flow.unreachable_steps()],
        },
        version=settings.api_version
    )
