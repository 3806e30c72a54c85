# /talkflow/workflows/engine.py

"""
Output selection for a completed step.

Given a Talk whose current step is complete and the latest inbound message,
this module decides which Output of the step fires and which Step comes
next:
- Outputs are tried in declaration order; the first one whose condition
  holds wins
- An Output without condition or keywords is the default path
- Keywords are fuzzily matched against the latest message (no AI call)
- A natural-language condition is checked by the AI service
- If nothing matches, the first Output is used
- A step without Outputs ends the flow

Nothing here writes state; the caller applies the result through
TalkFlowService.complete_step.
"""

from typing import Dict, Iterable, Optional, TypedDict

import structlog
from rapidfuzz import fuzz

from talkflow.config.settings import Settings, settings as default_settings
from talkflow.models.flow import StepOutput
from talkflow.models.talk import Talk
from talkflow.services.ai_service import AIService
from talkflow.services.talk_flow_service import TalkFlowService
from talkflow.utils.errors import FlowNotAttachedError, StepNotFoundError

log = structlog.get_logger(__name__)


class ExecutionResult(TypedDict):
    """Result of evaluating a step's outputs."""
    output_slug: Optional[str]
    next_step_slug: Optional[str]


def keywords_match(keywords: Iterable[str], message: str, threshold: int) -> bool:
    """
    Check whether any keyword appears in the message, tolerating typos.

    Args:
        keywords: Phrases authored on the output
        message: Latest inbound message body
        threshold: Minimum rapidfuzz partial ratio (0-100)

    Returns:
        True if at least one keyword scores at or above the threshold
    """
    text = (message or "").lower()
    if not text:
        return False
    return any(
        fuzz.partial_ratio(keyword.lower(), text) >= threshold
        for keyword in keywords
        if keyword and keyword.strip()
    )


class TreeFlowExecutionService:
    def __init__(self, talk_flow: TalkFlowService, ai_service: AIService, config: Settings = default_settings):
        self.talk_flow = talk_flow
        self.ai_service = ai_service
        self.config = config

    async def _output_matches(self, talk: Talk, output: StepOutput, answers: Dict[str, str], latest_message: str) -> bool:
        if output.is_default:
            log.info("Using default output (no condition)", talk_id=talk.id, output_slug=output.slug)
            return True

        if output.keywords and keywords_match(output.keywords, latest_message, self.config.keyword_match_threshold):
            log.info("Output keywords matched", talk_id=talk.id, output_slug=output.slug)
            return True

        if output.conditional:
            satisfied = await self.ai_service.evaluate_condition(output.conditional, answers, latest_message)
            if satisfied:
                log.info("Output condition satisfied", talk_id=talk.id, output_slug=output.slug,
                         condition=output.conditional[:100])
            return satisfied

        return False

    async def evaluate_and_select_next_step(self, talk: Talk, latest_message_body: str) -> ExecutionResult:
        flow = await self.talk_flow.get_flow(talk)
        if flow is None:
            raise FlowNotAttachedError(f"Talk {talk.id} has no flow attached")

        step = await self.talk_flow.get_current_step(talk)
        if step is None:
            raise StepNotFoundError(f"Talk {talk.id} has no current step")

        outputs = flow.outputs_of(step)
        if not outputs:
            return {"output_slug": None, "next_step_slug": None}

        answers = await self.talk_flow.get_all_answers(talk)

        selected = None
        for output in outputs:
            if await self._output_matches(talk, output, answers, latest_message_body):
                selected = output
                break

        if selected is None:
            selected = outputs[0]
            log.warning("No conditions satisfied, using first output", talk_id=talk.id, output_slug=selected.slug)

        target = flow.target_step(selected)
        return {
            "output_slug": selected.slug,
            "next_step_slug": target.slug if target else None,
        }
