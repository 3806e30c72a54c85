# /talkflow/services/handlers/evaluate_step_completion.py

import structlog

from talkflow.models.commands import EvaluateStepCompletionCommand
from talkflow.services.handlers.base import CommandHandler, HandlerResult
from talkflow.services.talk_flow_service import TalkFlowService
from talkflow.workflows.engine import TreeFlowExecutionService

log = structlog.get_logger(__name__)


class EvaluateStepCompletionHandler(CommandHandler):
    """Moves a Talk to its next step once the current one is complete."""

    command_type = EvaluateStepCompletionCommand

    async def handle(self, command: EvaluateStepCompletionCommand) -> HandlerResult:
        session = self.database.session()

        talk = await session.talks.find(command.talk_id)
        if talk is None:
            log.error("Talk not found", talk_id=command.talk_id)
            return HandlerResult.skipped("talk not found")

        talk_flow = TalkFlowService(session, self.config)
        step = await talk_flow.get_current_step(talk)
        if step is None:
            log.error("Current step not found", talk_id=talk.id, step_slug=talk.current_step_slug)
            return HandlerResult.skipped("no current step")

        if not await talk_flow.is_step_complete(talk, step.slug):
            log.debug("Step not complete yet", talk_id=talk.id, step_slug=step.slug)
            return HandlerResult.skipped("step not complete")

        latest = await session.messages.latest_inbound(talk.id)
        engine = TreeFlowExecutionService(talk_flow, self.ai_service, self.config)

        try:
            result = await engine.evaluate_and_select_next_step(talk, latest.body if latest else "")
            await talk_flow.complete_step(talk, step.slug, result["output_slug"], result["next_step_slug"])
        except Exception as e:
            log.error("Failed to evaluate step completion", talk_id=talk.id, step_slug=step.slug,
                      error=str(e), exc_info=True)
            return HandlerResult.retry(e)

        if result["next_step_slug"] is None:
            log.info("Flow terminated", talk_id=talk.id, last_step=step.slug, output_slug=result["output_slug"])
        return HandlerResult.ok()
