# /talkflow/services/handlers/process_talk_message.py

import structlog

from talkflow.models.commands import (
    EvaluateStepCompletionCommand,
    GenerateAgentResponseCommand,
    ProcessTalkMessageCommand,
)
from talkflow.models.talk import MessageDirection, Talk
from talkflow.services.handlers.base import CommandHandler, HandlerResult
from talkflow.services.talk_flow_service import TalkFlowService
from talkflow.utils.metrics import talk_escalations_counter

log = structlog.get_logger(__name__)


class ProcessTalkMessageHandler(CommandHandler):
    """
    Entry point of the automation for each inbound message.

    Extracts answers to the current step's questions and records them, then
    schedules step evaluation and reply generation. When extraction or
    recording fails, the Talk may be handed to a human before the failure is
    reported back to the bus for redelivery.
    """

    command_type = ProcessTalkMessageCommand

    async def handle(self, command: ProcessTalkMessageCommand) -> HandlerResult:
        session = self.database.session()

        message = await session.messages.find(command.talk_message_id)
        if message is None:
            log.error("TalkMessage not found", talk_message_id=command.talk_message_id)
            return HandlerResult.skipped("talk message not found")

        if message.direction != MessageDirection.INBOUND:
            log.debug("Ignoring outbound message", talk_message_id=message.id)
            return HandlerResult.skipped("not an inbound message")

        talk = await session.talks.find(message.talk_id)
        if talk is None:
            log.error("Talk not found for message", talk_id=message.talk_id, talk_message_id=message.id)
            return HandlerResult.skipped("talk not found")

        if talk.is_paused:
            log.info("Talk is paused, skipping automation", talk_id=talk.id)
            return HandlerResult.skipped("talk paused")

        if talk.is_completed:
            log.info("Talk is completed, skipping automation", talk_id=talk.id)
            return HandlerResult.skipped("talk completed")

        if not talk.has_flow:
            log.debug("Talk has no flow attached", talk_id=talk.id)
            return HandlerResult.skipped("no flow attached")

        talk_flow = TalkFlowService(session, self.config)

        try:
            step = await talk_flow.get_current_step(talk)
            if step is None:
                log.warning("No current step for talk", talk_id=talk.id)
                return HandlerResult.skipped("no current step")

            await talk_flow.record_attempt(talk, step.slug, message.id)

            answers = await self.ai_service.extract_answers(message, step)
            for action_slug, answer in answers.items():
                if answer:
                    await talk_flow.record_action_answer(talk, step.slug, action_slug, answer)

            log.info("Talk message processed", talk_id=talk.id, step_slug=step.slug, answers_recorded=len(answers))
        except Exception as e:
            log.error("Failed to process talk message", talk_id=talk.id, talk_message_id=message.id,
                      error=str(e), exc_info=True)
            await self._escalate_if_needed(talk, message.body)
            return HandlerResult.retry(e)

        await self.dispatcher.dispatch(EvaluateStepCompletionCommand(talk_id=talk.id))
        await self.dispatcher.dispatch(GenerateAgentResponseCommand(talk_id=talk.id, context_message=message.body))
        return HandlerResult.ok()

    async def _escalate_if_needed(self, talk: Talk, message_body: str) -> None:
        try:
            decision = await self.ai_service.should_escalate(talk, message_body)
        except Exception as e:
            # The processing error is the one reported to the bus
            log.error("Escalation check failed", talk_id=talk.id, error=str(e))
            return
        if not decision.should_escalate:
            return

        # The failed session may hold half-written changes; pause through a clean one.
        session = self.database.session()
        fresh = await session.talks.find(talk.id)
        if fresh is None:
            return
        try:
            await TalkFlowService(session, self.config).pause_talk(fresh, f"Escalated to human: {decision.reason}")
        except Exception as e:
            log.error("Failed to pause talk for escalation", talk_id=talk.id, error=str(e))
            return

        talk_escalations_counter.inc()
        log.warning("Talk escalated to human", talk_id=talk.id, reason=decision.reason, urgency=decision.urgency)
