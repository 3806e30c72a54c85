# /talkflow/services/handlers/generate_agent_response.py

from typing import Optional

import structlog

from talkflow.models.commands import GenerateAgentResponseCommand
from talkflow.models.talk import Agent, MessageDirection, MessageSender, Talk, TalkMessage
from talkflow.services.handlers.base import CommandHandler, HandlerResult
from talkflow.services.repositories import BaseSession
from talkflow.services.talk_flow_service import TalkFlowService

log = structlog.get_logger(__name__)


class GenerateAgentResponseHandler(CommandHandler):
    """Writes the agent's next reply, or closes the Talk once its flow has ended."""

    command_type = GenerateAgentResponseCommand

    async def _resolve_agent(self, session: BaseSession, talk: Talk) -> Optional[Agent]:
        for agent_id in talk.agent_ids:
            agent = await session.agents.find(agent_id)
            if agent is not None:
                return agent

        agent = await session.agents.first_available(talk.organization_id)
        if agent is not None:
            talk.agent_ids = [*talk.agent_ids, agent.id]
            await session.flush()
            log.info("Agent assigned to talk", talk_id=talk.id, agent_id=agent.id)
        return agent

    async def handle(self, command: GenerateAgentResponseCommand) -> HandlerResult:
        session = self.database.session()

        talk = await session.talks.find(command.talk_id)
        if talk is None:
            log.error("Talk not found", talk_id=command.talk_id)
            return HandlerResult.skipped("talk not found")

        if talk.is_paused:
            log.info("Talk is paused, not responding", talk_id=talk.id)
            return HandlerResult.skipped("talk paused")

        if talk.is_completed:
            log.debug("Talk already completed", talk_id=talk.id)
            return HandlerResult.skipped("talk completed")

        talk_flow = TalkFlowService(session, self.config)

        if await talk_flow.is_flow_complete(talk):
            await talk_flow.mark_completed(talk)
            log.info("Flow complete, talk closed", talk_id=talk.id)
            return HandlerResult.ok()

        step = await talk_flow.get_current_step(talk)
        if step is None:
            log.warning("No current step, not responding", talk_id=talk.id)
            return HandlerResult.skipped("no current step")

        agent = await self._resolve_agent(session, talk)
        if agent is None:
            log.error("No available agent for talk", talk_id=talk.id, organization_id=talk.organization_id)
            return HandlerResult.skipped("no available agent")

        history = await session.messages.recent(talk.id, self.config.response_history_limit)

        try:
            text = await self.ai_service.generate_agent_response(talk, agent, step, history)
        except Exception as e:
            log.error("Failed to generate agent response", talk_id=talk.id, error=str(e))
            return HandlerResult.retry(e)

        if not text or not text.strip():
            log.warning("Empty agent response discarded", talk_id=talk.id)
            return HandlerResult.skipped("empty response")

        reply = TalkMessage(
            talk_id=talk.id,
            organization_id=talk.organization_id,
            direction=MessageDirection.OUTBOUND,
            body=text.strip(),
            sender=MessageSender.AGENT,
            agent_id=agent.id,
        )
        session.add(reply)
        talk.message_count += 1
        talk.date_last_message = reply.sent_at
        await session.flush()

        log.info("Agent response sent", talk_id=talk.id, talk_message_id=reply.id, step_slug=step.slug,
                 agent_id=agent.id)
        return HandlerResult.ok()
