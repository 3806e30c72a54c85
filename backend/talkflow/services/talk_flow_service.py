# /talkflow/services/talk_flow_service.py

from typing import Dict, Optional

import structlog

from talkflow.config.settings import Settings, settings as default_settings
from talkflow.models.flow import FlowGraph, InputType, Question, Step
from talkflow.models.talk import StepProgress, Talk, TalkStatus, utcnow
from talkflow.services.repositories import BaseSession
from talkflow.utils.errors import FlowDefinitionError, FlowNotAttachedError, StepNotFoundError, TalkStateError
from talkflow.utils.metrics import step_transitions_counter
from talkflow.workflows.definitions import progress_template

# Per-conversation state tracking: which step a Talk is on, the answers it has
# collected, and the transitions between steps. Bound to one session, so all
# reads are fresh for the handler invocation that created it.

log = structlog.get_logger(__name__)


class TalkFlowService:
    def __init__(self, session: BaseSession, config: Settings = default_settings):
        self.session = session
        self.config = config

    async def get_flow(self, talk: Talk) -> Optional[FlowGraph]:
        if not talk.has_flow:
            return None
        return await self.session.flows.find(talk.tree_flow_id)

    async def _require_flow(self, talk: Talk) -> FlowGraph:
        flow = await self.get_flow(talk)
        if flow is None:
            raise FlowNotAttachedError(f"Talk {talk.id} has no flow attached")
        return flow

    # ==================== Lifecycle ====================

    async def initialize_talk_flow(self, talk: Talk) -> Step:
        """
        Start a Talk on its flow's first step.

        Builds an empty progress record for every step and places the Talk on
        the unique first step. Re-initializing restarts the flow from scratch.
        """
        flow = await self._require_flow(talk)
        first = flow.first_step
        if first is None:
            raise FlowDefinitionError(f"Flow '{flow.slug}' has no unique first step")

        talk.flow_progress = progress_template(flow)
        talk.current_step_slug = first.slug
        talk.flow_terminated_at = None
        await self.session.flush()

        log.info("TalkFlow initialized", talk_id=talk.id, tree_flow_id=flow.id, first_step=first.slug)
        return first

    async def pause_talk(self, talk: Talk, reason: str) -> None:
        if talk.is_completed:
            raise TalkStateError(f"Talk {talk.id} is completed and cannot be paused")
        talk.status = TalkStatus.PAUSED
        talk.paused_at = utcnow()
        talk.paused_reason = reason
        await self.session.flush()

    async def resume_talk(self, talk: Talk) -> None:
        if not talk.is_paused:
            raise TalkStateError(f"Talk {talk.id} is not paused")
        talk.status = TalkStatus.ACTIVE
        talk.resumed_at = utcnow()
        await self.session.flush()

    async def mark_completed(self, talk: Talk) -> None:
        talk.status = TalkStatus.COMPLETED
        talk.closed_at = utcnow()
        await self.session.flush()

    # ==================== Current step ====================

    async def get_current_step(self, talk: Talk) -> Optional[Step]:
        """The step the Talk sits on, or None for a new Talk, a finished flow, or a step deleted since."""
        if not talk.current_step_slug:
            return None
        flow = await self.get_flow(talk)
        if flow is None:
            return None
        step = flow.step_by_slug(talk.current_step_slug)
        if step is None:
            log.warning("Current step no longer exists in flow", talk_id=talk.id, step_slug=talk.current_step_slug)
        return step

    async def get_current_step_slug(self, talk: Talk) -> Optional[str]:
        step = await self.get_current_step(talk)
        return step.slug if step else None

    # ==================== Answers ====================

    async def _step(self, talk: Talk, step_slug: str) -> Step:
        flow = await self._require_flow(talk)
        step = flow.step_by_slug(step_slug)
        if step is None:
            raise StepNotFoundError(f"Step '{step_slug}' does not exist in flow '{flow.slug}'")
        return step

    async def record_action_answer(self, talk: Talk, step_slug: str, action_slug: str, answer: str) -> None:
        """Store the answer to one question of a step. Recording the same question again overwrites it."""
        await self._step(talk, step_slug)
        if not answer or not answer.strip():
            log.debug("Ignoring empty answer", talk_id=talk.id, step_slug=step_slug, action_slug=action_slug)
            return

        talk.progress_for(step_slug).answers[action_slug] = answer.strip()
        await self.session.flush()

        log.info("Action answer recorded", talk_id=talk.id, step_slug=step_slug, action_slug=action_slug)

    async def record_attempt(self, talk: Talk, step_slug: str, message_id: Optional[str] = None) -> int:
        """
        Count one more inbound message handled while the step was current.

        A message is counted once per step, however often its command is redelivered.
        """
        await self._step(talk, step_slug)
        progress = talk.progress_for(step_slug)
        if message_id is not None:
            if message_id in progress.attempted_message_ids:
                log.debug("Attempt already counted", talk_id=talk.id, step_slug=step_slug, talk_message_id=message_id)
                return progress.attempts
            progress.attempted_message_ids.append(message_id)
        progress.attempts += 1
        await self.session.flush()
        return progress.attempts

    async def is_step_complete(self, talk: Talk, step_slug: str) -> bool:
        """
        True when every Input of the step is satisfied by the recorded state.

        - fully_completed: every Question of the step has an answer
        - any: at least one answer was recorded on the step
        - not_completed_after_attempts: the step saw at least `max_attempts` messages

        A step without Inputs is complete once all its Questions are answered.
        """
        flow = await self.get_flow(talk)
        step = flow.step_by_slug(step_slug) if flow else None
        if step is None:
            return False

        progress = talk.flow_progress.get(step_slug) or StepProgress()
        answered = {slug for slug, answer in progress.answers.items() if answer and answer.strip()}
        all_answered = all(question.slug in answered for question in step.questions)

        if not step.inputs:
            return all_answered

        for step_input in step.inputs:
            if step_input.type == InputType.FULLY_COMPLETED:
                satisfied = all_answered
            elif step_input.type == InputType.ANY:
                satisfied = bool(answered) or not step.questions
            else:
                threshold = step_input.max_attempts or self.config.default_max_attempts
                satisfied = progress.attempts >= threshold
            if not satisfied:
                return False
        return True

    async def get_all_answers(self, talk: Talk) -> Dict[str, str]:
        """Every recorded answer keyed as 'step_slug.question_slug'."""
        return {
            f"{step_slug}.{action_slug}": answer
            for step_slug, progress in talk.flow_progress.items()
            for action_slug, answer in progress.answers.items()
            if answer
        }

    async def get_next_question(self, talk: Talk) -> Optional[Question]:
        step = await self.get_current_step(talk)
        if step is None:
            return None
        answers = talk.flow_progress.get(step.slug, StepProgress()).answers
        return next((q for q in step.questions if not answers.get(q.slug)), None)

    async def get_progress(self, talk: Talk) -> float:
        """Share of steps completed, as a percentage rounded to two decimals."""
        if not talk.flow_progress:
            return 0.0
        completed = sum(1 for progress in talk.flow_progress.values() if progress.completed)
        return round(completed / len(talk.flow_progress) * 100, 2)

    # ==================== Transitions ====================

    async def complete_step(
        self,
        talk: Talk,
        step_slug: str,
        output_slug: Optional[str],
        next_step_slug: Optional[str],
    ) -> None:
        """
        Close `step_slug` through `output_slug` and move the Talk on.

        This is the only place a Talk changes step. A None `next_step_slug`
        means the output leads nowhere: the flow has terminated.
        """
        progress = talk.progress_for(step_slug)
        progress.completed = True
        progress.completed_at = utcnow()
        progress.selected_output = output_slug

        talk.current_step_slug = next_step_slug
        if next_step_slug is None:
            talk.flow_terminated_at = utcnow()

        await self.session.flush()

        step_transitions_counter.labels(outcome="advanced" if next_step_slug else "terminated").inc()
        log.info("Step completed", talk_id=talk.id, completed_step=step_slug,
                 selected_output=output_slug, next_step=next_step_slug)

    async def is_flow_complete(self, talk: Talk) -> bool:
        """True once a transition has left the flow and no step is current."""
        return talk.current_step_slug is None and talk.flow_terminated_at is not None
