# /talkflow/services/ai_service.py

import json
import logging
import asyncio
from typing import Any, Dict, List, Optional

import openai
import tenacity
from google import genai
from google.genai.types import GenerateContentConfig, HttpOptions
from openai import AsyncOpenAI
from pydantic import BaseModel

from talkflow.config import prompts
from talkflow.config.settings import Settings, settings as default_settings
from talkflow.models.flow import Step
from talkflow.models.talk import Agent, MessageDirection, Talk, TalkMessage
from talkflow.utils.circuit_breaker import CircuitBreaker
from talkflow.utils.errors import AIServiceError
from talkflow.utils.metrics import ai_requests_counter

# This service wraps every call the conversation engine makes to an LLM:
# answer extraction, output-condition checks, reply generation and the
# escalation classifier. Gemini is tried first, OpenAI is the fallback.

logger = logging.getLogger(__name__)

TRANSIENT_OPENAI_ERRORS = (openai.APIConnectionError, openai.APITimeoutError, openai.RateLimitError)


class EscalationDecision(BaseModel):
    should_escalate: bool
    reason: str = ""
    urgency: str = "low"


class AIService:
    def __init__(self, config: Settings = default_settings, gemini_client=None, openai_client=None):
        self.config = config

        if gemini_client is not None:
            self.gemini_client = gemini_client
        elif config.gemini_api_key:
            self.gemini_client = genai.Client(api_key=config.gemini_api_key, http_options=HttpOptions(api_version='v1'))
        else:
            self.gemini_client = None

        if openai_client is not None:
            self.openai_client = openai_client
        elif config.openai_api_key:
            self.openai_client = AsyncOpenAI(api_key=config.openai_api_key)
        else:
            self.openai_client = None

        self.gemini_breaker = CircuitBreaker("gemini")
        self.openai_breaker = CircuitBreaker("openai")

    # ==================== Provider plumbing ====================

    async def _gemini_generate(self, system: str, prompt: str, temperature: float, max_tokens: int, json_mode: bool) -> str:
        config = GenerateContentConfig(
            system_instruction=system,
            temperature=temperature,
            max_output_tokens=max_tokens,
            response_mime_type="application/json" if json_mode else None,
        )
        response = await asyncio.to_thread(
            self.gemini_client.models.generate_content,
            model=self.config.gemini_model,
            contents=prompt,
            config=config,
        )
        return (response.text or "").strip()

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type(TRANSIENT_OPENAI_ERRORS),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _openai_generate(self, messages: List[Dict[str, str]], temperature: float, max_tokens: int, json_mode: bool) -> str:
        kwargs: Dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self.openai_client.chat.completions.create(
            model=self.config.openai_model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            **kwargs,
        )
        return (response.choices[0].message.content or "").strip()

    async def _complete(
        self,
        system: str,
        turns: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
        purpose: str = "text",
    ) -> str:
        """Run a completion against Gemini, falling back to OpenAI. Raises AIServiceError if both fail."""
        if self.gemini_client:
            transcript = "\n\n".join(f"{turn['role'].upper()}: {turn['content']}" for turn in turns)
            try:
                text = await self.gemini_breaker.call(
                    self._gemini_generate, system, transcript, temperature, max_tokens, json_mode
                )
                if text:
                    ai_requests_counter.labels(model=f"gemini-{purpose}", status="success").inc()
                    return text
            except Exception as e:
                logger.error(f"Gemini {purpose} call failed: {e}. Trying OpenAI fallback.")
                ai_requests_counter.labels(model=f"gemini-{purpose}", status="error").inc()

        if self.openai_client:
            messages = [{"role": "system", "content": system}, *turns]
            try:
                text = await self.openai_breaker.call(
                    self._openai_generate, messages, temperature, max_tokens, json_mode
                )
                if text:
                    ai_requests_counter.labels(model=f"openai-{purpose}", status="success").inc()
                    return text
            except Exception as e:
                logger.error(f"OpenAI {purpose} call failed: {e}")
                ai_requests_counter.labels(model=f"openai-{purpose}", status="error").inc()

        raise AIServiceError(f"No AI provider produced a {purpose} response")

    async def _complete_json(self, system: str, prompt: str, temperature: float, purpose: str) -> Dict[str, Any]:
        text = await self._complete(
            system, [{"role": "user", "content": prompt}], temperature, self.config.ai_max_tokens,
            json_mode=True, purpose=purpose,
        )
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise AIServiceError(f"AI provider returned invalid JSON for {purpose}: {e}") from e
        if not isinstance(data, dict):
            raise AIServiceError(f"AI provider returned a non-object JSON for {purpose}")
        return data

    # ==================== Engine operations ====================

    async def extract_answers(self, message: TalkMessage, step: Step) -> Dict[str, str]:
        """
        Extract answers to the step's questions from an inbound message.

        Returns a mapping of question slug to answer. Unknown slugs and empty
        answers are dropped. Provider failures yield an empty mapping.
        """
        if not step.questions:
            return {}

        questions = "\n".join(f"- {q.slug}: {q.prompt or q.objective or q.slug}" for q in step.questions)
        prompt = prompts.EXTRACTION_PROMPT_TEMPLATE.format(questions=questions, message=message.body)

        try:
            data = await self._complete_json(prompts.EXTRACTION_SYSTEM_PROMPT, prompt, 0.3, "extraction")
        except AIServiceError as e:
            logger.error(f"Answer extraction failed for message {message.id}: {e}")
            return {}

        known = {q.slug for q in step.questions}
        raw_answers = data.get("answers") or {}
        answers = {
            slug: str(answer).strip()
            for slug, answer in raw_answers.items()
            if slug in known and answer is not None and str(answer).strip()
        }
        logger.info(f"Extracted {len(answers)} answer(s) from message {message.id}")
        return answers

    async def evaluate_condition(self, condition: str, answers: Dict[str, str], latest_message: str) -> bool:
        """Ask the model whether an output's condition holds. False when it cannot tell."""
        prompt = prompts.CONDITION_PROMPT_TEMPLATE.format(
            condition=condition,
            answers=json.dumps(answers, indent=2, ensure_ascii=False),
            message=latest_message,
        )
        try:
            text = await self._complete(
                prompts.CONDITION_SYSTEM_PROMPT, [{"role": "user", "content": prompt}], 0.1, 10, purpose="condition"
            )
        except AIServiceError as e:
            logger.error(f"Condition evaluation failed: {e}")
            return False
        return text.strip().strip(".").upper() in ("YES", "TRUE", "1")

    async def generate_agent_response(self, talk: Talk, agent: Agent, step: Step, history: List[TalkMessage]) -> str:
        """Reply text for the agent, conditioned on the current step and recent history."""
        questions = "\n".join(f"- {q.prompt or q.objective or q.slug}" for q in step.questions)
        system = prompts.AGENT_SYSTEM_PROMPT_TEMPLATE.format(
            agent_prompt=agent.prompt or prompts.DEFAULT_AGENT_PROMPT,
            step_objective=step.objective or step.name,
            questions=questions or "- Keep the conversation moving towards the next stage",
        )
        turns = [
            {"role": "user" if m.direction == MessageDirection.INBOUND else "assistant", "content": m.body}
            for m in history
        ]
        if not turns:
            turns = [{"role": "user", "content": "(The lead has not written anything yet. Open the conversation.)"}]

        text = await self._complete(
            system, turns, self.config.ai_temperature, self.config.ai_max_tokens, purpose="response"
        )
        logger.info(f"Agent response generated for talk {talk.id}")
        return text

    async def should_escalate(self, talk: Talk, message_body: str) -> EscalationDecision:
        """Decide whether a human should take over. Errs on the side of escalating."""
        prompt = prompts.ESCALATION_PROMPT_TEMPLATE.format(message=message_body)
        try:
            data = await self._complete_json(prompts.ESCALATION_SYSTEM_PROMPT, prompt, 0.1, "escalation")
            decision = EscalationDecision(
                should_escalate=bool(data.get("shouldEscalate", False)),
                reason=str(data.get("reason") or ""),
                urgency=str(data.get("urgency") or "low"),
            )
        except Exception as e:
            logger.error(f"Escalation decision failed for talk {talk.id}: {e}")
            return EscalationDecision(should_escalate=True, reason="System error occurred", urgency="high")

        logger.info(f"Escalation decision for talk {talk.id}: {decision.should_escalate} ({decision.reason})")
        return decision
