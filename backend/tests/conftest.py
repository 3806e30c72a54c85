
import os
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock, MagicMock

# Load the test environment FIRST, before any talkflow imports, so the
# module-level Settings() picks it up.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test", override=True)
os.environ.setdefault("ENVIRONMENT", "test")

from talkflow.config.settings import settings  # noqa: E402
from talkflow.models.talk import Agent, MessageDirection, MessageSender, Talk, TalkMessage  # noqa: E402
from talkflow.services.ai_service import AIService, EscalationDecision  # noqa: E402
from talkflow.services.memory_store import InMemoryDatabase  # noqa: E402
from talkflow.utils.dependencies import ServiceContainer  # noqa: E402
from talkflow.utils.queue import InMemoryCommandBus  # noqa: E402
from talkflow.workflows.definitions import load_flow  # noqa: E402

ORG_ID = "org-1"


# ==================== Flow documents ====================

@pytest.fixture
def two_step_document():
    """step1 (first) --next--> step2 --done--> (end)."""
    return {
        "lead-intake": {
            "name": "Lead intake",
            "steps": {
                "step1": {
                    "first": True,
                    "objective": "Learn the lead's name",
                    "questions": {"name": {"prompt": "What is your name?"}},
                    "inputs": {"entry": {"type": "fully_completed"}},
                    "outputs": {"next": {"connectTo": {"stepSlug": "step2", "inputSlug": "entry"}}},
                },
                "step2": {
                    "objective": "Collect an email address",
                    "questions": {"email": {"prompt": "What is your email?"}},
                    "inputs": {"entry": {"type": "fully_completed"}},
                    "outputs": {"done": {}},
                },
            },
        }
    }


@pytest.fixture
def single_step_document():
    """step1 (first) --o1--> (no connection)."""
    return {
        "quick-check": {
            "steps": {
                "step1": {
                    "first": True,
                    "questions": {"name": {"prompt": "What is your name?"}},
                    "inputs": {"entry": {"type": "fully_completed"}},
                    "outputs": {"o1": {}},
                },
            },
        }
    }


@pytest.fixture
def two_step_flow(two_step_document):
    return load_flow(two_step_document, flow_id="flow-two-step")


@pytest.fixture
def single_step_flow(single_step_document):
    return load_flow(single_step_document, flow_id="flow-single-step")


# ==================== Services ====================

@pytest.fixture
def ai_service():
    """AI gateway double: no answers, no conditions, a canned reply, never escalates."""
    service = MagicMock(spec=AIService)
    service.extract_answers = AsyncMock(return_value={})
    service.evaluate_condition = AsyncMock(return_value=False)
    service.generate_agent_response = AsyncMock(return_value="Thanks! Could you tell me a bit more?")
    service.should_escalate = AsyncMock(return_value=EscalationDecision(should_escalate=False))
    return service


@pytest.fixture
def bus():
    return InMemoryCommandBus()


@pytest.fixture
def database(bus):
    return InMemoryDatabase(audit_publisher=bus.dispatch)


@pytest.fixture
def container(database, bus, ai_service):
    container = ServiceContainer(database, bus, ai_service, settings)
    container.register_handlers()
    return container


@pytest.fixture
def agent():
    return Agent(organization_id=ORG_ID, name="Ava", prompt="You are Ava, a friendly sales assistant.")


@pytest.fixture
def make_talk(database):
    """Seed a Talk (optionally on a flow and step) and return it."""
    def _make_talk(flow=None, current_step_slug=None, **fields):
        if flow is not None:
            database.seed(flow)
        talk = Talk(
            organization_id=ORG_ID,
            tree_flow_id=flow.id if flow is not None else None,
            current_step_slug=current_step_slug,
            **fields,
        )
        database.seed(talk)
        return talk
    return _make_talk


@pytest.fixture
def make_message(database):
    def _make_message(talk, body, direction=MessageDirection.INBOUND, **fields):
        sender = MessageSender.CONTACT if direction == MessageDirection.INBOUND else MessageSender.AGENT
        message = TalkMessage(
            talk_id=talk.id,
            organization_id=talk.organization_id,
            direction=direction,
            body=body,
            sender=sender,
            **fields,
        )
        database.seed(message)
        return message
    return _make_message


@pytest.fixture(scope="function")
def test_client(container):
    """
    Provides a TestClient wired to the in-memory container.
    ENVIRONMENT=test keeps the lifespan from starting background workers, so
    dispatched commands stay on container.bus.queue for the test to inspect.
    """
    from talkflow.main import app

    app.state.container = container
    with TestClient(app) as client:
        yield client
    app.state.container = None
