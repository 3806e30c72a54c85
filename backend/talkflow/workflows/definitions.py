# /talkflow/workflows/definitions.py

"""
Flow definitions as pure data.

Flows are authored as a JSON document keyed by the flow slug:

    {
        "lead-qualification": {
            "name": "Lead qualification",
            "steps": {
                "greeting": {
                    "first": true,
                    "objective": "...",
                    "questions": {"name": {"prompt": "...", "importance": 1}},
                    "inputs": {"entry": {"type": "fully_completed"}},
                    "outputs": {
                        "qualified": {
                            "conditional": "lead has budget",
                            "connectTo": {"stepSlug": "demo", "inputSlug": "entry"}
                        }
                    }
                }
            }
        }
    }

This module converts that document to a FlowGraph and back, and builds the
per-Talk progress template for a flow. No database access, no logging.
"""

from typing import Any, Dict, List, Optional
from pydantic import ValidationError

from talkflow.models.flow import Connection, FlowGraph, Question, Step, StepInput, StepOutput
from talkflow.models.talk import StepProgress
from talkflow.utils.errors import FlowDefinitionError

# Type definition for a step in the authored document
StepDefinition = Dict[str, Any]

# Type definition for a whole authored flow
FlowDefinition = Dict[str, Any]


def _input_id(step_slug: str, input_slug: str) -> str:
    return f"{step_slug}.in.{input_slug}"


def _output_id(step_slug: str, output_slug: str) -> str:
    return f"{step_slug}.out.{output_slug}"


def load_flow(document: FlowDefinition, flow_id: Optional[str] = None) -> FlowGraph:
    """
    Build a FlowGraph from an authored flow document.

    Args:
        document: Mapping with a single flow slug as key
        flow_id: Identifier to give the graph (defaults to the flow slug)

    Returns:
        The immutable FlowGraph

    Raises:
        FlowDefinitionError: If the document is malformed or breaks a graph invariant
    """
    if not isinstance(document, dict) or len(document) != 1:
        raise FlowDefinitionError("Flow document must contain exactly one flow slug")

    flow_slug, body = next(iter(document.items()))
    raw_steps: Dict[str, StepDefinition] = (body or {}).get("steps") or {}

    steps: List[Step] = []
    connections: List[Connection] = []
    pending_links = []

    try:
        for step_slug, raw in raw_steps.items():
            questions = [
                Question(
                    id=question.get("id", f"{step_slug}.q.{slug}"),
                    slug=slug,
                    objective=question.get("objective"),
                    prompt=question.get("prompt", ""),
                    importance=question.get("importance", 1),
                    few_shot_positive=question.get("fewShotPositive") or [],
                    few_shot_negative=question.get("fewShotNegative") or [],
                )
                for slug, question in (raw.get("questions") or {}).items()
            ]
            inputs = [
                StepInput(
                    id=step_input.get("id", _input_id(step_slug, slug)),
                    slug=slug,
                    name=step_input.get("name", slug),
                    type=step_input.get("type", "fully_completed"),
                    prompt=step_input.get("prompt"),
                    max_attempts=step_input.get("maxAttempts"),
                )
                for slug, step_input in (raw.get("inputs") or {}).items()
            ]
            outputs = []
            for slug, output in (raw.get("outputs") or {}).items():
                output_id = output.get("id", _output_id(step_slug, slug))
                outputs.append(
                    StepOutput(
                        id=output_id,
                        slug=slug,
                        name=output.get("name", slug),
                        description=output.get("prompt"),
                        conditional=output.get("conditional") or None,
                        keywords=output.get("keywords") or [],
                    )
                )
                if output.get("connectTo"):
                    pending_links.append((step_slug, output_id, output["connectTo"]))

            steps.append(
                Step(
                    id=raw.get("id", step_slug),
                    slug=step_slug,
                    name=raw.get("name", step_slug),
                    first=bool(raw.get("first", False)),
                    objective=raw.get("objective"),
                    prompt=raw.get("prompt"),
                    questions=questions,
                    inputs=inputs,
                    outputs=outputs,
                )
            )
    except (ValidationError, AttributeError, TypeError) as e:
        raise FlowDefinitionError(f"Invalid step definition in flow '{flow_slug}': {e}") from e

    steps_by_slug = {step.slug: step for step in steps}
    for source_slug, output_id, target in pending_links:
        target_step = steps_by_slug.get(target.get("stepSlug"))
        if target_step is None:
            raise FlowDefinitionError(
                f"Output '{output_id}' connects to unknown step '{target.get('stepSlug')}'"
            )
        input_slug = target.get("inputSlug")
        if input_slug is None:
            if not target_step.inputs:
                raise FlowDefinitionError(f"Step '{target_step.slug}' has no input to connect to")
            target_input = target_step.inputs[0]
        else:
            target_input = next((i for i in target_step.inputs if i.slug == input_slug), None)
            if target_input is None:
                raise FlowDefinitionError(
                    f"Output '{output_id}' connects to unknown input '{input_slug}' of step '{target_step.slug}'"
                )
        connections.append(Connection(source_output_id=output_id, target_input_id=target_input.id))

    try:
        return FlowGraph(
            id=flow_id or flow_slug,
            slug=flow_slug,
            name=(body or {}).get("name", flow_slug),
            version=(body or {}).get("version", 1),
            steps=steps,
            connections=connections,
        )
    except ValidationError as e:
        raise FlowDefinitionError(f"Flow '{flow_slug}' breaks a graph invariant: {e}") from e


def flow_to_json(flow: FlowGraph) -> FlowDefinition:
    """
    Render a FlowGraph back into the authored document format.

    Steps are emitted in routing order (breadth-first from the first step),
    with unreachable steps appended at the end.
    """
    steps: Dict[str, StepDefinition] = {}

    for order, step in enumerate(flow.ordered_steps(), start=1):
        outputs = {}
        for output in step.outputs:
            output_data: Dict[str, Any] = {
                "prompt": output.description,
                "conditional": output.conditional,
                "keywords": list(output.keywords),
            }
            connection = flow.connection_from(output.id)
            if connection is not None:
                target = flow.target_step(output)
                target_input = next(i for i in target.inputs if i.id == connection.target_input_id)
                output_data["connectTo"] = {"stepSlug": target.slug, "inputSlug": target_input.slug}
            outputs[output.slug] = output_data

        steps[step.slug] = {
            "order": order,
            "name": step.name,
            "first": step.first,
            "objective": step.objective,
            "prompt": step.prompt,
            "questions": {
                question.slug: {
                    "objective": question.objective,
                    "prompt": question.prompt,
                    "importance": question.importance,
                    "fewShotPositive": list(question.few_shot_positive),
                    "fewShotNegative": list(question.few_shot_negative),
                }
                for question in step.questions
            },
            "inputs": {
                step_input.slug: {
                    "type": step_input.type.value,
                    "prompt": step_input.prompt,
                    "maxAttempts": step_input.max_attempts,
                }
                for step_input in step.inputs
            },
            "outputs": outputs,
        }

    return {flow.slug: {"name": flow.name, "version": flow.version, "steps": steps}}


def progress_template(flow: FlowGraph) -> Dict[str, StepProgress]:
    """Empty progress record for every step, numbered in routing order."""
    return {
        step.slug: StepProgress(order=order)
        for order, step in enumerate(flow.ordered_steps(), start=1)
    }
