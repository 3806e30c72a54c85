# /talkflow/workflows/validator.py

"""
Pure validation functions for authored flow graphs.

This module provides deterministic, side-effect-free checks over the
Steps, Inputs, Outputs and Connections of a flow:
- Connection endpoints exist
- No Connection links a Step to itself
- No duplicate Connection between the same Output/Input pair
- An Output carries at most one Connection
- Exactly one Step is marked as the first step
- Every Step is reachable from the first step

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No database access
- No AI calls
- No logging
"""

from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Set, Tuple, TypedDict

if TYPE_CHECKING:
    from talkflow.models.flow import Connection, FlowGraph, Step


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


def _valid() -> ValidationResult:
    return {"is_valid": True, "error_code": None, "message": None}


def _invalid(error_code: str, message: str) -> ValidationResult:
    return {"is_valid": False, "error_code": error_code, "message": message}


def validate_connections(steps: Sequence["Step"], connections: Sequence["Connection"]) -> ValidationResult:
    """
    Validate the structural invariants of a flow's Connections.

    Args:
        steps: All steps of the flow
        connections: All connections of the flow

    Returns:
        ValidationResult with is_valid=True if every Connection is well formed
    """
    step_ids: Set[str] = set()
    step_slugs: Set[str] = set()
    output_owner: Dict[str, str] = {}
    input_owner: Dict[str, str] = {}

    for step in steps:
        if step.id in step_ids:
            return _invalid("DUPLICATE_STEP", f"Step id '{step.id}' is used more than once")
        if step.slug in step_slugs:
            return _invalid("DUPLICATE_STEP", f"Step slug '{step.slug}' is used more than once")
        step_ids.add(step.id)
        step_slugs.add(step.slug)
        for output in step.outputs:
            if output.id in output_owner:
                return _invalid("DUPLICATE_OUTPUT", f"Output id '{output.id}' is used more than once")
            output_owner[output.id] = step.id
        for step_input in step.inputs:
            if step_input.id in input_owner:
                return _invalid("DUPLICATE_INPUT", f"Input id '{step_input.id}' is used more than once")
            input_owner[step_input.id] = step.id

    seen_pairs: Set[Tuple[str, str]] = set()
    connected_outputs: Set[str] = set()

    for connection in connections:
        source_step = output_owner.get(connection.source_output_id)
        target_step = input_owner.get(connection.target_input_id)

        if source_step is None:
            return _invalid(
                "UNKNOWN_OUTPUT",
                f"Connection source output '{connection.source_output_id}' does not exist",
            )
        if target_step is None:
            return _invalid(
                "UNKNOWN_INPUT",
                f"Connection target input '{connection.target_input_id}' does not exist",
            )
        if source_step == target_step:
            return _invalid(
                "SELF_LOOP",
                f"Output '{connection.source_output_id}' cannot connect to an input of its own step",
            )

        pair = (connection.source_output_id, connection.target_input_id)
        if pair in seen_pairs:
            return _invalid(
                "DUPLICATE_CONNECTION",
                f"Output '{pair[0]}' is connected to input '{pair[1]}' more than once",
            )
        seen_pairs.add(pair)

        if connection.source_output_id in connected_outputs:
            return _invalid(
                "OUTPUT_ALREADY_CONNECTED",
                f"Output '{connection.source_output_id}' already has a connection",
            )
        connected_outputs.add(connection.source_output_id)

    return _valid()


def validate_first_step(flow: "FlowGraph") -> ValidationResult:
    """
    Validate that exactly one Step is marked as the flow's entry point.

    Args:
        flow: The flow graph to check

    Returns:
        ValidationResult with is_valid=True if a unique first step exists
    """
    firsts = [step.slug for step in flow.steps if step.first]

    if not firsts:
        return _invalid("NO_FIRST_STEP", f"Flow '{flow.slug}' has no step marked as first")

    if len(firsts) > 1:
        return _invalid(
            "MULTIPLE_FIRST_STEPS",
            f"Flow '{flow.slug}' has several steps marked as first: {', '.join(firsts)}",
        )

    return _valid()


def validate_reachability(flow: "FlowGraph") -> ValidationResult:
    """
    Validate that every Step can be reached from the first step.

    Steps outside the reachable set are authoring defects: the engine can
    never route a Talk to them.

    Args:
        flow: The flow graph to check

    Returns:
        ValidationResult with is_valid=True if no Step is unreachable
    """
    unreachable = [step.slug for step in flow.unreachable_steps()]
    if unreachable:
        return _invalid(
            "UNREACHABLE_STEPS",
            f"Steps not reachable from the first step: {', '.join(unreachable)}",
        )
    return _valid()


def validate_flow(flow: "FlowGraph") -> List[ValidationResult]:
    """Run every flow-level check and return the failing results."""
    results = [
        validate_connections(flow.steps, flow.connections),
        validate_first_step(flow),
        validate_reachability(flow),
    ]
    return [result for result in results if not result["is_valid"]]
