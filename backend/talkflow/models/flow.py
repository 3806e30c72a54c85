# /talkflow/models/flow.py

from collections import deque
from enum import Enum
from typing import Dict, List, Optional, Set
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from talkflow.utils.errors import StepNotFoundError
from talkflow.workflows.validator import validate_connections


class InputType(str, Enum):
    """How a Step decides it has been completed."""
    FULLY_COMPLETED = "fully_completed"
    NOT_COMPLETED_AFTER_ATTEMPTS = "not_completed_after_attempts"
    ANY = "any"


class Question(BaseModel):
    """Something the agent has to find out while the Talk sits on a Step."""
    model_config = ConfigDict(frozen=True)

    id: str
    slug: str
    objective: Optional[str] = None
    prompt: str = ""
    importance: int = Field(default=1, ge=0)
    few_shot_positive: List[str] = Field(default_factory=list)
    few_shot_negative: List[str] = Field(default_factory=list)


class StepInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    slug: str
    name: str = ""
    type: InputType = InputType.FULLY_COMPLETED
    prompt: Optional[str] = None
    # Only meaningful for NOT_COMPLETED_AFTER_ATTEMPTS
    max_attempts: Optional[int] = Field(default=None, ge=1)


class StepOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    slug: str
    name: str = ""
    description: Optional[str] = None
    conditional: Optional[str] = Field(default=None, description="Natural-language condition evaluated by the AI service")
    keywords: List[str] = Field(default_factory=list, description="Phrases fuzzily matched against the latest inbound message")

    @property
    def is_default(self) -> bool:
        return not self.conditional and not self.keywords


class Step(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    slug: str
    name: str
    first: bool = False
    objective: Optional[str] = None
    prompt: Optional[str] = None
    questions: List[Question] = Field(default_factory=list)
    inputs: List[StepInput] = Field(default_factory=list)
    outputs: List[StepOutput] = Field(default_factory=list)


class Connection(BaseModel):
    """Directed edge from one Step's Output to another Step's Input."""
    model_config = ConfigDict(frozen=True)

    source_output_id: str
    target_input_id: str


class FlowGraph(BaseModel):
    """
    Immutable snapshot of an authored flow.

    Steps, Inputs, Outputs and Connections are value objects indexed by id.
    Talks never mutate the graph; routing state lives on the Talk.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    slug: str
    name: str = ""
    version: int = 1
    organization_id: Optional[str] = None
    steps: List[Step] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)

    _steps_by_id: Dict[str, Step] = PrivateAttr(default_factory=dict)
    _steps_by_slug: Dict[str, Step] = PrivateAttr(default_factory=dict)
    _step_by_input_id: Dict[str, Step] = PrivateAttr(default_factory=dict)
    _connection_by_output_id: Dict[str, Connection] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def check_structure(self):
        result = validate_connections(self.steps, self.connections)
        if not result["is_valid"]:
            raise ValueError(result["message"])
        return self

    def model_post_init(self, __context) -> None:
        for step in self.steps:
            self._steps_by_id[step.id] = step
            self._steps_by_slug[step.slug] = step
            for step_input in step.inputs:
                self._step_by_input_id[step_input.id] = step
        for connection in self.connections:
            self._connection_by_output_id[connection.source_output_id] = connection

    # ==================== Lookups ====================

    def find_step(self, step_id: str) -> Step:
        step = self._steps_by_id.get(step_id)
        if step is None:
            raise StepNotFoundError(f"Step '{step_id}' does not exist in flow '{self.slug}'")
        return step

    def step_by_slug(self, slug: Optional[str]) -> Optional[Step]:
        if not slug:
            return None
        return self._steps_by_slug.get(slug)

    def outputs_of(self, step: Step) -> List[StepOutput]:
        return list(step.outputs)

    def inputs_of(self, step: Step) -> List[StepInput]:
        return list(step.inputs)

    def connection_from(self, output_id: str) -> Optional[Connection]:
        return self._connection_by_output_id.get(output_id)

    def target_step(self, output: StepOutput) -> Optional[Step]:
        """Step an Output leads to, or None for a dead-end Output."""
        connection = self.connection_from(output.id)
        if connection is None:
            return None
        return self._step_by_input_id.get(connection.target_input_id)

    @property
    def first_step(self) -> Optional[Step]:
        """The unique entry step. Zero or several `first` steps make the flow degenerate."""
        firsts = [step for step in self.steps if step.first]
        if len(firsts) != 1:
            return None
        return firsts[0]

    # ==================== Reachability ====================

    def _breadth_first(self) -> List[Step]:
        start = self.first_step
        if start is None:
            return []

        ordered: List[Step] = []
        visited: Set[str] = set()
        queue = deque([start])
        while queue:
            step = queue.popleft()
            if step.id in visited:
                continue
            visited.add(step.id)
            ordered.append(step)
            for output in step.outputs:
                target = self.target_step(output)
                if target is not None and target.id not in visited:
                    queue.append(target)
        return ordered

    def reachable_steps(self) -> Set[str]:
        """Ids of the steps the engine can ever route a Talk to."""
        return {step.id for step in self._breadth_first()}

    def unreachable_steps(self) -> List[Step]:
        reachable = self.reachable_steps()
        return [step for step in self.steps if step.id not in reachable]

    def ordered_steps(self) -> List[Step]:
        """Steps in routing order from the first step, unreachable ones appended in authoring order."""
        ordered = self._breadth_first()
        seen = {step.id for step in ordered}
        ordered.extend(step for step in self.steps if step.id not in seen)
        return ordered
