import time
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator
from pydantic_core import to_jsonable_python


def jsonable(value: Any) -> Any:
    """Tool values may be arbitrary objects; anything JSON can't carry is rendered with repr()."""
    return to_jsonable_python(value, fallback=repr)


class PlanStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str = ""
    tool: str
    input: Any = None
    reason: str = ""


class Plan(BaseModel):
    steps: list[PlanStep] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_step_ids(self) -> "Plan":
        seen: set[str] = set()
        steps = []
        for i, step in enumerate(self.steps):
            if not step.step_id:
                step = step.model_copy(update={"step_id": f"step{i + 1}"})
            if step.step_id in seen:
                raise ValueError(f"Duplicate step_id in plan: {step.step_id}")
            seen.add(step.step_id)
            steps.append(step)
        self.steps = steps
        return self


class ExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str
    step_index: int
    tool_name: str
    tool_args: Any = None
    tool_result: Any = None
    tool_error: str | None = None
    observation: str = ""
    step_reason: str = ""
    success: bool
    timestamp: float = Field(default_factory=time.time)

    @field_serializer("tool_args", "tool_result", when_used="json")
    def _jsonable(self, value: Any) -> Any:
        return jsonable(value)

    @property
    def skipped(self) -> bool:
        return isinstance(self.tool_result, dict) and bool(self.tool_result.get("skipped"))


class Phase(str, Enum):
    QUESTION = "question"
    PLAN = "plan"
    THOUGHT = "thought"
    ACTION = "action"
    OBSERVATION = "observation"
    FINAL_ANSWER = "final_answer"


class PhaseEvent(BaseModel):
    phase: Phase
    content: str
    status: Literal["complete", "streaming", "final"] = "complete"
    delta: str = ""  # newly streamed text, final_answer only
    attributes: dict[str, str] = Field(default_factory=dict)


class RunStatus(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.DONE, RunStatus.FAILED, RunStatus.ABORTED)


class RecoveryDecision(str, Enum):
    RETRY = "retry"
    REGENERATE = "regenerate"
    SKIP = "skip"


class FailureInfo(BaseModel):
    """What the decision-maker is shown while a step is suspended."""

    tool_name: str
    args: Any = None
    error: str
    step_id: str
    step_index: int
    placeholder: str | None = None
    available_fields: list[str] | None = None

    @field_serializer("args", when_used="json")
    def _jsonable(self, value: Any) -> Any:
        return jsonable(value)


class RunEvent(BaseModel):
    seq: int
    run_id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)
