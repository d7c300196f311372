from typing import Any

from pydantic import BaseModel, Field

from planexec.core.contracts.agent import ChatMessage
from planexec.core.contracts.orchestrator import (
    ExecutionResult,
    FailureInfo,
    PlanStep,
    RecoveryDecision,
    RunStatus,
)


class RunRequest(BaseModel):
    query: str
    history: list[ChatMessage] = Field(default_factory=list)


class RunResponse(BaseModel):
    run_id: str
    status: RunStatus


class DecisionRequest(BaseModel):
    decision: RecoveryDecision


class RunSnapshot(BaseModel):
    run_id: str
    query: str
    status: RunStatus
    steps: list[PlanStep] = Field(default_factory=list)
    results: list[ExecutionResult] = Field(default_factory=list)
    current_step_index: int | None = None
    pending_failure: FailureInfo | None = None
    final_answer: str | None = None
    error: str | None = None
    usage: dict[str, Any] | None = None
