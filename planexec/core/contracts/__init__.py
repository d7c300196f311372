from planexec.core.contracts.agent import ChatMessage, StreamChunk
from planexec.core.contracts.gateway import DecisionRequest, RunRequest, RunResponse, RunSnapshot
from planexec.core.contracts.orchestrator import (
    ExecutionResult,
    FailureInfo,
    Phase,
    PhaseEvent,
    Plan,
    PlanStep,
    RecoveryDecision,
    RunEvent,
    RunStatus,
)

__all__ = [
    "ChatMessage",
    "StreamChunk",
    "DecisionRequest",
    "RunRequest",
    "RunResponse",
    "RunSnapshot",
    "ExecutionResult",
    "FailureInfo",
    "Phase",
    "PhaseEvent",
    "Plan",
    "PlanStep",
    "RecoveryDecision",
    "RunEvent",
    "RunStatus",
]
