from __future__ import annotations

from typing import Any


class ConfigError(Exception):
    """Raised when config loading or validation fails."""


class PlanParseError(Exception):
    """Raised when the model's plan payload cannot be turned into a Plan."""


class PlaceholderResolutionError(Exception):
    """Raised when a {{stepN.output.path}} reference cannot be resolved."""

    def __init__(
        self,
        message: str,
        placeholder: str,
        available_fields: list[str],
        tool_name: str,
        step_id: str,
    ):
        super().__init__(message)
        self.placeholder = placeholder
        self.available_fields = available_fields
        self.tool_name = tool_name
        self.step_id = step_id


class ToolInvocationError(Exception):
    """Raised when a tool throws or returns a result with success=False."""

    def __init__(self, message: str, tool_name: str, result: Any = None):
        super().__init__(message)
        self.tool_name = tool_name
        self.result = result


class ToolNotFoundError(ToolInvocationError):
    """Raised when a tool name is not in the registry."""


class StepRegenerationError(Exception):
    """Raised when the model cannot produce a usable replacement step."""


class ModelStreamError(Exception):
    """Raised when plan or final-answer streaming fails."""

    TOKEN_LIMIT_PATTERNS = (
        "token count",
        "exceeds the limit",
        "context_length_exceeded",
        "maximum context length",
        "token limit",
        "prompt too long",
        "input too long",
        "context window",
    )
    NETWORK_PATTERNS = ("network error", "fetch failed", "connection", "econnreset", "etimedout")

    def __init__(self, message: str, stage: str):
        super().__init__(message)
        self.stage = stage

    @property
    def is_token_limit(self) -> bool:
        text = str(self).lower()
        return any(p in text for p in self.TOKEN_LIMIT_PATTERNS)

    @property
    def is_network(self) -> bool:
        text = str(self).lower()
        return any(p in text for p in self.NETWORK_PATTERNS)

    def user_message(self) -> str:
        if self.is_token_limit:
            return (
                f"The {self.stage} request exceeded the model's context limit. "
                "Try a shorter request or fewer steps."
            )
        if self.is_network:
            return f"Network error while generating the {self.stage}: {self}"
        return f"Failed to generate the {self.stage}: {self}"


class ToolWaitTimeout(Exception):
    """Raised when a tool call does not finish within the configured wait."""

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result  # failed ExecutionResult for the step, set by the executor


class RunAborted(Exception):
    """Raised at a suspension point once the abort signal is set."""


class DecisionError(Exception):
    """Raised for a recovery decision with nothing pending, or a second pending failure."""
