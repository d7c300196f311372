from planexec.core.config.loader import load_config
from planexec.core.config.models import LimitsConfig, ModelConfig, OrchestratorConfig, RemoteToolConfig
from planexec.core.exceptions import (
    ConfigError,
    DecisionError,
    ModelStreamError,
    PlaceholderResolutionError,
    PlanParseError,
    RunAborted,
    StepRegenerationError,
    ToolInvocationError,
    ToolNotFoundError,
    ToolWaitTimeout,
)

__all__ = [
    "load_config",
    "LimitsConfig",
    "ModelConfig",
    "OrchestratorConfig",
    "RemoteToolConfig",
    "ConfigError",
    "DecisionError",
    "ModelStreamError",
    "PlaceholderResolutionError",
    "PlanParseError",
    "RunAborted",
    "StepRegenerationError",
    "ToolInvocationError",
    "ToolNotFoundError",
    "ToolWaitTimeout",
]
