from planexec.core.config.env import load_env_from_path
from planexec.core.config.loader import load_config
from planexec.core.config.models import LimitsConfig, ModelConfig, OrchestratorConfig, RemoteToolConfig

__all__ = [
    "load_config",
    "load_env_from_path",
    "LimitsConfig",
    "ModelConfig",
    "OrchestratorConfig",
    "RemoteToolConfig",
]
