import json
from pathlib import Path

from planexec.core.config.env import load_env_from_path
from planexec.core.config.models import OrchestratorConfig
from planexec.core.exceptions import ConfigError


def load_config(config_path: str | Path, project_root: Path | None = None) -> OrchestratorConfig:
    root = project_root or Path.cwd()
    path = Path(config_path)
    if not path.is_absolute():
        path = root / path
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    try:
        config = OrchestratorConfig.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid config schema in {path}: {e}") from e
    load_env_from_path(config.env_file_path, root)
    return config
