import pytest

from planexec.core.config.models import LimitsConfig, OrchestratorConfig
from planexec.tools.registry import ToolRegistry
from tests.fakes import search


@pytest.fixture
def fast_config() -> OrchestratorConfig:
    return OrchestratorConfig(
        env_file_path=None,
        limits=LimitsConfig(tool_wait_timeout_s=2.0, tool_poll_interval_s=0.001, progress_interval_s=0.5),
        content_tools={},
    )


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry([search])
