from __future__ import annotations

from dataclasses import dataclass

from planexec.agent.model import LangChainModelClient, ModelClient, build_chat_model
from planexec.core.config.models import OrchestratorConfig
from planexec.tools.content import ContentProducer, ModelContentProducer
from planexec.tools.registry import ToolRegistry, build_registry


@dataclass
class Runtime:
    """Collaborators shared by every run of the service."""

    config: OrchestratorConfig
    model: ModelClient
    tools: ToolRegistry
    content_producer: ContentProducer | None = None


def get_model_client(config: OrchestratorConfig) -> ModelClient:
    return LangChainModelClient(build_chat_model(config.model))


def build_runtime(config: OrchestratorConfig) -> Runtime:
    model = get_model_client(config)
    return Runtime(
        config=config,
        model=model,
        tools=build_registry(config),
        content_producer=ModelContentProducer(model, config.content_tools),
    )
