from __future__ import annotations

import json
import logging
import time
from typing import Any, Iterable

from langchain_core.tools import BaseTool

from planexec.core.config.models import OrchestratorConfig
from planexec.core.exceptions import ToolNotFoundError
from planexec.tools.remote import create_remote_tool

log = logging.getLogger("tools")


def _preview(value: Any, max_len: int = 150) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    return (text[:max_len] + "…") if len(text) > max_len else text


class ToolRegistry:
    """Tool catalog and invocation facility over LangChain tools."""

    def __init__(self, tools: Iterable[BaseTool] = ()):
        self._tools: dict[str, BaseTool] = {}
        for t in tools:
            self.register(t)

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            log.warning("tool %s registered twice; keeping the latest", tool.name)
        self._tools[tool.name] = tool

    def names(self) -> list[str]:
        return list(self._tools)

    def has(self, name: str) -> bool:
        return name in self._tools

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def get(self, name: str) -> BaseTool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(
                f"Tool '{name}' not found. Available tools: {', '.join(self._tools) or '(none)'}",
                tool_name=name,
            )
        return tool

    def input_schema(self, name: str) -> dict[str, Any]:
        schema = self.get(name).args_schema
        if schema is None:
            return {"type": "object", "properties": {}}
        if isinstance(schema, dict):
            return schema
        return schema.model_json_schema()

    def describe(self) -> str:
        """Catalog text embedded in the planning prompt."""
        if not self._tools:
            return "(no tools available)"
        lines = []
        for name, tool in self._tools.items():
            schema = self.input_schema(name)
            params = {"properties": schema.get("properties", {}), "required": schema.get("required", [])}
            lines.append(f"- {name}: {tool.description}\n  Parameters: {json.dumps(params, ensure_ascii=False)}")
        return "\n".join(lines)

    def map_input(self, name: str, value: Any) -> dict[str, Any]:
        """Coerce a resolved step input into the tool's arguments object.

        A bare value goes to the first required parameter, or the first
        declared one when none is required.
        """
        if value is None:
            return {}
        if isinstance(value, dict):
            return value
        schema = self.input_schema(name)
        required = schema.get("required") or []
        properties = list((schema.get("properties") or {}).keys())
        target = required[0] if required else (properties[0] if properties else "input")
        return {target: value}

    async def execute(self, name: str, args: dict[str, Any]) -> Any:
        tool = self.get(name)
        log.info("→ %s: %s", name, _preview(args))
        start = time.perf_counter()
        try:
            result = await tool.ainvoke(args)
        except Exception as e:
            latency_ms = int((time.perf_counter() - start) * 1000)
            log.warning("← %s: failed %s (%s ms)", name, e, latency_ms)
            raise
        latency_ms = int((time.perf_counter() - start) * 1000)
        log.info("← %s: %s (%s ms)", name, _preview(result), latency_ms)
        return result


def build_registry(config: OrchestratorConfig, extra_tools: Iterable[BaseTool] = ()) -> ToolRegistry:
    """Registry with every remote tool from config plus any in-process tools."""
    registry = ToolRegistry(create_remote_tool(t) for t in config.tools)
    for t in extra_tools:
        registry.register(t)
    return registry
