"""Content production for tools that write prose (create, append, insert, ...)."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, Sequence

from langchain_core.prompts import PromptTemplate

from planexec.agent.model import ModelClient
from planexec.core.contracts.agent import ChatMessage
from planexec.core.contracts.orchestrator import ExecutionResult, PlanStep
from planexec.core.jsonutil import strip_code_fences
from planexec.orchestrator.reporter import safe_json, summarize_tool_result

log = logging.getLogger("content")


PROMPT = """You are writing the content for a "{tool}" tool call{target}.

User request: {query}
Purpose of this step: {reason}

Information gathered by earlier steps:
{collected}

Guidance for the content (may be a draft, a template or raw source material):
{guidance}

Write only the final content, formatted as Markdown where it fits. No preamble, no explanation."""


class ContentProducer(Protocol):
    async def produce(
        self,
        step: PlanStep,
        tool_input: Any,
        results: Sequence[ExecutionResult],
        query: str,
        abort: asyncio.Event | None = None,
    ) -> Any: ...


class ModelContentProducer:
    """Asks the model for the text a content tool should write and puts it in the tool's content field."""

    def __init__(self, model: ModelClient, content_fields: dict[str, str]):
        self.model = model
        self.content_fields = content_fields

    def build_prompt(self, step: PlanStep, tool_input: Any, results: Sequence[ExecutionResult], query: str) -> str:
        field = self.content_fields.get(step.tool, "content")
        if isinstance(tool_input, dict):
            guidance = tool_input.get(field) or ""
            path = tool_input.get("path")
        else:
            guidance, path = tool_input or "", None
        collected = [
            {"step_id": r.step_id, "tool": r.tool_name, "result": summarize_tool_result(r.tool_result, max_len=1000)}
            for r in results
            if r.success
        ]
        return PromptTemplate.from_template(PROMPT).format(
            tool=step.tool,
            target=f" on {path}" if path else "",
            query=query,
            reason=step.reason or "(none given)",
            collected=safe_json(collected) if collected else "(nothing)",
            guidance=guidance if isinstance(guidance, str) else safe_json(guidance),
        )

    async def produce(
        self,
        step: PlanStep,
        tool_input: Any,
        results: Sequence[ExecutionResult],
        query: str,
        abort: asyncio.Event | None = None,
    ) -> Any:
        field = self.content_fields.get(step.tool, "content")
        prompt = self.build_prompt(step, tool_input, results, query)
        text = await self.model.complete([ChatMessage(role="user", content=prompt)], abort)
        content = strip_code_fences(text) if text.lstrip().startswith("```") else text.strip()
        log.info("produced %s chars for %s.%s", len(content), step.tool, field)
        if isinstance(tool_input, dict):
            return {**tool_input, field: content}
        return {field: content}
