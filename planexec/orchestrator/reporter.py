"""Final-answer prompt built from the execution log, with bounded result summaries."""
from __future__ import annotations

import json
from typing import Any, Sequence

from langchain_core.prompts import PromptTemplate

from planexec.core.config.models import LimitsConfig
from planexec.core.contracts.orchestrator import ExecutionResult


PROMPT = """# Role
You answer the user's request using the results of the tools that were run for it.

# Tool execution results
{executions}

# Execution summary
{execution_summary}

# Rules
1. Base the answer on the tool results above. Do not invent information.
2. Answer the request directly; do not narrate the execution process.
3. If a step failed or was skipped and the results are not enough to answer fully, say so plainly.
4. Write naturally, as in a normal conversation.

# Original user request
{query}

Wrap the answer in <final_answer></final_answer>."""


def safe_summary(
    value: Any,
    max_depth: int = 10,
    max_string: int = 1000,
    max_keys: int = 50,
) -> Any:
    """JSON-safe copy of value with depth, string length and mapping size bounded."""
    seen: set[int] = set()

    def walk(v: Any, depth: int) -> Any:
        if depth > max_depth:
            return "[Max Depth Reached]"
        if v is None or isinstance(v, (bool, int, float)):
            return v
        if isinstance(v, str):
            return v[:max_string] + "...[truncated]" if len(v) > max_string else v
        if callable(v):
            return "[Function]"
        if isinstance(v, (dict, list, tuple)):
            if id(v) in seen:
                return "[Circular Reference]"
            seen.add(id(v))
            try:
                if isinstance(v, dict):
                    if len(v) > max_keys:
                        return f"[Large Object - {len(v)} keys]"
                    return {str(k): walk(item, depth + 1) for k, item in v.items()}
                return [walk(item, depth + 1) for item in v]
            finally:
                seen.discard(id(v))
        if hasattr(v, "model_dump"):
            return walk(v.model_dump(), depth)
        return repr(v)

    return walk(value, 0)


def safe_json(value: Any, limits: LimitsConfig | None = None, indent: int | None = 2) -> str:
    limits = limits or LimitsConfig()
    bounded = safe_summary(value, limits.summary_max_depth, limits.summary_max_string, limits.summary_max_keys)
    return json.dumps(bounded, indent=indent, ensure_ascii=False)


def summarize_tool_result(tool_result: Any, max_len: int = 200) -> str:
    if tool_result is None or tool_result == "" or tool_result == {}:
        return "No result"
    result = tool_result
    if isinstance(result, dict) and result.get("result"):
        result = result["result"]
    if isinstance(result, dict):
        content = result.get("content")
        if isinstance(content, list) and content:
            content = content[0]
            if isinstance(content, dict):
                content = content.get("text")
        if isinstance(content, str):
            result = content
        elif isinstance(result.get("text"), str):
            result = result["text"]
        else:
            keys = [str(k) for k in result]
            more = "..." if len(keys) > 5 else ""
            return f"Object with keys: {', '.join(keys[:5])}{more}"
    text = result if isinstance(result, str) else json.dumps(safe_summary(result), ensure_ascii=False)
    return text[:max_len] + "..." if len(text) > max_len else text


def _status_label(r: ExecutionResult) -> str:
    if r.success:
        return "success"
    return "skipped" if r.skipped else "failed"


def build_execution_summary(results: Sequence[ExecutionResult]) -> str:
    if not results:
        return "No tools were run."
    lines = []
    for i, r in enumerate(results, 1):
        line = f"{i}. {r.tool_name} ({r.step_id}): {_status_label(r)}. Purpose: {r.step_reason or 'no description'}"
        if not r.success and r.tool_error:
            err = r.tool_error[:100] + "..." if len(r.tool_error) > 100 else r.tool_error
            line += f". Error: {err}"
        lines.append(line)
    return "\n".join(lines)


def build_final_answer_prompt(
    query: str,
    results: Sequence[ExecutionResult],
    limits: LimitsConfig | None = None,
) -> str:
    executions = [
        {
            "step": i,
            "step_id": r.step_id or f"step_{i}",
            "tool": r.tool_name or "unknown",
            "success": r.success,
            "result_summary": summarize_tool_result(r.tool_result),
            "result": r.tool_result,
            "timestamp": r.timestamp,
        }
        for i, r in enumerate(results, 1)
    ]
    return PromptTemplate.from_template(PROMPT).format(
        executions=safe_json({"executions": executions}, limits),
        execution_summary=build_execution_summary(results),
        query=query,
    )
