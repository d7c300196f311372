"""AI-assisted rewrite of a failed plan step."""
from __future__ import annotations

import asyncio
import json
import logging
import re
from enum import Enum
from typing import Any, Sequence

from langchain_core.prompts import PromptTemplate

from planexec.agent.model import ModelClient
from planexec.core.contracts.agent import ChatMessage
from planexec.core.contracts.orchestrator import ExecutionResult, PlanStep
from planexec.core.exceptions import (
    PlaceholderResolutionError,
    RunAborted,
    StepRegenerationError,
    ToolNotFoundError,
)
from planexec.core.jsonutil import loads_lenient
from planexec.orchestrator.placeholders import available_fields
from planexec.tools.registry import ToolRegistry

log = logging.getLogger("recovery")


class RegenerationStrategy(str, Enum):
    FIX_PARAMETERS = "fix_parameters"
    ALTERNATIVE_TOOL = "alternative_tool"
    AUTO = "auto"  # the model picks one of the above


# Errors meaning the tool itself cannot be used right now
_UNUSABLE_TOOL = re.compile(
    r"api[ _-]?key|unauthori[sz]ed|forbidden|\b40[13]\b|credential|not configured|authenticat"
    r"|unavailable|\b50[23]\b|connection (?:refused|reset|error)|connecterror|could not connect"
    r"|name or service not known|enotfound|econnrefused|rate limit|quota",
    re.IGNORECASE,
)
# Errors meaning the call itself was malformed
_BAD_ARGUMENTS = re.compile(
    r"validation error|field required|missing required|invalid (?:argument|parameter|input|value)"
    r"|unexpected (?:keyword )?argument|type error|typeerror|must be (?:a|an|of)|expected .* got",
    re.IGNORECASE,
)


def choose_strategy(error: Exception) -> RegenerationStrategy:
    if isinstance(error, PlaceholderResolutionError):
        return RegenerationStrategy.FIX_PARAMETERS
    if isinstance(error, ToolNotFoundError):
        return RegenerationStrategy.ALTERNATIVE_TOOL
    text = f"{type(error).__name__}: {error}"
    if _UNUSABLE_TOOL.search(text):
        return RegenerationStrategy.ALTERNATIVE_TOOL
    if _BAD_ARGUMENTS.search(text):
        return RegenerationStrategy.FIX_PARAMETERS
    return RegenerationStrategy.AUTO


FAILED_STEP = """## Failed step
step_id: {step_id}
tool: {tool}
reason: {reason}
input:
{input}

## Error
{error_type}: {error}
"""

FIX_PARAMETERS_PROMPT = """You repair a failed step of a tool execution plan. The tool call was malformed; keep the same tool and fix its input.

{failed_step}
{placeholder_help}
## Tool signature (must be followed)
{signature}

## Results of earlier steps
{previous_results}

Requirements:
1. Argument types and names match the tool signature; all required arguments are present.
2. To use an earlier result, reference it as {{{{stepN.output.field}}}} with a field listed above, or write the value directly.

Output only one JSON object, no markdown:
{{"step_id": "{step_id}", "tool": "{tool}", "input": {{"<param>": "<value>"}}, "reason": "<why>"}}"""

ALTERNATIVE_TOOL_PROMPT = """You repair a failed step of a tool execution plan. The tool "{tool}" cannot be used right now (for example a missing credential or an unavailable service). Pick a different tool from the catalog that achieves the same purpose: {reason}

{failed_step}
## Available tools
{catalog}

## Results of earlier steps
{previous_results}

Output only one JSON object, no markdown, using a tool from the list above:
{{"step_id": "{step_id}", "tool": "<alternative tool>", "input": {{"<param>": "<value>"}}, "reason": "<why>"}}"""

AUTO_PROMPT = """You repair a failed step of a tool execution plan. Decide whether the call was malformed (fix its input and keep the tool) or whether the tool cannot be used (switch to another tool from the catalog with the same purpose).

{failed_step}
## Available tools
{catalog}

## Results of earlier steps
{previous_results}

Output only one JSON object, no markdown:
{{"strategy": "fix_parameters" | "alternative_tool", "step_id": "{step_id}", "tool": "<tool>", "input": {{"<param>": "<value>"}}, "reason": "<why>"}}"""

PLACEHOLDER_HELP = """
## Placeholder problem
The input referenced {placeholder}, which does not exist in the output of {ref_step} ({ref_tool}).
Fields that do exist: {fields}
Do not reference the missing field again. Use one of the listed fields, or write the content directly.
"""


def summarize_previous_results(results: Sequence[ExecutionResult]) -> list[dict[str, Any]]:
    summary = []
    for r in results:
        if not r.success:
            continue
        data = r.tool_result
        if isinstance(data, dict) and "result" in data:
            data = data["result"]
        sample = json.dumps(data, ensure_ascii=False, default=str)
        summary.append(
            {
                "step_id": r.step_id,
                "tool_name": r.tool_name,
                "available_fields": available_fields(data),
                "sample_data": sample[:300],
            }
        )
    return summary


class StepRegenerator:
    def __init__(self, model: ModelClient, tools: ToolRegistry):
        self.model = model
        self.tools = tools

    def build_prompt(
        self,
        strategy: RegenerationStrategy,
        step: PlanStep,
        error: Exception,
        results: Sequence[ExecutionResult],
    ) -> str:
        failed_step = FAILED_STEP.format(
            step_id=step.step_id,
            tool=step.tool,
            reason=step.reason or "(none given)",
            input=json.dumps(step.input, indent=2, ensure_ascii=False, default=str),
            error_type=type(error).__name__,
            error=error,
        )
        previous = json.dumps(summarize_previous_results(results), indent=2, ensure_ascii=False)
        values = {"failed_step": failed_step, "previous_results": previous, "step_id": step.step_id, "tool": step.tool}
        if strategy is RegenerationStrategy.FIX_PARAMETERS:
            help_text = ""
            if isinstance(error, PlaceholderResolutionError):
                help_text = PLACEHOLDER_HELP.format(
                    placeholder=error.placeholder,
                    ref_step=error.step_id,
                    ref_tool=error.tool_name,
                    fields=", ".join(error.available_fields) or "(none)",
                )
            signature = (
                json.dumps(self.tools.input_schema(step.tool), indent=2, ensure_ascii=False)
                if self.tools.has(step.tool)
                else "(tool not in catalog)"
            )
            template, values = FIX_PARAMETERS_PROMPT, {**values, "placeholder_help": help_text, "signature": signature}
        elif strategy is RegenerationStrategy.ALTERNATIVE_TOOL:
            template, values = ALTERNATIVE_TOOL_PROMPT, {**values, "reason": step.reason or step.tool, "catalog": self.tools.describe()}
        else:
            template, values = AUTO_PROMPT, {**values, "catalog": self.tools.describe()}
        return PromptTemplate.from_template(template).format(**values)

    def parse_step(self, text: str, original: PlanStep) -> PlanStep:
        try:
            data = loads_lenient(text)
        except ValueError as e:
            raise StepRegenerationError(f"Regenerated step is not valid JSON: {e}") from e
        if not isinstance(data, dict) or not data.get("tool") or "input" not in data:
            raise StepRegenerationError("Regenerated step must contain 'tool' and 'input'")
        tool = str(data["tool"])
        if not self.tools.has(tool):
            raise StepRegenerationError(f"Regenerated step uses unknown tool '{tool}'")
        if data.get("step_id") and data["step_id"] != original.step_id:
            log.warning("model renamed %s to %s; keeping %s", original.step_id, data["step_id"], original.step_id)
        return PlanStep(
            step_id=original.step_id,
            tool=tool,
            input=data["input"],
            reason=str(data.get("reason") or original.reason),
        )

    async def regenerate(
        self,
        step: PlanStep,
        error: Exception,
        results: Sequence[ExecutionResult],
        abort: asyncio.Event | None = None,
    ) -> PlanStep:
        strategy = choose_strategy(error)
        log.info("regenerating %s (%s) with strategy %s", step.step_id, step.tool, strategy.value)
        prompt = self.build_prompt(strategy, step, error, results)
        try:
            text = await self.model.complete([ChatMessage(role="user", content=prompt)], abort)
        except Exception as e:
            raise StepRegenerationError(f"Model call failed during regeneration: {e}") from e
        if abort is not None and abort.is_set():
            raise RunAborted("aborted during regeneration")
        new_step = self.parse_step(text, step)
        log.info("regenerated %s: %s → %s", step.step_id, step.tool, new_step.tool)
        return new_step
