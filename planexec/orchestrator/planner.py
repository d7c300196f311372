"""Planning prompt and plan materialization from the model's <plan> payload."""
from __future__ import annotations

from typing import Any

from langchain_core.prompts import PromptTemplate
from pydantic import ValidationError

from planexec.core.contracts.orchestrator import Plan
from planexec.core.exceptions import PlanParseError
from planexec.core.jsonutil import loads_lenient


# Only {tool_catalog} and {query} are variables; literal braces are doubled
PLAN_PROMPT = """# Role
You are a planning assistant. Break the user's request into an ordered list of tool calls that, run one after another, gather everything needed to answer it.

# Rules
1. Use only tools listed under "Available tools". Never invent tool names; check the spelling against the list.
2. Each step calls exactly one tool. Steps run strictly in order, one at a time.
3. "input" must match the tool's parameter schema: a JSON object with the required parameters, or a plain string for single-parameter tools.
4. A later step can use the output of an earlier one with a placeholder of the form {{{{stepN.output.field}}}}, for example {{{{step1.output.path}}}} or {{{{step2.output.items[0].url}}}}. {{{{stepN.output}}}} refers to the whole output.
5. Only reference fields an earlier tool actually returns, and only earlier steps.
6. Give every step a unique step_id ("step1", "step2", ...) and a short reason.
7. Do not add draft or review steps. Produce final content directly.
8. If no tool is needed, skip the plan and answer directly inside <final_answer></final_answer>.

# Output format
<plan>
{{
  "steps": [
    {{"step_id": "step1", "tool": "<tool name>", "input": {{"<param>": "<value>"}}, "reason": "<why this step>"}},
    {{"step_id": "step2", "tool": "<tool name>", "input": {{"<param>": "{{{{step1.output.field}}}}"}}, "reason": "<why this step>"}}
  ]
}}
</plan>

A single tool call, when written out, looks like:
<action step_id="step1">
<use_mcp_tool>
<tool_name>tool name</tool_name>
<arguments>{{"param": "value"}}</arguments>
</use_mcp_tool>
</action>

# Available tools
{tool_catalog}

# User request
{query}

Write the plan now."""


def build_plan_prompt(query: str, tool_catalog: str) -> str:
    return PromptTemplate.from_template(PLAN_PROMPT).format(query=query, tool_catalog=tool_catalog)


def parse_plan(content: str) -> Plan:
    """Build a Plan from a <plan> body (JSON object with "steps", or a bare list of steps)."""
    try:
        data: Any = loads_lenient(content)
    except ValueError as e:
        raise PlanParseError(f"Plan is not valid JSON: {e}") from e
    if isinstance(data, list):
        data = {"steps": data}
    if not isinstance(data, dict) or not isinstance(data.get("steps"), list):
        raise PlanParseError("Plan JSON must contain a 'steps' list")
    if not data["steps"]:
        raise PlanParseError("Plan has no steps")
    try:
        return Plan.model_validate({"steps": data["steps"]})
    except ValidationError as e:
        raise PlanParseError(f"Invalid plan: {e}") from e
