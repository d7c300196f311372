"""Resolve {{stepN.output.path}} references in step inputs against the execution log.

Supported forms:
    {{step1.output}}                  whole result of step 1
    {{step1.output.items[0].path}}    dotted / indexed path into the result
    {{step1.result.url}}              same as output
    {{step1.tool_result.success}}     raw tool_result envelope, no unwrapping

A string that is exactly one placeholder resolves to the raw value (dicts stay
dicts). Placeholders embedded in longer text are rendered as text. A reference
that cannot be resolved raises PlaceholderResolutionError; nothing is ever
substituted with an empty value.
"""
from __future__ import annotations

import json
import re
from typing import Any, Sequence

from planexec.core.contracts.orchestrator import ExecutionResult
from planexec.core.exceptions import PlaceholderResolutionError

PLACEHOLDER_RE = re.compile(r"\{\{step(\d+)\.(output|result|tool_result)(?:\.([^}]+))?\}\}")
_PATH_TOKEN_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")

# Fields models commonly confuse with each other when writing paths.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "link": ("href", "url"),
    "href": ("link", "url"),
    "url": ("link", "href"),
    "content": ("text", "body", "raw_content"),
    "text": ("content", "body"),
    "title": ("name", "heading"),
    "name": ("title",),
}

_MISSING = object()
MAX_FIELD_DEPTH = 3


def find_step_result(step_number: int, results: Sequence[ExecutionResult]) -> ExecutionResult | None:
    """Latest result recorded for step N (1-based), preferring a successful one.

    A skipped step falls back to the most recent successful result before it.
    """
    step_id = f"step{step_number}"
    matches = [r for r in results if r.step_id == step_id or r.step_index == step_number - 1]
    if not matches:
        return None
    successful = [r for r in matches if r.success]
    found = successful[-1] if successful else matches[-1]
    if found.skipped:
        position = next(i for i, r in enumerate(results) if r is found)
        for earlier in reversed(results[:position]):
            if earlier.success:
                return earlier
        return None
    return found


def parse_path(path: str) -> list[str | int]:
    tokens: list[str | int] = []
    for name, index in _PATH_TOKEN_RE.findall(path):
        tokens.append(int(index) if index else name)
    return tokens


def _lookup(value: Any, token: str | int) -> Any:
    if isinstance(token, int):
        if isinstance(value, (list, tuple)) and -len(value) <= token < len(value):
            return value[token]
        return _MISSING
    if isinstance(value, dict):
        if token in value:
            return value[token]
        for alias in FIELD_ALIASES.get(token, ()):
            if alias in value:
                return value[alias]
        return _MISSING
    if isinstance(value, (list, tuple)) and token.isdigit():
        return _lookup(value, int(token))
    return _MISSING


def navigate(value: Any, path: str) -> Any:
    """Walk a dotted/indexed path; returns the module's missing sentinel when a hop fails."""
    current = value
    for token in parse_path(path):
        current = _lookup(current, token)
        if current is _MISSING:
            return _MISSING
    return current


def _unwrap_result(tool_result: Any) -> Any:
    data = tool_result
    if isinstance(data, dict) and "result" in data:
        data = data["result"]
    # MCP-style envelope: {"content": [{"type": "text", "text": "<json>"}]}
    if isinstance(data, dict) and isinstance(data.get("content"), list) and data["content"]:
        first = data["content"][0]
        if isinstance(first, dict) and first.get("type") == "text" and isinstance(first.get("text"), str):
            try:
                return json.loads(first["text"])
            except json.JSONDecodeError:
                return first["text"]
    return data


def extract_value(result: ExecutionResult, source: str, path: str | None) -> Any:
    if source == "tool_result":
        return result.tool_result if not path else navigate(result.tool_result, path)
    data = _unwrap_result(result.tool_result)
    if data is None or not path:
        return data if data is not None else _MISSING
    if isinstance(data, (str, int, float, bool)):
        return data
    return navigate(data, path)


def available_fields(value: Any, prefix: str = "", depth: int = 0) -> list[str]:
    """Enumerate field paths of a result, e.g. ["items", "items[0]", "items[0].path"]."""
    if depth >= MAX_FIELD_DEPTH or not isinstance(value, dict):
        return []
    fields: list[str] = []
    for key, item in value.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        fields.append(path)
        if isinstance(item, list) and item:
            fields.append(f"{path}[0]")
            fields.extend(available_fields(item[0], f"{path}[0]", depth + 1))
        elif isinstance(item, dict):
            fields.extend(available_fields(item, path, depth + 1))
    return fields


def value_to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def _resolve_match(m: re.Match, results: Sequence[ExecutionResult]) -> Any:
    step_number = int(m.group(1))
    source = m.group(2)
    path = m.group(3)
    placeholder = m.group(0)
    result = find_step_result(step_number, results)
    if result is None:
        raise PlaceholderResolutionError(
            f"No result available for step{step_number} when resolving {placeholder}",
            placeholder=placeholder,
            available_fields=[],
            tool_name="unknown",
            step_id=f"step{step_number}",
        )
    value = extract_value(result, source, path)
    if value is _MISSING:
        data = result.tool_result if source == "tool_result" else _unwrap_result(result.tool_result)
        fields = available_fields(data)
        raise PlaceholderResolutionError(
            f"Cannot resolve {placeholder}: field '{path or source}' not found in the output of "
            f"{result.step_id} ({result.tool_name}). Available fields: {', '.join(fields) or '(none)'}",
            placeholder=placeholder,
            available_fields=fields,
            tool_name=result.tool_name,
            step_id=result.step_id,
        )
    return value


def resolve_string(text: str, results: Sequence[ExecutionResult]) -> Any:
    whole = PLACEHOLDER_RE.fullmatch(text.strip())
    if whole:
        return _resolve_match(whole, results)
    return PLACEHOLDER_RE.sub(lambda m: value_to_text(_resolve_match(m, results)), text)


def resolve_placeholders(value: Any, results: Sequence[ExecutionResult]) -> Any:
    """Return a copy of value with every placeholder replaced. Raises PlaceholderResolutionError."""
    if isinstance(value, str):
        return resolve_string(value, results)
    if isinstance(value, dict):
        return {k: resolve_placeholders(v, results) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_placeholders(v, results) for v in value]
    return value
