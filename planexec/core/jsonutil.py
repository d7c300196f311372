"""Tolerant JSON parsing for model output (fenced blocks, stray braces, raw newlines)."""
from __future__ import annotations

import json
import re
from typing import Any

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_STRING_LITERAL = re.compile(r'"((?:[^"\\]|\\.)*)"', re.DOTALL)
_FENCE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")


def strip_code_fences(text: str) -> str:
    text = text.strip()
    m = _FENCE.search(text)
    if m:
        return m.group(1).strip()
    return text


def extract_json_object(text: str) -> str | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def _fix_extra_closing_braces(text: str) -> str:
    fixed = text.strip()
    while fixed.count("}") > fixed.count("{") and fixed.endswith("}"):
        fixed = fixed[:-1].rstrip()
    return fixed


def _escape_newlines_in_strings(text: str) -> str:
    def repl(m: re.Match) -> str:
        return '"' + m.group(1).replace("\n", "\\n").replace("\r", "\\r") + '"'

    return _STRING_LITERAL.sub(repl, text)


def sanitize_json_text(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    text = _fix_extra_closing_braces(text)
    text = _TRAILING_COMMA.sub(r"\1", text)
    return _escape_newlines_in_strings(text)


def loads_lenient(text: str) -> Any:
    """Parse JSON from model output, trying progressively more forgiving readings.

    Order: the text as is, the body of a ``` fence, the outermost {...} span,
    then the sanitized form of that span. Raises ValueError if none parse.
    """
    candidates = [text.strip()]
    unfenced = strip_code_fences(text)
    if unfenced not in candidates:
        candidates.append(unfenced)
    obj = extract_json_object(unfenced)
    if obj is not None and obj not in candidates:
        candidates.append(obj)
    candidates.append(sanitize_json_text(obj if obj is not None else unfenced))
    last_error: Exception | None = None
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = e
    raise ValueError(f"Could not parse JSON: {last_error}")
