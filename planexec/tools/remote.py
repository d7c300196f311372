from __future__ import annotations

from typing import Any

import httpx
from langchain_core.tools import StructuredTool, ToolException
from pydantic import BaseModel, Field, create_model

from planexec.core.config.models import RemoteToolConfig

_JSON_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def schema_to_model(name: str, schema: dict[str, Any]) -> type[BaseModel]:
    """Pydantic args model from a JSON schema object (top-level properties only)."""
    required = set(schema.get("required") or [])
    fields: dict[str, Any] = {}
    for prop, prop_schema in (schema.get("properties") or {}).items():
        py_type = _JSON_TYPES.get(prop_schema.get("type"), Any)
        description = prop_schema.get("description", "")
        if prop in required:
            fields[prop] = (py_type, Field(..., description=description))
        else:
            optional = py_type if py_type is Any else py_type | None
            fields[prop] = (optional, Field(prop_schema.get("default"), description=description))
    return create_model(f"{name}_args", **fields)


def create_remote_tool(definition: RemoteToolConfig) -> StructuredTool:
    """LangChain tool that POSTs its arguments to a tool server and returns the JSON reply."""

    async def _call(**kwargs: Any) -> Any:
        async with httpx.AsyncClient(timeout=definition.timeout_s) as client:
            try:
                r = await client.post(definition.url, json=kwargs)
            except httpx.HTTPError as e:
                raise ToolException(f"{definition.name} unavailable: {e}") from e
        if r.status_code != 200:
            raise ToolException(f"HTTP {r.status_code}: {r.text[:500]}")
        try:
            data = r.json()
        except ValueError:
            return r.text
        if isinstance(data, dict) and "result" in data and "success" not in data:
            return data["result"]
        return data

    return StructuredTool.from_function(
        coroutine=_call,
        name=definition.name,
        description=definition.description,
        args_schema=schema_to_model(definition.name, definition.parameters),
    )
