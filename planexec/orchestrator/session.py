"""Per-run structured prompt state: original intent, step cursor and tool-result messages."""
from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any

from planexec.core.contracts.agent import ChatMessage
from planexec.orchestrator.reporter import safe_summary, summarize_tool_result

log = logging.getLogger("session")


class StructuredPromptSession:
    def __init__(self) -> None:
        self.session_id = ""
        self.original_intent = ""
        self.current_step = 0
        self.total_steps = 0
        self.execution_history: list[dict[str, Any]] = []

    @property
    def active(self) -> bool:
        return bool(self.session_id)

    def initialize(self, query: str, total_steps: int = 0) -> None:
        self.session_id = uuid.uuid4().hex
        self.original_intent = query
        self.current_step = 0
        self.total_steps = total_steps
        self.execution_history = []
        log.debug("session %s started", self.session_id)

    def set_total_steps(self, total_steps: int) -> None:
        self.total_steps = total_steps

    def create_user_prompt(self, current_query: str, additional_context: str | None = None) -> str:
        intent = {
            "original_intent": self.original_intent,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "context": {"session_id": self.session_id, "timestamp": time.time(), "mode": "plan_execute"},
        }
        if self.execution_history:
            intent["previous_results"] = self.execution_history
        message = (
            f"<original_user_intent>\n{json.dumps(intent, indent=2, ensure_ascii=False)}\n</original_user_intent>\n\n"
            f"<current_query>\n{current_query}\n</current_query>"
        )
        if additional_context:
            message += f"\n\n<additional_context>\n{additional_context}\n</additional_context>"
        return message

    def create_tool_result_message(
        self,
        step_id: str,
        tool_name: str,
        result: Any,
        success: bool = True,
        summary: str | None = None,
    ) -> ChatMessage:
        status = "success" if success else "error"
        summary = summary or f"{tool_name} {'completed' if success else 'failed'}: {summarize_tool_result(result)}"
        now = time.time()
        payload = {
            "execution": {"step_id": step_id, "tool_name": tool_name, "status": status, "timestamp": now},
            "result": {
                "summary": summary,
                "details": safe_summary(result),
                "artifacts": extract_artifacts(result),
            },
            "context": {
                "original_intent": self.original_intent,
                "current_step": self.current_step,
                "total_steps": self.total_steps,
            },
        }
        self.execution_history.append(
            {"step_id": step_id, "tool_name": tool_name, "status": status, "summary": summary, "timestamp": now}
        )
        content = f"<tool_execution_result>\n{json.dumps(payload, indent=2, ensure_ascii=False)}\n</tool_execution_result>"
        return ChatMessage(
            role="system",
            content=content,
            metadata={"tool_name": tool_name, "context": f"Tool result for step: {step_id} ({status})"},
        )

    def next_step(self) -> int:
        self.current_step += 1
        return self.current_step

    def reset(self) -> None:
        log.debug("session %s reset after %s steps", self.session_id, self.current_step)
        self.session_id = ""
        self.original_intent = ""
        self.current_step = 0
        self.total_steps = 0
        self.execution_history = []


def extract_artifacts(result: Any) -> list[str]:
    """File paths and URLs mentioned at the top level of a tool result."""
    artifacts: list[str] = []
    if not isinstance(result, dict):
        return artifacts
    for key in ("path", "file_path", "filePath", "url"):
        if isinstance(result.get(key), str):
            artifacts.append(result[key])
    files = result.get("files")
    if isinstance(files, list):
        artifacts.extend(f for f in files if isinstance(f, str))
    items = result.get("results")
    if isinstance(items, list):
        for item in items:
            if isinstance(item, dict) and isinstance(item.get("path"), str):
                artifacts.append(item["path"])
    return artifacts
