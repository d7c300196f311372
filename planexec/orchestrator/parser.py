"""Incremental detection of tagged phases in a streaming model reply."""
from __future__ import annotations

import logging
import re

from planexec.core.contracts.orchestrator import Phase, PhaseEvent

log = logging.getLogger("parser")

# Tried in this order on every pass; the first complete block wins.
PHASE_PATTERNS: list[tuple[Phase, re.Pattern]] = [
    (Phase.QUESTION, re.compile(r"<question>([\s\S]*?)</question>")),
    (Phase.PLAN, re.compile(r"<plan>([\s\S]*?)</plan>")),
    (Phase.THOUGHT, re.compile(r"<thought>([\s\S]*?)</thought>")),
    (Phase.ACTION, re.compile(r"<action((?:\s+[^>]*)?)>([\s\S]*?)</action>")),
    (Phase.OBSERVATION, re.compile(r"<observation>([\s\S]*?)</observation>")),
    (Phase.FINAL_ANSWER, re.compile(r"<final_answer>([\s\S]*?)</final_answer>")),
]

_FINAL_OPEN = "<final_answer>"
_FINAL_CLOSE = "</final_answer>"
_FINAL_PARTIAL = re.compile(r"<final_answer>([\s\S]*?)(?:</final_answer>|$)")
_FINAL_COMPLETE = re.compile(r"<final_answer>([\s\S]*?)</final_answer>")
_ATTR_RE = re.compile(r'(\w+)\s*=\s*"([^"]*)"')

TOOL_ENVELOPE_OPEN = "<use_mcp_tool>"
TOOL_ENVELOPE_PARTS = ("<tool_name>", "</tool_name>", "<arguments>", "</arguments>", "</use_mcp_tool>")
TICK_KEY_LENGTH = 100


def _drop_partial_close(text: str) -> str:
    """Hold back a trailing fragment of the closing tag until the next delta decides it."""
    for i in range(len(_FINAL_CLOSE) - 1, 0, -1):
        if text.endswith(_FINAL_CLOSE[:i]):
            return text[:-i]
    return text


class PhaseStreamParser:
    """Turns a growing text buffer into PhaseEvents.

    Each call to process() is one detection pass ("tick"). A pass emits at most
    one ordinary phase and removes its block from the buffer, so text after the
    block stays for the next pass. final_answer content streams out from the
    moment its opening tag is seen.
    """

    def __init__(self, incomplete_action_threshold: int = 30):
        self.incomplete_action_threshold = incomplete_action_threshold
        self.buffer = ""
        self.current_phase: Phase | None = None
        self.final_answer: str | None = None
        self._final_active = False
        self._final_content = ""
        self._action_ticks: dict[str, int] = {}

    @property
    def final_answer_streaming(self) -> bool:
        return self._final_active

    def feed(self, delta: str) -> list[PhaseEvent]:
        self.buffer += delta
        return self.process()

    def process(self) -> list[PhaseEvent]:
        events = self._process_final_answer()
        if self._final_active or events:
            return events
        event = self._detect_phase()
        if event is not None:
            events.append(event)
        return events

    def finish(self) -> list[PhaseEvent]:
        """Flush at end of stream: drain complete blocks, then finalize an unterminated final_answer.

        No more text is coming, so an action whose tool envelope never closed
        is accepted as it stands.
        """
        events: list[PhaseEvent] = []
        while True:
            batch = self.process()
            if not batch and not self._final_active:
                event = self._detect_phase(accept_incomplete=True)
                batch = [event] if event is not None else []
            if not batch:
                break
            events.extend(batch)
        self._action_ticks.clear()
        if self._final_active:
            events.append(self._finalize_final_answer(self._final_content.strip(), len(self.buffer)))
        return events

    def reset(self) -> None:
        self.buffer = ""
        self.current_phase = None
        self.final_answer = None
        self._final_active = False
        self._final_content = ""
        self._action_ticks.clear()

    def _process_final_answer(self) -> list[PhaseEvent]:
        events: list[PhaseEvent] = []
        if not self._final_active:
            if _FINAL_OPEN not in self.buffer or _FINAL_COMPLETE.search(self.buffer):
                return events
            self._final_active = True
            self._final_content = ""
            self.current_phase = Phase.FINAL_ANSWER
        m = _FINAL_PARTIAL.search(self.buffer)
        if m is None:
            return events
        complete = _FINAL_COMPLETE.search(self.buffer)
        content = m.group(1) if complete is not None else _drop_partial_close(m.group(1))
        if content != self._final_content:
            delta = content[len(self._final_content):] if content.startswith(self._final_content) else content
            self._final_content = content
            events.append(
                PhaseEvent(phase=Phase.FINAL_ANSWER, content=content, status="streaming", delta=delta)
            )
        if complete is not None:
            events.append(self._finalize_final_answer(complete.group(1).strip(), complete.end(), complete.start()))
        return events

    def _finalize_final_answer(self, content: str, end: int, start: int | None = None) -> PhaseEvent:
        if start is None:
            start = self.buffer.find(_FINAL_OPEN)
        self.buffer = self.buffer[:start] + self.buffer[end:]
        self._final_active = False
        self._final_content = ""
        self.final_answer = content
        self.current_phase = Phase.FINAL_ANSWER
        return PhaseEvent(phase=Phase.FINAL_ANSWER, content=content, status="final")

    def _detect_phase(self, accept_incomplete: bool = False) -> PhaseEvent | None:
        for phase, pattern in PHASE_PATTERNS:
            m = pattern.search(self.buffer)
            if m is None:
                continue
            attributes: dict[str, str] = {}
            if phase is Phase.ACTION:
                attributes = dict(_ATTR_RE.findall(m.group(1)))
                content = m.group(2)
                if not accept_incomplete and not self.is_action_complete(content):
                    continue
            else:
                content = m.group(1)
            self.buffer = self.buffer[: m.start()] + self.buffer[m.end():]
            if phase is Phase.FINAL_ANSWER:
                # only reached for a block that arrived whole in one pass
                self.final_answer = content.strip()
                self.current_phase = phase
                return PhaseEvent(phase=phase, content=self.final_answer, status="final")
            self.current_phase = phase
            log.debug("phase %s (%s chars)", phase.value, len(content))
            return PhaseEvent(phase=phase, content=content.strip(), attributes=attributes)
        return None

    def is_action_complete(self, content: str) -> bool:
        """Whether an <action> body holding a tool envelope has all of its parts.

        Bodies without an envelope are complete. An incomplete envelope is
        counted per content prefix and force-accepted once it has been seen
        more than incomplete_action_threshold times.
        """
        if TOOL_ENVELOPE_OPEN not in content:
            return True
        if all(part in content for part in TOOL_ENVELOPE_PARTS):
            self._action_ticks.pop(content[:TICK_KEY_LENGTH], None)
            return True
        key = content[:TICK_KEY_LENGTH]
        ticks = self._action_ticks.get(key, 0) + 1
        self._action_ticks[key] = ticks
        if ticks > self.incomplete_action_threshold:
            log.warning("accepting incomplete tool envelope after %s checks", ticks)
            self._action_ticks.pop(key, None)
            return True
        return False
