"""Plan-execute lifecycle: plan stream → sequential steps → streamed final answer."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from planexec.agent.model import ModelClient
from planexec.core.config.models import OrchestratorConfig
from planexec.core.contracts.agent import ChatMessage, StreamChunk
from planexec.core.contracts.gateway import RunSnapshot
from planexec.core.contracts.orchestrator import (
    ExecutionResult,
    FailureInfo,
    Phase,
    PhaseEvent,
    Plan,
    PlanStep,
    RecoveryDecision,
    RunStatus,
)
from planexec.core.exceptions import ModelStreamError, PlanParseError, RunAborted, ToolWaitTimeout
from planexec.orchestrator.events import EventBus
from planexec.orchestrator.executor import StepContext, StepExecutor
from planexec.orchestrator.parser import PhaseStreamParser
from planexec.orchestrator.planner import build_plan_prompt, parse_plan
from planexec.orchestrator.recovery import FailureRecoveryCoordinator
from planexec.orchestrator.regeneration import StepRegenerator
from planexec.orchestrator.reporter import build_final_answer_prompt
from planexec.orchestrator.session import StructuredPromptSession
from planexec.tools.content import ContentProducer
from planexec.tools.registry import ToolRegistry

log = logging.getLogger("orchestrator")


@dataclass
class RunState:
    """Mutable state of one run. Only the driver writes to it."""

    run_id: str
    query: str = ""
    status: RunStatus = RunStatus.IDLE
    steps: list[PlanStep] = field(default_factory=list)
    results: list[ExecutionResult] = field(default_factory=list)
    current_step_index: int | None = None
    messages: list[ChatMessage] = field(default_factory=list)
    final_answer: str | None = None
    error: str | None = None
    usage: dict[str, Any] | None = None


def _looks_tagged(text: str) -> bool:
    stripped = text.lstrip()
    return not stripped or stripped.startswith("<")


class PlanExecuteDriver:
    def __init__(
        self,
        model: ModelClient,
        tools: ToolRegistry,
        config: OrchestratorConfig | None = None,
        content_producer: ContentProducer | None = None,
        run_id: str | None = None,
    ):
        self.model = model
        self.tools = tools
        self.config = config or OrchestratorConfig()
        self.limits = self.config.limits
        self.state = RunState(run_id=run_id or uuid.uuid4().hex)
        self.abort_event = asyncio.Event()
        self.events = EventBus(self.state.run_id)
        self.session = StructuredPromptSession()
        self.recovery = FailureRecoveryCoordinator(on_suspended=self._on_failure_suspended)
        self.executor = StepExecutor(
            tools=tools,
            recovery=self.recovery,
            regenerator=StepRegenerator(model, tools),
            limits=self.limits,
            abort=self.abort_event,
            content_producer=content_producer,
            content_tools=self.config.content_tools,
            events=self.events,
        )
        self._history: list[ChatMessage] = []

    @property
    def run_id(self) -> str:
        return self.state.run_id

    @property
    def tool_executing(self) -> bool:
        return self.executor.tool_executing

    # external controls

    def resolve_failure(self, decision: RecoveryDecision | str) -> None:
        self.recovery.resolve(decision)

    def abort(self) -> None:
        if not self.state.status.terminal:
            log.info("run %s: abort requested", self.run_id)
        self.abort_event.set()

    def snapshot(self) -> RunSnapshot:
        pending = self.recovery.pending
        return RunSnapshot(
            run_id=self.run_id,
            query=self.state.query,
            status=self.state.status,
            steps=list(self.state.steps),
            results=list(self.state.results),
            current_step_index=self.state.current_step_index,
            pending_failure=pending.info if pending is not None else None,
            final_answer=self.state.final_answer,
            error=self.state.error,
            usage=self.state.usage,
        )

    # lifecycle

    async def run(self, query: str, history: Sequence[ChatMessage] = ()) -> RunState:
        self.state.query = query
        self._history = list(history)
        self.session.initialize(query)
        log.info("QUERY: %s", (query[:200] + "…") if len(query) > 200 else query)
        try:
            plan = await self._plan()
            if plan is not None:
                await self._execute_steps()
                await self._synthesize()
            self._set_status(RunStatus.DONE)
        except RunAborted:
            self._set_status(RunStatus.ABORTED)
        except (ModelStreamError, PlanParseError, ToolWaitTimeout) as e:
            if self.abort_event.is_set():
                self._set_status(RunStatus.ABORTED)
            else:
                self._fail(e)
        except Exception as e:
            log.exception("run %s failed", self.run_id)
            self._fail(e)
        finally:
            self.state.current_step_index = None
            self.session.reset()
            self.events.close()
        return self.state

    async def _plan(self) -> Plan | None:
        self._set_status(RunStatus.PLANNING)
        prompt = build_plan_prompt(self.state.query, self.tools.describe())
        user_message = ChatMessage(
            role="user",
            content=self.session.create_user_prompt(prompt, "Generating execution plan for the above request"),
        )
        parser = PhaseStreamParser(self.limits.incomplete_action_threshold)
        found: dict[str, str] = {}

        def handle(event: PhaseEvent) -> None:
            if event.phase is Phase.PLAN:
                found.setdefault("plan", event.content)
                self._emit_phase(event)
            elif event.phase is Phase.FINAL_ANSWER:
                self._emit_final_answer_event(event)
                if event.status == "final":
                    found.setdefault("answer", event.content)
            elif event.phase is Phase.ACTION:
                # steps run from the plan, not from actions written during planning
                log.debug("ignoring action during planning: %s", event.content[:100])
                self._emit_phase(event)
            else:
                self._emit_phase(event)

        def on_delta(delta: str) -> None:
            for event in parser.feed(delta):
                handle(event)

        text = await self._stream_model("plan", [*self._history, user_message], on_delta)
        for event in parser.finish():
            handle(event)
        self.state.messages.extend([user_message, ChatMessage(role="assistant", content=text)])

        if "plan" in found:
            plan = parse_plan(found["plan"])
        elif "answer" in found:
            log.info("model answered without a plan")
            self.state.final_answer = found["answer"]
            self.events.emit("final_answer", content=found["answer"])
            return None
        else:
            try:
                plan = parse_plan(text)
            except PlanParseError as e:
                raise PlanParseError(f"The model did not produce a plan: {e}") from e

        self.state.steps = list(plan.steps)
        self.session.set_total_steps(len(plan.steps))
        for i, s in enumerate(plan.steps, 1):
            log.info("PLAN step %s → %s: %s", i, s.tool, (s.reason[:80] + "…") if len(s.reason) > 80 else s.reason)
        self.events.emit("plan", steps=[s.model_dump(mode="json") for s in plan.steps])
        return plan

    async def _execute_steps(self) -> None:
        self._set_status(RunStatus.EXECUTING)
        total = len(self.state.steps)
        for index in range(total):
            self._check_abort()
            step = self.state.steps[index]
            self.state.current_step_index = index
            self.events.emit("step_started", step_index=index, total=total, step=step.model_dump(mode="json"))
            ctx = StepContext(
                step=step,
                index=index,
                total=total,
                query=self.state.query,
                results=tuple(self.state.results),
            )
            try:
                outcome = await self.executor.execute(ctx)
            except ToolWaitTimeout as e:
                if e.result is not None and not self.abort_event.is_set():
                    self._record(e.result)
                raise ToolWaitTimeout(f"Step {index + 1} ({step.step_id}) {e}", e.result) from e
            self._check_abort()
            self.state.steps[index] = outcome.step
            self._record(outcome.result, outcome.attempts)
        self.state.current_step_index = None

    def _record(self, result: ExecutionResult, attempts: int = 1) -> None:
        self.state.results.append(result)
        self.state.messages.append(
            self.session.create_tool_result_message(
                result.step_id,
                result.tool_name,
                result.tool_result if result.success else {"error": result.tool_error, "details": result.tool_result},
                success=result.success,
            )
        )
        self.session.next_step()
        self.events.emit("step_result", result=result.model_dump(mode="json"), attempts=attempts)

    async def _synthesize(self) -> None:
        await self.executor.wait_for_tool()
        self._check_abort()
        self._set_status(RunStatus.SYNTHESIZING)
        prompt = build_final_answer_prompt(self.state.query, self.state.results, self.limits)
        messages = [*self._history, *self.state.messages, ChatMessage(role="user", content=prompt)]
        parser = PhaseStreamParser(self.limits.incomplete_action_threshold)
        streamed: list[str] = []
        found: dict[str, str] = {}
        raw = {"on": False}  # untagged reply, streamed as is

        def handle(event: PhaseEvent) -> None:
            if event.phase is Phase.FINAL_ANSWER:
                if not raw["on"]:
                    self._emit_final_answer_event(event, publish_final=False)
                if event.status == "final":
                    found.setdefault("answer", event.content)
            else:
                self._emit_phase(event)

        def on_delta(delta: str) -> None:
            streamed.append(delta)
            text = "".join(streamed)
            if not _looks_tagged(text):
                raw["on"] = True
                self.events.emit("final_answer_delta", delta=delta, content=text)
            for event in parser.feed(delta):
                handle(event)

        text = await self._stream_model("final answer", messages, on_delta)
        for event in parser.finish():
            handle(event)
        answer = found.get("answer", text.strip())
        if not answer:
            raise ModelStreamError("The model returned an empty final answer", "final answer")
        self.state.final_answer = answer
        self.state.messages.append(ChatMessage(role="assistant", content=answer))
        log.info("FINAL ANSWER: %s", (answer[:300] + "…") if len(answer) > 300 else answer)
        self.events.emit("final_answer", content=answer)

    async def _stream_model(self, stage: str, messages: list[ChatMessage], on_delta: Callable[[str], None]) -> str:
        self._check_abort()
        parts: list[str] = []

        def on_chunk(chunk: StreamChunk) -> None:
            if self.abort_event.is_set():
                return
            if chunk.is_complete:
                if chunk.usage:
                    self.state.usage = chunk.usage
                return
            if chunk.delta:
                parts.append(chunk.delta)
                on_delta(chunk.delta)

        ticker = asyncio.ensure_future(self._progress(stage))
        try:
            await self.model.stream(messages, on_chunk, self.abort_event)
        except RunAborted:
            raise
        except Exception as e:
            if self.abort_event.is_set():
                raise RunAborted(f"aborted during {stage} generation") from e
            log.warning("%s stream failed: %s", stage, e)
            raise ModelStreamError(str(e), stage) from e
        finally:
            ticker.cancel()
        self._check_abort()
        return "".join(parts)

    async def _progress(self, stage: str) -> None:
        loop = asyncio.get_running_loop()
        start = loop.time()
        while True:
            await asyncio.sleep(self.limits.progress_interval_s)
            self.events.emit("progress", stage=stage, elapsed_s=round(loop.time() - start, 1))

    # helpers

    def _emit_phase(self, event: PhaseEvent) -> None:
        self.events.emit("phase", phase=event.phase.value, content=event.content, attributes=event.attributes)

    def _emit_final_answer_event(self, event: PhaseEvent, publish_final: bool = True) -> None:
        if event.status == "streaming":
            self.events.emit("final_answer_delta", delta=event.delta, content=event.content)
        elif publish_final:
            self._emit_phase(event)

    def _on_failure_suspended(self, info: FailureInfo) -> None:
        self.events.emit("failure_suspended", **info.model_dump(mode="json"))

    def _set_status(self, status: RunStatus) -> None:
        self.state.status = status
        log.info("run %s: %s", self.run_id, status.value)
        self.events.emit("status", status=status.value)

    def _fail(self, error: Exception) -> None:
        message = error.user_message() if isinstance(error, ModelStreamError) else str(error)
        self.state.error = message
        self._set_status(RunStatus.FAILED)
        self.events.emit("error", message=message, error_type=type(error).__name__)

    def _check_abort(self) -> None:
        if self.abort_event.is_set():
            raise RunAborted("run aborted")
