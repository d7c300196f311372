"""Execute one plan step: resolve placeholders, call the tool, recover on failure."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from planexec.core.config.models import LimitsConfig
from planexec.core.contracts.orchestrator import ExecutionResult, FailureInfo, PlanStep, RecoveryDecision
from planexec.core.exceptions import (
    PlaceholderResolutionError,
    RunAborted,
    StepRegenerationError,
    ToolInvocationError,
    ToolWaitTimeout,
)
from planexec.core.jsonutil import loads_lenient
from planexec.orchestrator.events import EventBus
from planexec.orchestrator.placeholders import PLACEHOLDER_RE, resolve_placeholders
from planexec.orchestrator.recovery import FailureRecoveryCoordinator
from planexec.orchestrator.regeneration import StepRegenerator
from planexec.orchestrator.reporter import summarize_tool_result
from planexec.tools.content import ContentProducer
from planexec.tools.registry import ToolRegistry

log = logging.getLogger("executor")


@dataclass(frozen=True)
class StepContext:
    """Everything the executor may read about the run for one step."""

    step: PlanStep
    index: int
    total: int
    query: str
    results: tuple[ExecutionResult, ...] = ()


@dataclass
class StepOutcome:
    result: ExecutionResult
    step: PlanStep  # the step as finally executed, after any regeneration
    attempts: int = 1


@dataclass
class StepFailure:
    error: Exception
    args: Any = None
    tool_result: Any = None

    @property
    def message(self) -> str:
        return str(self.error) or type(self.error).__name__


@dataclass
class _Attempt:
    success: ExecutionResult | None = None
    failure: StepFailure | None = None


def parse_step_input(raw: Any) -> Any:
    """A step input given as a JSON string becomes the parsed object."""
    if not isinstance(raw, str):
        return raw
    text = raw.strip()
    if not text or PLACEHOLDER_RE.fullmatch(text) or text[0] not in "{[":
        return raw
    try:
        return loads_lenient(text)
    except ValueError:
        return raw


class StepExecutor:
    def __init__(
        self,
        tools: ToolRegistry,
        recovery: FailureRecoveryCoordinator,
        regenerator: StepRegenerator,
        limits: LimitsConfig | None = None,
        abort: asyncio.Event | None = None,
        content_producer: ContentProducer | None = None,
        content_tools: dict[str, str] | None = None,
        events: EventBus | None = None,
    ):
        self.tools = tools
        self.recovery = recovery
        self.regenerator = regenerator
        self.limits = limits or LimitsConfig()
        self.abort = abort or asyncio.Event()
        self.content_producer = content_producer
        self.content_tools = content_tools or {}
        self.events = events
        self.tool_executing = False

    async def execute(self, ctx: StepContext) -> StepOutcome:
        """Run ctx.step until it reaches a terminal disposition and return its single result.

        Failures are held in the recovery coordinator until a decision arrives.
        Raises RunAborted if the abort event is set and ToolWaitTimeout if a tool
        call outlives the configured wait.
        """
        step = ctx.step
        attempts = 0
        while True:
            self._check_abort()
            attempts += 1
            attempt = await self._attempt(step, ctx)
            if attempt.success is not None:
                return StepOutcome(result=attempt.success, step=step, attempts=attempts)
            failure = attempt.failure
            while True:
                decision = await self.recovery.request_decision(self._failure_info(step, ctx.index, failure), failure.error, self.abort)
                if decision is RecoveryDecision.RETRY:
                    log.info("retrying %s (%s)", step.step_id, step.tool)
                    break
                if decision is RecoveryDecision.SKIP:
                    return StepOutcome(result=self._skipped_result(step, ctx, failure), step=step, attempts=attempts)
                try:
                    new_step = await self.regenerator.regenerate(step, failure.error, ctx.results, self.abort)
                except StepRegenerationError as e:
                    log.warning("regeneration of %s failed: %s", step.step_id, e)
                    failure = StepFailure(error=e, args=failure.args, tool_result=failure.tool_result)
                    continue
                if self.events is not None:
                    self.events.emit(
                        "step_regenerated",
                        step_index=ctx.index,
                        previous=step.model_dump(mode="json"),
                        step=new_step.model_dump(mode="json"),
                    )
                step = new_step
                break

    async def _attempt(self, step: PlanStep, ctx: StepContext) -> _Attempt:
        try:
            resolved = resolve_placeholders(parse_step_input(step.input), ctx.results)
        except PlaceholderResolutionError as e:
            log.warning("%s: %s", step.step_id, e)
            return _Attempt(failure=StepFailure(error=e, args=step.input))

        if self.content_producer is not None and step.tool in self.content_tools:
            try:
                resolved = await self.content_producer.produce(step, resolved, ctx.results, ctx.query, self.abort)
            except RunAborted:
                raise
            except Exception as e:
                log.warning("%s: content production failed: %s", step.step_id, e)
                return _Attempt(failure=StepFailure(error=e, args=resolved))
            self._check_abort()

        try:
            args = self.tools.map_input(step.tool, resolved)
        except ToolInvocationError as e:
            return _Attempt(failure=StepFailure(error=e, args=resolved))

        start = time.perf_counter()
        try:
            result = await self._invoke(step.tool, args)
        except ToolWaitTimeout as e:
            e.result = ExecutionResult(
                step_id=step.step_id,
                step_index=ctx.index,
                tool_name=step.tool,
                tool_args=args,
                tool_error=str(e),
                observation=f"Timed out: {e}",
                step_reason=step.reason,
                success=False,
            )
            raise
        except RunAborted:
            raise
        except Exception as e:
            return _Attempt(failure=StepFailure(error=e, args=args, tool_result=getattr(e, "result", None)))
        latency_ms = int((time.perf_counter() - start) * 1000)

        if isinstance(result, dict) and result.get("success") is False:
            message = result.get("error") or result.get("message") or "Tool execution failed"
            error = ToolInvocationError(str(message), tool_name=step.tool, result=result)
            return _Attempt(failure=StepFailure(error=error, args=args, tool_result=result))

        log.info("%s (%s) succeeded in %s ms", step.step_id, step.tool, latency_ms)
        return _Attempt(
            success=ExecutionResult(
                step_id=step.step_id,
                step_index=ctx.index,
                tool_name=step.tool,
                tool_args=args,
                tool_result=result,
                observation=summarize_tool_result(result, max_len=500),
                step_reason=step.reason,
                success=True,
            )
        )

    async def _invoke(self, tool_name: str, args: dict[str, Any]) -> Any:
        task = asyncio.ensure_future(self.tools.execute(tool_name, args))
        self.tool_executing = True
        task.add_done_callback(self._tool_finished)
        await self.wait_for_tool()
        return task.result()

    def _tool_finished(self, task: asyncio.Future) -> None:
        self.tool_executing = False
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and self.abort.is_set():
            log.info("ignoring tool error after abort: %s", error)

    async def wait_for_tool(self) -> None:
        """Poll the tool-executing flag until it clears, the run aborts, or the wait times out."""
        loop = asyncio.get_running_loop()
        timeout = self.limits.tool_wait_timeout_s
        deadline = loop.time() + timeout
        while self.tool_executing:
            self._check_abort()
            if loop.time() >= deadline:
                self.tool_executing = False
                raise ToolWaitTimeout(f"Step execution timeout after {timeout:g} seconds")
            await asyncio.sleep(self.limits.tool_poll_interval_s)

    def _check_abort(self) -> None:
        if self.abort.is_set():
            raise RunAborted("run aborted")

    def _failure_info(self, step: PlanStep, index: int, failure: StepFailure) -> FailureInfo:
        error = failure.error
        return FailureInfo(
            tool_name=step.tool,
            args=failure.args,
            error=failure.message,
            step_id=step.step_id,
            step_index=index,
            placeholder=getattr(error, "placeholder", None),
            available_fields=getattr(error, "available_fields", None),
        )

    def _skipped_result(self, step: PlanStep, ctx: StepContext, failure: StepFailure) -> ExecutionResult:
        previous = next((r for r in reversed(ctx.results) if r.success), None)
        if isinstance(failure.tool_result, dict):
            tool_result = dict(failure.tool_result)
        elif failure.tool_result is not None:
            tool_result = {"result": failure.tool_result}
        else:
            tool_result = {}
        tool_result.update(
            success=False,
            skipped=True,
            error=failure.message,
            previousResult=previous.tool_result if previous is not None else None,
        )
        if isinstance(failure.error, PlaceholderResolutionError):
            tool_result["placeholder"] = failure.error.placeholder
            tool_result["availableFields"] = failure.error.available_fields
        log.info("skipping %s (%s): %s", step.step_id, step.tool, failure.message)
        return ExecutionResult(
            step_id=step.step_id,
            step_index=ctx.index,
            tool_name=step.tool,
            tool_args=failure.args,
            tool_result=tool_result,
            tool_error=failure.message,
            observation=f"Skipped after error: {failure.message}",
            step_reason=step.reason,
            success=False,
        )
