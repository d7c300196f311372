"""Single-slot suspension point for a failed step, resolved by an external decision."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

from planexec.core.contracts.orchestrator import FailureInfo, RecoveryDecision
from planexec.core.exceptions import DecisionError, RunAborted

log = logging.getLogger("recovery")


class PendingFailure:
    def __init__(self, info: FailureInfo, error: Exception, future: asyncio.Future):
        self.info = info
        self.error = error
        self._future = future

    @property
    def resolved(self) -> bool:
        return self._future.done()

    def resolve(self, decision: RecoveryDecision | str) -> None:
        decision = RecoveryDecision(decision)
        if self._future.done():
            raise DecisionError(f"Failure of {self.info.step_id} was already resolved")
        self._future.set_result(decision)


class FailureRecoveryCoordinator:
    """Holds at most one pending failure; the executor waits on it until resolve() is called.

    There is no timeout: an unanswered failure keeps the run suspended until a
    decision arrives or the abort event is set.
    """

    def __init__(self, on_suspended: Callable[[FailureInfo], None] | None = None):
        self._pending: PendingFailure | None = None
        self._on_suspended = on_suspended

    @property
    def pending(self) -> PendingFailure | None:
        return self._pending

    async def request_decision(
        self,
        info: FailureInfo,
        error: Exception,
        abort: asyncio.Event | None = None,
    ) -> RecoveryDecision:
        if self._pending is not None:
            raise DecisionError(f"A failure is already pending for {self._pending.info.step_id}")
        if abort is not None and abort.is_set():
            raise RunAborted(f"aborted before {info.step_id} could be suspended")
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending = PendingFailure(info, error, future)
        log.warning("step %s (%s) suspended: %s", info.step_id, info.tool_name, info.error)
        if self._on_suspended is not None:
            self._on_suspended(info)
        abort_wait = asyncio.ensure_future(abort.wait()) if abort is not None else None
        try:
            waiters = {future} if abort_wait is None else {future, abort_wait}
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if not future.done():
                raise RunAborted(f"aborted while waiting for a decision on {info.step_id}")
            decision = future.result()
        finally:
            self._pending = None
            if abort_wait is not None and not abort_wait.done():
                abort_wait.cancel()
            if not future.done():
                future.cancel()
        log.info("step %s decision: %s", info.step_id, decision.value)
        return decision

    def resolve(self, decision: RecoveryDecision | str) -> None:
        if self._pending is None:
            raise DecisionError("No failure is pending")
        self._pending.resolve(decision)
