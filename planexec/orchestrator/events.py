"""Run event channel: the driver publishes, renderers and the HTTP layer subscribe."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable

from planexec.core.contracts.orchestrator import RunEvent

log = logging.getLogger("events")

Subscriber = Callable[[RunEvent], None]


class EventBus:
    def __init__(self, run_id: str):
        self.run_id = run_id
        self.history: list[RunEvent] = []
        self._subscribers: list[Subscriber] = []
        self._queues: list[asyncio.Queue] = []
        self._closed = False

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    def emit(self, type: str, /, **payload: Any) -> RunEvent:
        event = RunEvent(seq=len(self.history), run_id=self.run_id, type=type, payload=payload)
        self.history.append(event)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                log.exception("subscriber failed on %s event", type)
        for q in self._queues:
            q.put_nowait(event)
        return event

    def events(self, after: int = -1) -> list[RunEvent]:
        return [e for e in self.history if e.seq > after]

    def close(self) -> None:
        self._closed = True
        for q in self._queues:
            q.put_nowait(None)

    async def stream(self, after: int = -1) -> AsyncIterator[RunEvent]:
        """Replay history after `after`, then yield live events until the run closes the bus."""
        q: asyncio.Queue = asyncio.Queue()
        for e in self.events(after):
            q.put_nowait(e)
        if self._closed:
            q.put_nowait(None)
        else:
            self._queues.append(q)
        try:
            while True:
                event = await q.get()
                if event is None:
                    return
                yield event
        finally:
            if q in self._queues:
                self._queues.remove(q)
