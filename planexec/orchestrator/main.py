"""Orchestrator FastAPI app: start plan-execute runs, watch their events, answer failures."""
from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from planexec.agent.deps import Runtime, build_runtime
from planexec.core.config.loader import load_config
from planexec.core.contracts.gateway import DecisionRequest, RunRequest, RunResponse, RunSnapshot
from planexec.core.contracts.orchestrator import RunEvent
from planexec.core.exceptions import DecisionError
from planexec.orchestrator.driver import PlanExecuteDriver

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(message)s", datefmt="%H:%M:%S")
log = logging.getLogger("orchestrator")

app = FastAPI(title="Plan-Execute: Orchestrator")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

CONFIG_PATH = os.environ.get("CONFIG_PATH", "config/default.json")
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
RUNTIME: Runtime | None = None
# finished runs are dropped after RUN_TTL_S, or oldest first once more than MAX_RUNS are held
RUN_TTL_S = float(os.environ.get("RUN_TTL_S", "3600"))
MAX_RUNS = int(os.environ.get("MAX_RUNS", "100"))
RUNS: dict[str, PlanExecuteDriver] = {}
_TASKS: dict[str, asyncio.Task] = {}
_FINISHED: dict[str, float] = {}


def get_runtime() -> Runtime:
    global RUNTIME
    if RUNTIME is None:
        RUNTIME = build_runtime(load_config(CONFIG_PATH, project_root=PROJECT_ROOT))
    return RUNTIME


def evict_runs(now: float | None = None) -> list[str]:
    now = time.monotonic() if now is None else now
    expired = [run_id for run_id, done_at in _FINISHED.items() if now - done_at >= RUN_TTL_S]
    by_age = sorted((done_at, run_id) for run_id, done_at in _FINISHED.items() if run_id not in expired)
    overflow = len(RUNS) - len(expired) - MAX_RUNS
    expired += [run_id for _, run_id in by_age[: max(overflow, 0)]]
    for run_id in expired:
        RUNS.pop(run_id, None)
        _FINISHED.pop(run_id, None)
    if expired:
        log.info("evicted %s finished run(s)", len(expired))
    return expired


def _run_finished(run_id: str) -> None:
    _TASKS.pop(run_id, None)
    if run_id in RUNS:
        _FINISHED[run_id] = time.monotonic()
    evict_runs()


def get_run(run_id: str) -> PlanExecuteDriver:
    driver = RUNS.get(run_id)
    if driver is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return driver


@app.get("/health")
def health():
    return {"status": "ok", "runs": len(RUNS)}


@app.post("/runs", response_model=RunResponse)
async def start_run(req: RunRequest):
    runtime = get_runtime()
    driver = PlanExecuteDriver(
        model=runtime.model,
        tools=runtime.tools,
        config=runtime.config,
        content_producer=runtime.content_producer,
    )
    RUNS[driver.run_id] = driver
    evict_runs()
    task = asyncio.create_task(driver.run(req.query, req.history))
    _TASKS[driver.run_id] = task
    task.add_done_callback(lambda _: _run_finished(driver.run_id))
    return RunResponse(run_id=driver.run_id, status=driver.state.status)


@app.get("/runs/{run_id}", response_model=RunSnapshot)
async def get_run_snapshot(run_id: str):
    return get_run(run_id).snapshot()


@app.get("/runs/{run_id}/events", response_model=list[RunEvent])
async def get_run_events(run_id: str, after: int = -1):
    return get_run(run_id).events.events(after)


@app.get("/runs/{run_id}/stream")
async def stream_run_events(run_id: str, after: int = -1):
    """SSE: replays events after `after`, then follows the run until it ends."""
    driver = get_run(run_id)

    async def gen():
        async for event in driver.events.stream(after):
            yield f"id: {event.seq}\nevent: {event.type}\ndata: {event.model_dump_json()}\n\n"
    return StreamingResponse(
        gen(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/runs/{run_id}/decision", response_model=RunSnapshot)
async def post_decision(run_id: str, req: DecisionRequest):
    driver = get_run(run_id)
    try:
        driver.resolve_failure(req.decision)
    except DecisionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return driver.snapshot()


@app.post("/runs/{run_id}/abort", response_model=RunSnapshot)
async def abort_run(run_id: str):
    driver = get_run(run_id)
    driver.abort()
    return driver.snapshot()


@app.delete("/runs/{run_id}")
async def delete_run(run_id: str):
    driver = get_run(run_id)
    if not driver.state.status.terminal:
        raise HTTPException(status_code=409, detail="Run is still active; abort it first")
    RUNS.pop(run_id, None)
    _FINISHED.pop(run_id, None)
    return {"deleted": run_id}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
