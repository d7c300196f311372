import time

import pytest
from fastapi.testclient import TestClient
from langchain_core.tools import ToolException

from planexec.agent.deps import Runtime
from planexec.core.config.models import LimitsConfig, OrchestratorConfig
from planexec.orchestrator import main
from planexec.tools.registry import ToolRegistry
from tests.fakes import FakeModelClient, make_tool, plan_reply, search

FINAL = "<final_answer>All done.</final_answer>"
CONFIG = OrchestratorConfig(env_file_path=None, limits=LimitsConfig(tool_poll_interval_s=0.001), content_tools={})


def wait_for(client, run_id, predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        snap = client.get(f"/runs/{run_id}").json()
        if predicate(snap):
            return snap
        time.sleep(0.01)
    raise AssertionError(f"run {run_id} never reached the expected state: {snap}")


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() >= deadline:
            raise AssertionError("condition never became true")
        time.sleep(0.01)


def broken_tool():
    def broken(query: str) -> dict:
        raise ToolException("disk full")

    return make_tool("broken", broken)


@pytest.fixture
def service(monkeypatch):
    """TestClient plus an installer for the runtime the next run will use."""
    monkeypatch.setattr(main, "RUNS", {})
    monkeypatch.setattr(main, "_TASKS", {})
    monkeypatch.setattr(main, "_FINISHED", {})

    def install(replies, tools):
        monkeypatch.setattr(main, "RUNTIME", Runtime(config=CONFIG, model=FakeModelClient(replies), tools=ToolRegistry(tools)))

    with TestClient(main.app) as client:
        yield client, install


def test_health(service):
    client, _ = service
    assert client.get("/health").json() == {"status": "ok", "runs": 0}


def test_run_to_completion(service):
    client, install = service
    install([plan_reply({"tool": "search", "input": "x"}), FINAL], [search])

    r = client.post("/runs", json={"query": "look it up"})
    assert r.status_code == 200
    run_id = r.json()["run_id"]

    snap = wait_for(client, run_id, lambda s: s["status"] == "done")
    assert snap["query"] == "look it up"
    assert snap["final_answer"] == "All done."
    assert [s["tool"] for s in snap["steps"]] == ["search"]
    assert snap["results"][0]["tool_result"] == {"text": "hello", "query": "x"}
    assert snap["pending_failure"] is None

    events = client.get(f"/runs/{run_id}/events").json()
    assert [e["seq"] for e in events] == list(range(len(events)))
    assert "plan" in [e["type"] for e in events]
    tail = client.get(f"/runs/{run_id}/events", params={"after": events[-2]["seq"]}).json()
    assert tail == events[-1:]


def test_failure_waits_for_decision(service):
    client, install = service
    calls = {"n": 0}

    def flaky(query: str) -> dict:
        calls["n"] += 1
        if calls["n"] == 1:
            raise ToolException("rate limit")
        return {"text": "ok"}

    install([plan_reply({"tool": "flaky", "input": "x"}), FINAL], [make_tool("flaky", flaky)])
    run_id = client.post("/runs", json={"query": "q"}).json()["run_id"]

    snap = wait_for(client, run_id, lambda s: s["pending_failure"] is not None)
    assert snap["status"] == "executing"
    assert snap["pending_failure"]["tool_name"] == "flaky"
    assert snap["pending_failure"]["error"] == "rate limit"

    assert client.post(f"/runs/{run_id}/decision", json={"decision": "retry"}).status_code == 200
    snap = wait_for(client, run_id, lambda s: s["status"] == "done")
    assert [r["success"] for r in snap["results"]] == [True]
    assert calls["n"] == 2


def test_decision_without_pending_failure_conflicts(service):
    client, install = service
    install(["<final_answer>42</final_answer>"], [search])
    run_id = client.post("/runs", json={"query": "q"}).json()["run_id"]
    wait_for(client, run_id, lambda s: s["status"] == "done")

    r = client.post(f"/runs/{run_id}/decision", json={"decision": "skip"})
    assert r.status_code == 409
    assert r.json()["detail"] == "No failure is pending"
    assert client.post(f"/runs/{run_id}/decision", json={"decision": "maybe"}).status_code == 422


def test_abort_suspended_run(service):
    client, install = service
    install([plan_reply({"tool": "broken", "input": "x"}), FINAL], [broken_tool()])
    run_id = client.post("/runs", json={"query": "q"}).json()["run_id"]
    wait_for(client, run_id, lambda s: s["pending_failure"] is not None)

    assert client.post(f"/runs/{run_id}/abort").status_code == 200
    snap = wait_for(client, run_id, lambda s: s["status"] == "aborted")
    assert snap["results"] == []
    assert snap["final_answer"] is None


def test_unknown_run(service):
    client, _ = service
    assert client.get("/runs/nope").status_code == 404
    assert client.get("/runs/nope/events").status_code == 404
    assert client.post("/runs/nope/decision", json={"decision": "retry"}).status_code == 404
    assert client.post("/runs/nope/abort").status_code == 404


def test_stream_replays_a_finished_run(service):
    client, install = service
    install([plan_reply({"tool": "search", "input": "x"}), FINAL], [search])
    run_id = client.post("/runs", json={"query": "q"}).json()["run_id"]
    wait_for(client, run_id, lambda s: s["status"] == "done")

    r = client.get(f"/runs/{run_id}/stream")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    frames = [f for f in r.text.split("\n\n") if f]
    events = client.get(f"/runs/{run_id}/events").json()
    assert len(frames) == len(events)
    assert frames[0].startswith("id: 0\nevent: status\ndata: ")
    assert "event: step_result" in r.text
    assert frames[-1].startswith(f"id: {events[-1]['seq']}\nevent: status\n")

    tail = client.get(f"/runs/{run_id}/stream", params={"after": events[-2]["seq"]}).text
    assert tail.count("\n\n") == 1


def test_finished_runs_are_evicted_past_the_cap(service, monkeypatch):
    client, install = service
    monkeypatch.setattr(main, "MAX_RUNS", 1)
    install(["<final_answer>one</final_answer>", "<final_answer>two</final_answer>"], [search])

    first = client.post("/runs", json={"query": "a"}).json()["run_id"]
    wait_for(client, first, lambda s: s["status"] == "done")
    second = client.post("/runs", json={"query": "b"}).json()["run_id"]
    wait_for(client, second, lambda s: s["status"] == "done")

    wait_until(lambda: first not in main.RUNS)
    assert client.get(f"/runs/{first}").status_code == 404
    assert list(main.RUNS) == [second]


def test_finished_runs_expire_after_ttl(service):
    client, install = service
    install(["<final_answer>42</final_answer>"], [search])
    run_id = client.post("/runs", json={"query": "q"}).json()["run_id"]
    wait_for(client, run_id, lambda s: s["status"] == "done")

    wait_until(lambda: run_id in main._FINISHED)
    done_at = main._FINISHED[run_id]
    assert main.evict_runs(now=done_at + main.RUN_TTL_S - 1) == []
    assert main.evict_runs(now=done_at + main.RUN_TTL_S) == [run_id]
    assert client.get(f"/runs/{run_id}").status_code == 404


def test_delete_run(service):
    client, install = service
    install([plan_reply({"tool": "broken", "input": "x"}), FINAL], [broken_tool()])
    run_id = client.post("/runs", json={"query": "q"}).json()["run_id"]
    wait_for(client, run_id, lambda s: s["pending_failure"] is not None)

    assert client.delete(f"/runs/{run_id}").status_code == 409
    client.post(f"/runs/{run_id}/abort")
    wait_for(client, run_id, lambda s: s["status"] == "aborted")
    assert client.delete(f"/runs/{run_id}").json() == {"deleted": run_id}
    assert client.get(f"/runs/{run_id}").status_code == 404
