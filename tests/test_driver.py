import asyncio

import pytest
from langchain_core.tools import ToolException

from planexec.core.config.models import LimitsConfig, OrchestratorConfig
from planexec.core.contracts.agent import ChatMessage
from planexec.core.contracts.orchestrator import RunStatus
from planexec.orchestrator.driver import PlanExecuteDriver
from planexec.tools.registry import ToolRegistry
from tests.fakes import FakeModelClient, decide_on_suspend, make_tool, plan_reply, search

FINAL = "<thought>Summarize.</thought><final_answer>All done.</final_answer>"


def event_types(driver, skip=("phase", "progress", "final_answer_delta")):
    return [e.type for e in driver.events.history if e.type not in skip]


def broken_tool(message="disk full"):
    def broken(query: str) -> dict:
        raise ToolException(message)

    return make_tool("broken", broken)


@pytest.mark.asyncio
async def test_output_of_one_step_feeds_the_next(fast_config):
    captured = []

    def create(file_text: str) -> dict:
        captured.append(file_text)
        return {"path": "/notes/hello.md"}

    model = FakeModelClient(
        [
            plan_reply(
                {"step_id": "step1", "tool": "search", "input": {"query": "greeting"}, "reason": "find it"},
                {"step_id": "step2", "tool": "create", "input": "{{step1.output.text}}", "reason": "save it"},
            ),
            "<final_answer>Saved hello to /notes/hello.md</final_answer>",
        ]
    )
    driver = PlanExecuteDriver(model, ToolRegistry([search, make_tool("create", create)]), fast_config)
    state = await driver.run("save a greeting")

    assert state.status is RunStatus.DONE
    assert captured == ["hello"]
    assert [r.step_id for r in state.results] == ["step1", "step2"]
    assert state.results[1].tool_args == {"file_text": "hello"}
    assert state.final_answer == "Saved hello to /notes/hello.md"
    assert [m.role for m in model.calls[1]] == ["user", "assistant", "system", "system", "user"]
    assert event_types(driver) == [
        "status",
        "plan",
        "status",
        "step_started",
        "step_result",
        "step_started",
        "step_result",
        "status",
        "final_answer",
        "status",
    ]
    assert [e.payload["status"] for e in driver.events.history if e.type == "status"] == [
        "planning",
        "executing",
        "synthesizing",
        "done",
    ]


@pytest.mark.asyncio
async def test_steps_run_in_plan_order_with_one_result_each(fast_config):
    order = []

    def record(query: str) -> dict:
        order.append(query)
        return {"text": query}

    steps = [{"tool": "record", "input": name} for name in ("a", "b", "c")]
    model = FakeModelClient([plan_reply(*steps), FINAL])
    driver = PlanExecuteDriver(model, ToolRegistry([make_tool("record", record)]), fast_config)
    state = await driver.run("record three things")

    assert order == ["a", "b", "c"]
    assert [(r.step_id, r.step_index) for r in state.results] == [("step1", 0), ("step2", 1), ("step3", 2)]
    assert state.final_answer == "All done."
    assert state.current_step_index is None
    assert state.usage == {"total_tokens": len(FINAL)}


@pytest.mark.asyncio
async def test_direct_answer_skips_execution(fast_config):
    model = FakeModelClient(["<thought>No tools needed.</thought>\n<final_answer>42</final_answer>"])
    driver = PlanExecuteDriver(model, ToolRegistry([search]), fast_config)
    state = await driver.run("what is six times seven?")

    assert state.status is RunStatus.DONE
    assert state.final_answer == "42"
    assert state.steps == []
    assert state.results == []
    assert len(model.calls) == 1
    assert [e.payload["content"] for e in driver.events.history if e.type == "final_answer"] == ["42"]


@pytest.mark.asyncio
async def test_untagged_plan_json_is_accepted(fast_config):
    model = FakeModelClient(['{"steps": [{"tool": "search", "input": "x"}]}', FINAL])
    driver = PlanExecuteDriver(model, ToolRegistry([search]), fast_config)
    state = await driver.run("look up x")
    assert state.status is RunStatus.DONE
    assert len(state.results) == 1


@pytest.mark.asyncio
async def test_reply_without_plan_fails_the_run(fast_config):
    model = FakeModelClient(["I cannot help with that."])
    driver = PlanExecuteDriver(model, ToolRegistry([search]), fast_config)
    state = await driver.run("?")
    assert state.status is RunStatus.FAILED
    assert "did not produce a plan" in state.error
    assert driver.events.history[-1].type == "error"


@pytest.mark.asyncio
async def test_history_is_sent_before_the_planning_prompt(fast_config):
    model = FakeModelClient(["<final_answer>hi</final_answer>"])
    driver = PlanExecuteDriver(model, ToolRegistry([search]), fast_config)
    await driver.run("and now?", history=[ChatMessage(role="user", content="earlier question")])
    first_call = model.calls[0]
    assert first_call[0].content == "earlier question"
    assert "<original_user_intent>" in first_call[1].content
    assert "search" in first_call[1].content


@pytest.mark.asyncio
async def test_untagged_final_answer_streams_raw_text(fast_config):
    text = "Plain answer without any tags."
    model = FakeModelClient([plan_reply({"tool": "search", "input": "x"}), text])
    driver = PlanExecuteDriver(model, ToolRegistry([search]), fast_config)
    state = await driver.run("x")
    deltas = [e.payload["delta"] for e in driver.events.history if e.type == "final_answer_delta"]
    assert "".join(deltas) == text
    assert state.final_answer == text


@pytest.mark.asyncio
async def test_tagged_final_answer_streams_deltas(fast_config):
    model = FakeModelClient([plan_reply({"tool": "search", "input": "x"}), "<final_answer>Streaming works fine</final_answer>"])
    driver = PlanExecuteDriver(model, ToolRegistry([search]), fast_config)
    await driver.run("x")
    deltas = [e.payload for e in driver.events.history if e.type == "final_answer_delta"]
    assert len(deltas) > 1
    assert deltas[-1]["content"] == "Streaming works fine"


@pytest.mark.asyncio
async def test_retry_decision(fast_config):
    calls = {"n": 0}

    def flaky(query: str) -> dict:
        calls["n"] += 1
        if calls["n"] == 1:
            raise ToolException("connection reset")
        return {"text": "ok"}

    model = FakeModelClient([plan_reply({"tool": "flaky", "input": "x"}, {"tool": "search", "input": "y"}), FINAL])
    driver = PlanExecuteDriver(model, ToolRegistry([search, make_tool("flaky", flaky)]), fast_config)
    suspended = decide_on_suspend(driver, "retry")
    state = await driver.run("q")

    assert state.status is RunStatus.DONE
    assert len(suspended) == 1
    assert suspended[0]["step_id"] == "step1"
    assert suspended[0]["tool_name"] == "flaky"
    assert [r.step_index for r in state.results] == [0, 1]
    assert all(r.success for r in state.results)
    assert driver.snapshot().pending_failure is None
    assert [e.payload["attempts"] for e in driver.events.history if e.type == "step_result"] == [2, 1]


@pytest.mark.asyncio
async def test_skip_decision_records_skipped_result(fast_config):
    model = FakeModelClient([plan_reply({"tool": "search", "input": "x"}, {"tool": "broken", "input": "y"}), FINAL])
    driver = PlanExecuteDriver(model, ToolRegistry([search, broken_tool()]), fast_config)
    decide_on_suspend(driver, "skip")
    state = await driver.run("q")

    assert state.status is RunStatus.DONE
    assert len(state.results) == 2
    skipped = state.results[1]
    assert skipped.skipped
    assert skipped.tool_result["previousResult"] == state.results[0].tool_result
    assert "2. broken (step2): skipped" in model.calls[1][-1].content


@pytest.mark.asyncio
async def test_placeholder_failure_is_suspended_with_fields(fast_config):
    model = FakeModelClient(
        [
            plan_reply({"tool": "search", "input": "x"}, {"tool": "search", "input": "{{step1.output.missing}}"}),
            FINAL,
        ]
    )
    driver = PlanExecuteDriver(model, ToolRegistry([search]), fast_config)
    suspended = decide_on_suspend(driver, "skip")
    state = await driver.run("q")

    assert suspended[0]["placeholder"] == "{{step1.output.missing}}"
    assert suspended[0]["available_fields"] == ["text", "query"]
    assert state.results[1].tool_result["availableFields"] == ["text", "query"]
    assert state.status is RunStatus.DONE


@pytest.mark.asyncio
async def test_regenerate_decision_swaps_the_tool(fast_config):
    model = FakeModelClient(
        [
            plan_reply({"tool": "search", "input": "x"}, {"tool": "broken", "input": "y", "reason": "lookup"}),
            '{"step_id": "renamed", "tool": "search", "input": {"query": "alt"}, "reason": "fallback"}',
            FINAL,
        ]
    )
    driver = PlanExecuteDriver(model, ToolRegistry([search, broken_tool("API key missing")]), fast_config)
    decide_on_suspend(driver, "regenerate")
    state = await driver.run("q")

    assert state.status is RunStatus.DONE
    assert len(state.results) == 2
    assert state.results[1].step_id == "step2"
    assert state.results[1].tool_name == "search"
    assert state.steps[1].tool == "search"
    assert "step_regenerated" in event_types(driver)
    assert "cannot be used right now" in model.calls[1][0].content


@pytest.mark.asyncio
async def test_abort_during_tool_call(fast_config):
    holder = {}

    async def stopper(query: str) -> dict:
        holder["driver"].abort()
        return {"done": True}

    model = FakeModelClient([plan_reply({"tool": "stopper", "input": "x"}, {"tool": "search", "input": "y"}), FINAL])
    driver = PlanExecuteDriver(model, ToolRegistry([search, make_tool("stopper", stopper)]), fast_config)
    holder["driver"] = driver
    state = await driver.run("q")

    assert state.status is RunStatus.ABORTED
    assert state.results == []
    assert state.final_answer is None
    assert len(model.calls) == 1
    assert driver.events.history[-1].payload == {"status": "aborted"}


@pytest.mark.asyncio
async def test_abort_while_failure_is_pending(fast_config):
    model = FakeModelClient([plan_reply({"tool": "broken", "input": "x"}), FINAL])
    driver = PlanExecuteDriver(model, ToolRegistry([broken_tool()]), fast_config)
    driver.events.subscribe(lambda e: driver.abort() if e.type == "failure_suspended" else None)
    state = await driver.run("q")

    assert state.status is RunStatus.ABORTED
    assert state.results == []
    assert driver.recovery.pending is None


@pytest.mark.asyncio
async def test_abort_before_start():
    model = FakeModelClient([FINAL])
    driver = PlanExecuteDriver(model, ToolRegistry([search]), OrchestratorConfig(env_file_path=None))
    driver.abort()
    state = await driver.run("q")
    assert state.status is RunStatus.ABORTED
    assert model.calls == []


@pytest.mark.asyncio
async def test_tool_timeout_fails_the_run():
    release = asyncio.Event()

    async def slow(query: str) -> str:
        await release.wait()
        return "late"

    config = OrchestratorConfig(
        env_file_path=None,
        limits=LimitsConfig(tool_wait_timeout_s=0.05, tool_poll_interval_s=0.005),
    )
    model = FakeModelClient([plan_reply({"tool": "slow", "input": "x"}, {"tool": "search", "input": "y"}), FINAL])
    driver = PlanExecuteDriver(model, ToolRegistry([search, make_tool("slow", slow)]), config)
    state = await driver.run("q")

    assert state.status is RunStatus.FAILED
    assert len(state.results) == 1
    assert not state.results[0].success
    assert state.error.startswith("Step 1 (step1) Step execution timeout after 0.05 seconds")
    assert state.final_answer is None
    assert len(model.calls) == 1
    release.set()
    await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_network_error_while_planning(fast_config):
    model = FakeModelClient([RuntimeError("fetch failed")])
    driver = PlanExecuteDriver(model, ToolRegistry([search]), fast_config)
    state = await driver.run("q")
    assert state.status is RunStatus.FAILED
    assert state.error == "Network error while generating the plan: fetch failed"
    error = driver.events.history[-1]
    assert error.type == "error"
    assert error.payload["error_type"] == "ModelStreamError"


@pytest.mark.asyncio
async def test_token_limit_while_answering_keeps_results(fast_config):
    model = FakeModelClient(
        [
            plan_reply({"tool": "search", "input": "x"}),
            RuntimeError("This model's maximum context length is 8192 tokens"),
        ]
    )
    driver = PlanExecuteDriver(model, ToolRegistry([search]), fast_config)
    state = await driver.run("q")
    assert state.status is RunStatus.FAILED
    assert "context limit" in state.error
    assert len(state.results) == 1


@pytest.mark.asyncio
async def test_empty_final_answer_fails(fast_config):
    model = FakeModelClient([plan_reply({"tool": "search", "input": "x"}), ""])
    driver = PlanExecuteDriver(model, ToolRegistry([search]), fast_config)
    state = await driver.run("q")
    assert state.status is RunStatus.FAILED
    assert "empty final answer" in state.error


@pytest.mark.asyncio
async def test_snapshot_and_event_replay(fast_config):
    model = FakeModelClient([plan_reply({"tool": "search", "input": "x"}), FINAL])
    driver = PlanExecuteDriver(model, ToolRegistry([search]), fast_config, run_id="run-1")
    await driver.run("q")

    snap = driver.snapshot()
    assert snap.run_id == "run-1"
    assert snap.status is RunStatus.DONE
    assert snap.final_answer == "All done."
    assert len(snap.results) == 1

    replayed = [e async for e in driver.events.stream()]
    assert [e.seq for e in replayed] == list(range(len(driver.events.history)))
    assert driver.events.events(after=len(replayed) - 2) == replayed[-1:]


class Handle:
    def __repr__(self):
        return "<Handle 7>"


@pytest.mark.asyncio
async def test_tool_returning_an_arbitrary_object_completes(fast_config):
    def open_handle(query: str) -> Handle:
        return Handle()

    model = FakeModelClient([plan_reply({"tool": "open_handle", "input": "x"}), FINAL])
    driver = PlanExecuteDriver(model, ToolRegistry([make_tool("open_handle", open_handle)]), fast_config)
    state = await driver.run("open it")

    assert state.status is RunStatus.DONE
    assert isinstance(state.results[0].tool_result, Handle)
    published = next(e for e in driver.events.history if e.type == "step_result")
    assert published.payload["result"]["tool_result"] == "<Handle 7>"
    assert driver.snapshot().model_dump(mode="json")["results"][0]["tool_result"] == "<Handle 7>"
