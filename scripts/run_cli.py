#!/usr/bin/env python3
"""Run a request through the orchestrator from the command line.

Prints phases, step results and the final answer as they arrive, and asks
what to do when a step fails (retry / regenerate / skip).
"""
import argparse
import json
import os
import sys
import time
from typing import Any

import httpx

ORCHESTRATOR_URL = os.environ.get("ORCHESTRATOR_BASE_URL", "http://127.0.0.1:8000")
DECISIONS = {"r": "retry", "g": "regenerate", "s": "skip"}


def _trunc(s: Any, max_len: int = 100) -> str:
    s = s if isinstance(s, str) else json.dumps(s, ensure_ascii=False, default=str)
    return (s[:max_len] + "…") if len(s) > max_len else s


def _trace(label: str, body: Any, trace: bool) -> None:
    if not trace:
        return
    print(f"[{label}]", flush=True)
    print(json.dumps(body, indent=2, ensure_ascii=False)[:2000], flush=True)


def ask_decision(payload: dict) -> str:
    print(f"  [step {payload['step_index'] + 1}] ✗ {payload['tool_name']} failed: {payload['error']}", flush=True)
    if payload.get("available_fields") is not None:
        print(f"    available fields: {', '.join(payload['available_fields']) or '(none)'}", flush=True)
    while True:
        answer = input("    [r]etry, re[g]enerate or [s]kip? ").strip().lower()[:1]
        if answer in DECISIONS:
            return DECISIONS[answer]


def print_event(event: dict, state: dict) -> None:
    kind, p = event["type"], event["payload"]
    if kind == "status":
        print(f"-- {p['status']}", flush=True)
    elif kind == "phase" and p["phase"] != "final_answer":
        print(f"<{p['phase']}> {_trunc(p['content'], 200)}", flush=True)
    elif kind == "plan":
        for i, step in enumerate(p["steps"], 1):
            print(f"  {i}. {step['tool']}: {_trunc(step.get('reason', ''), 80)}", flush=True)
    elif kind == "step_started":
        print(f"  [step {p['step_index'] + 1}] → {p['step']['tool']}: {_trunc(p['step'].get('input'))}", flush=True)
    elif kind == "step_regenerated":
        print(f"  [step {p['step_index'] + 1}] regenerated → {p['step']['tool']}: {_trunc(p['step'].get('input'))}", flush=True)
    elif kind == "step_result":
        r = p["result"]
        mark = "✓" if r["success"] else "✗"
        if p.get("attempts", 1) > 1:
            mark += f" after {p['attempts']} attempts"
        print(f"  [step {r['step_index'] + 1}] ← {r['tool_name']} {mark} {_trunc(r['observation'], 150)}", flush=True)
    elif kind == "final_answer_delta":
        if not state.get("streaming"):
            state["streaming"] = True
            print("Final answer:", flush=True)
        print(p["delta"], end="", flush=True)
    elif kind == "error":
        print(f"Error: {p['message']}", file=sys.stderr)


def main():
    parser = argparse.ArgumentParser(description="Send a request to the plan-execute orchestrator and follow it to the end.")
    parser.add_argument("query", nargs="*", help="Request text")
    parser.add_argument("--url", default=ORCHESTRATOR_URL, help="Orchestrator base URL")
    parser.add_argument("--poll", type=float, default=0.5, help="Seconds between event polls")
    parser.add_argument("--trace", action="store_true", help="Print raw responses")
    args = parser.parse_args()
    query = " ".join(args.query).strip()
    if not query:
        print('Usage: python scripts/run_cli.py "Your request here"', file=sys.stderr)
        sys.exit(1)

    base = args.url.rstrip("/")
    state: dict[str, Any] = {}
    try:
        with httpx.Client(base_url=base, timeout=30) as client:
            r = client.post("/runs", json={"query": query})
            r.raise_for_status()
            run_id = r.json()["run_id"]
            _trace("RUN", r.json(), args.trace)
            print("Query:", query, flush=True)
            print("Run ID:", run_id, flush=True)
            after = -1
            while True:
                events = client.get(f"/runs/{run_id}/events", params={"after": after}).json()
                for event in events:
                    after = event["seq"]
                    _trace("EVENT", event, args.trace)
                    print_event(event, state)
                    if event["type"] == "failure_suspended":
                        decision = ask_decision(event["payload"])
                        client.post(f"/runs/{run_id}/decision", json={"decision": decision}).raise_for_status()
                snapshot = client.get(f"/runs/{run_id}").json()
                if snapshot["status"] in ("done", "failed", "aborted") and not client.get(
                    f"/runs/{run_id}/events", params={"after": after}
                ).json():
                    break
                time.sleep(args.poll)
    except httpx.ConnectError:
        print(f"Cannot reach orchestrator at {args.url}. Is it running?", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        if "run_id" in locals():
            httpx.post(f"{base}/runs/{run_id}/abort", timeout=10)
        print("\nAborted.", file=sys.stderr)
        sys.exit(130)

    if state.get("streaming"):
        print(flush=True)
    print("---", flush=True)
    if snapshot.get("final_answer") and not state.get("streaming"):
        print(snapshot["final_answer"], flush=True)
    if snapshot.get("error"):
        print("Error:", snapshot["error"], file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
