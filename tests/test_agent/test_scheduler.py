import asyncio
from typing import Any

import pytest

from ideacode.llm import ToolUseBlock
from ideacode.scheduler import (
    MAX_TOOL_RESULT_CHARS,
    TRUNCATE_NOTE,
    ToolCallScheduler,
    tool_arg_preview,
    truncate_tool_result,
)


class RecordingRunner:
    """Fake tool runner that records start/finish order."""

    def __init__(self, gate_tools: set[str] | None = None):
        self.events: list[str] = []
        self.active = 0
        self.max_active = 0
        self.gate_tools = gate_tools or set()
        self.all_started = asyncio.Event()
        self.expected_concurrent = 0

    async def __call__(self, name: str, args: dict[str, Any]) -> str:
        label = f"{name}:{args.get('path', '')}"
        self.events.append(f"start {label}")
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        if name in self.gate_tools:
            if self.active >= self.expected_concurrent:
                self.all_started.set()
            await asyncio.wait_for(self.all_started.wait(), timeout=2)
        await asyncio.sleep(0)
        self.active -= 1
        self.events.append(f"end {label}")
        return f"result {label}"


def _use(call_id: str, name: str, path: str) -> ToolUseBlock:
    return ToolUseBlock(id=call_id, name=name, input={"path": path})


@pytest.mark.asyncio
async def test_read_only_batch_runs_concurrently_before_write():
    runner = RecordingRunner(gate_tools={"read"})
    runner.expected_concurrent = 3
    statuses: list[str] = []
    scheduler = ToolCallScheduler(runner, status_callback=statuses.append)
    uses = [
        _use("c1", "read", "a"),
        _use("c2", "read", "b"),
        _use("c3", "read", "c"),
        ToolUseBlock(id="c4", name="write", input={"path": "d", "content": "x"}),
    ]

    results = await scheduler.schedule(uses)

    assert [result.tool_use_id for result in results] == ["c1", "c2", "c3", "c4"]
    assert runner.max_active == 3
    write_start = runner.events.index("start write:d")
    assert all(runner.events.index(f"end read:{p}") < write_start for p in "abc")
    assert "Running 3 tools in parallel…" in statuses
    assert "Running write…" in statuses


@pytest.mark.asyncio
async def test_mutating_call_splits_parallel_batches():
    runner = RecordingRunner()
    scheduler = ToolCallScheduler(runner)
    uses = [
        _use("r1", "read", "a"),
        ToolUseBlock(id="b1", name="bash", input={"cmd": "make"}),
        _use("r2", "grep", "b"),
    ]

    results = await scheduler.schedule(uses)

    assert [result.tool_use_id for result in results] == ["r1", "b1", "r2"]
    assert runner.events == [
        "start read:a", "end read:a",
        "start bash:", "end bash:",
        "start grep:b", "end grep:b",
    ]


@pytest.mark.asyncio
async def test_parallel_disabled_runs_strictly_in_order():
    runner = RecordingRunner()
    scheduler = ToolCallScheduler(runner, parallel=False)

    results = await scheduler.schedule([_use("a", "read", "1"), _use("b", "read", "2")])

    assert [result.tool_use_id for result in results] == ["a", "b"]
    assert runner.max_active == 1


@pytest.mark.asyncio
async def test_result_order_matches_request_order_when_finishing_out_of_order():
    async def runner(name: str, args: dict[str, Any]) -> str:
        await asyncio.sleep(float(args["delay"]))
        return f"done {args['delay']}"

    scheduler = ToolCallScheduler(runner)
    uses = [
        ToolUseBlock(id="slow", name="read", input={"delay": 0.05}),
        ToolUseBlock(id="fast", name="read", input={"delay": 0}),
    ]

    results = await scheduler.schedule(uses)

    assert [(r.tool_use_id, r.content) for r in results] == [("slow", "done 0.05"), ("fast", "done 0")]


@pytest.mark.asyncio
async def test_runner_exception_becomes_error_result():
    async def runner(name: str, args: dict[str, Any]) -> str:
        if args.get("path") == "bad":
            raise RuntimeError("disk on fire")
        return "fine"

    scheduler = ToolCallScheduler(runner)

    results = await scheduler.schedule([_use("1", "read", "bad"), _use("2", "read", "good")])

    assert results[0].content == "error: disk on fire"
    assert results[1].content == "fine"


@pytest.mark.asyncio
async def test_long_results_are_truncated_with_note():
    async def runner(name: str, args: dict[str, Any]) -> str:
        return "z" * (MAX_TOOL_RESULT_CHARS + 100)

    seen: list[tuple[str, str]] = []
    scheduler = ToolCallScheduler(runner, result_callback=lambda planned, out: seen.append((planned.tool_name, out)))

    results = await scheduler.schedule([_use("1", "read", "big")])

    assert results[0].content == "z" * MAX_TOOL_RESULT_CHARS + TRUNCATE_NOTE
    assert seen == [("read", results[0].content)]


@pytest.mark.asyncio
async def test_tool_names_are_normalized():
    calls: list[str] = []

    async def runner(name: str, args: dict[str, Any]) -> str:
        calls.append(name)
        return "ok"

    scheduler = ToolCallScheduler(runner)
    await scheduler.schedule([ToolUseBlock(id="1", name=" Read ", input={})])

    assert calls == ["read"]
    assert scheduler.is_parallel_safe("GREP")
    assert not scheduler.is_parallel_safe("bash")


@pytest.mark.asyncio
async def test_empty_tool_list_returns_no_results():
    async def runner(name: str, args: dict[str, Any]) -> str:
        raise AssertionError("should not run")

    assert await ToolCallScheduler(runner).schedule([]) == []


def test_truncate_keeps_short_output():
    assert truncate_tool_result("short") == "short"
    assert truncate_tool_result("x" * MAX_TOOL_RESULT_CHARS) == "x" * MAX_TOOL_RESULT_CHARS


def test_arg_preview_prefers_command_then_path():
    assert tool_arg_preview("bash", {"cmd": "ls   -la\n/tmp"}) == "ls -la /tmp"
    assert tool_arg_preview("read", {"path": "src/app.py", "limit": 5}) == "src/app.py"
    assert tool_arg_preview("grep", {"pat": "TODO"}) == "TODO"
    assert tool_arg_preview("glob", {}) == "—"
