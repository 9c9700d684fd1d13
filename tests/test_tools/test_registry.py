import asyncio
from typing import Any

import pytest

from ideacode.config import Config, set_config
from ideacode.tools.registry import (
    Tool,
    ToolRegistry,
    ToolResult,
    format_tool_error,
    is_error_result,
    register_default_tools,
)


class CountTool(Tool):
    name = "count"
    description = "Count things"
    parameters = {
        "type": "object",
        "properties": {
            "n": {"type": "integer"},
            "loud": {"type": "boolean"},
            "label": {"type": "string"},
        },
        "required": ["n"],
    }

    async def execute(self, n: int, loud: bool = False, label: str = "", **kwargs: Any) -> ToolResult:
        text = f"{label}{n}"
        return ToolResult(success=True, content=text.upper() if loud else text)


class ExplodingTool(Tool):
    name = "explode"
    description = "Always raises"
    parameters = {"type": "object", "properties": {}}

    async def execute(self, **kwargs: Any) -> ToolResult:
        raise OSError("device not ready")


class SlowTool(Tool):
    name = "slow"
    description = "Sleeps"
    parameters = {"type": "object", "properties": {}}
    timeout_seconds = 1.0

    async def execute(self, **kwargs: Any) -> ToolResult:
        await asyncio.sleep(5)
        return ToolResult(success=True, content="late")


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(CountTool())
    registry.register(ExplodingTool())
    registry.register(SlowTool())
    return registry


def test_tool_result_populates_error_from_content_on_failure() -> None:
    result = ToolResult(success=False, content="command failed with exit code 1")

    assert result.error == "command failed with exit code 1"
    assert result.to_text() == "error: command failed with exit code 1"


def test_format_tool_error_adds_marker_once() -> None:
    assert format_tool_error("boom") == "error: boom"
    assert format_tool_error("error: boom") == "error: boom"
    assert is_error_result("error: x")
    assert not is_error_result("fine")


@pytest.mark.asyncio
async def test_run_coerces_string_arguments():
    output = await _registry().run("count", {"n": "7", "loud": "true", "label": "x"})

    assert output == "X7"


@pytest.mark.asyncio
async def test_run_reports_wrong_argument_type():
    output = await _registry().run("count", {"n": "seven"})

    assert output.startswith("error:")
    assert "Argument 'n' must be of type integer" in output


@pytest.mark.asyncio
async def test_run_reports_unknown_tool():
    assert await _registry().run("nope", {}) == "error: Unknown tool: nope"


@pytest.mark.asyncio
async def test_run_reports_underlying_exception_message():
    assert await _registry().run("explode", {}) == "error: device not ready"


@pytest.mark.asyncio
async def test_run_times_out_slow_tool():
    output = await _registry().run("slow", {})

    assert output.startswith("error:")
    assert "timed out after 1s" in output


def test_lookup_is_case_insensitive():
    registry = _registry()

    assert registry.has_tool("COUNT")
    assert registry.get(" Count ").name == "count"
    registry.unregister("count")
    assert not registry.has_tool("count")


def test_web_search_registered_only_with_api_key():
    config = Config()
    set_config(config)
    without_key = register_default_tools(ToolRegistry())
    assert "web_search" not in without_key.list_tools()
    assert {"read", "write", "edit", "glob", "grep", "bash", "web_fetch"} <= set(without_key.list_tools())

    config.tools.web_search.api_key = "brave-key"
    with_key = register_default_tools(ToolRegistry())
    assert "web_search" in with_key.list_tools()


def test_definitions_expose_schema():
    definitions = _registry().get_definitions()

    count = next(item for item in definitions if item["name"] == "count")
    assert count["parameters"]["required"] == ["n"]


class ClosingTool(CountTool):
    def __init__(self, name: str, fail: bool = False):
        self.name = name
        self.fail = fail
        self.closed = False

    async def close(self) -> None:
        self.closed = True
        if self.fail:
            raise RuntimeError("already closed")


@pytest.mark.asyncio
async def test_close_closes_every_tool_even_after_a_failure():
    registry = ToolRegistry()
    first = ClosingTool("first", fail=True)
    second = ClosingTool("second")
    registry.register(first)
    registry.register(second)

    await registry.close()

    assert first.closed and second.closed


def test_unregister_returns_removed_tool():
    registry = _registry()

    removed = registry.unregister("count")

    assert isinstance(removed, CountTool)
    assert registry.unregister("count") is None
