"""Tool call scheduling: parallel batches for read-only tools, strict order otherwise."""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ideacode.llm import ToolResultBlock, ToolUseBlock
from ideacode.logging import get_logger
from ideacode.tools.registry import ERROR_MARKER, format_tool_error, normalize_tool_name

log = get_logger(__name__)

MAX_TOOL_RESULT_CHARS = 3500
TRUNCATE_NOTE = (
    "\n\n(Output truncated to save context. Use read with offset/limit, grep with a "
    "specific pattern, or tail with fewer lines to get more.)"
)
DEFAULT_PARALLEL_SAFE_TOOLS = frozenset({"read", "glob", "grep", "web_fetch", "web_search"})

ToolRunner = Callable[[str, dict[str, Any]], Awaitable[str]]


def truncate_tool_result(content: str, max_chars: int = MAX_TOOL_RESULT_CHARS) -> str:
    """Cap tool output before it goes back into the conversation."""
    if len(content) <= max_chars:
        return content
    return content[:max_chars] + TRUNCATE_NOTE


def tool_arg_preview(tool_name: str, args: dict[str, Any], max_chars: int = 140) -> str:
    """One-line summary of a call's arguments for status display."""
    if tool_name == "bash":
        cmd = " ".join(str(args.get("cmd", "")).split())
        return cmd[:max_chars] or "—"
    path = args.get("path")
    if isinstance(path, str) and path:
        return path[:max_chars]
    first = next(iter(args.values()), "")
    return str(first if first is not None else "")[:max_chars] or "—"


@dataclass
class PlannedToolCall:
    """A tool use ready for execution."""

    correlation_id: str
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    arg_preview: str = ""

    @classmethod
    def from_block(cls, block: ToolUseBlock) -> "PlannedToolCall":
        name = normalize_tool_name(block.name)
        args = dict(block.input or {})
        return cls(
            correlation_id=block.id,
            tool_name=name,
            args=args,
            arg_preview=tool_arg_preview(name, args),
        )


class ToolCallScheduler:
    """Execute one response's tool calls and return results in request order.

    Consecutive calls to parallel-safe tools form a batch that runs
    concurrently. Any other call drains the pending batch first and then runs
    alone, so mutating calls always observe the model's requested order.
    """

    def __init__(
        self,
        runner: ToolRunner,
        parallel_safe: set[str] | frozenset[str] | list[str] | None = None,
        parallel: bool = True,
        max_result_chars: int = MAX_TOOL_RESULT_CHARS,
        status_callback: Callable[[str], None] | None = None,
        result_callback: Callable[[PlannedToolCall, str], None] | None = None,
    ):
        self.runner = runner
        self.parallel_safe = frozenset(
            normalize_tool_name(name)
            for name in (DEFAULT_PARALLEL_SAFE_TOOLS if parallel_safe is None else parallel_safe)
        )
        self.parallel = parallel
        self.max_result_chars = max_result_chars
        self.status_callback = status_callback
        self.result_callback = result_callback

    def _emit_status(self, status: str) -> None:
        if self.status_callback:
            self.status_callback(status)

    def is_parallel_safe(self, tool_name: str) -> bool:
        return self.parallel and normalize_tool_name(tool_name) in self.parallel_safe

    async def _run_one(self, planned: PlannedToolCall) -> str:
        try:
            result = await self.runner(planned.tool_name, planned.args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Tool raised", tool=planned.tool_name, call_id=planned.correlation_id, error=str(e))
            result = format_tool_error(str(e))
        if not isinstance(result, str):
            result = str(result)
        return result

    def _record(self, planned: PlannedToolCall, result: str, results: list[ToolResultBlock]) -> None:
        content = truncate_tool_result(result, self.max_result_chars)
        if self.result_callback:
            self.result_callback(planned, content)
        log.debug(
            "Tool result",
            tool=planned.tool_name,
            call_id=planned.correlation_id,
            ok=not result.startswith(ERROR_MARKER),
            chars=len(result),
        )
        results.append(ToolResultBlock(tool_use_id=planned.correlation_id, content=content))

    async def _run_batch(self, batch: list[PlannedToolCall], results: list[ToolResultBlock]) -> None:
        if not batch:
            return
        if len(batch) == 1:
            self._emit_status(f"Running {batch[0].tool_name}…")
        else:
            self._emit_status(f"Running {len(batch)} tools in parallel…")
        started = time.monotonic()
        settled = await asyncio.gather(*(self._run_one(planned) for planned in batch))
        counts = Counter(planned.tool_name for planned in batch)
        log.info(
            "Parallel tool batch completed",
            size=len(batch),
            tools=", ".join(f"{name}x{n}" if n > 1 else name for name, n in counts.items()),
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        for planned, result in zip(batch, settled):
            self._record(planned, result, results)

    async def schedule(self, tool_uses: list[ToolUseBlock]) -> list[ToolResultBlock]:
        """Run ``tool_uses`` and return one result per call, in request order."""
        results: list[ToolResultBlock] = []
        batch: list[PlannedToolCall] = []
        for block in tool_uses:
            planned = PlannedToolCall.from_block(block)
            if self.is_parallel_safe(planned.tool_name):
                batch.append(planned)
                continue
            await self._run_batch(batch, results)
            batch = []
            self._emit_status(f"Running {planned.tool_name}…")
            self._record(planned, await self._run_one(planned), results)
        await self._run_batch(batch, results)
        return results
