"""Read tool for reading file contents."""

import asyncio
from pathlib import Path
from typing import Any

from ideacode.logging import get_logger
from ideacode.tools.registry import Tool, ToolResult

log = get_logger(__name__)

DEFAULT_READ_LIMIT = 500


def resolve_tool_path(path: str, base_path: Path | None) -> Path:
    """Resolve a tool path argument against the runtime working directory."""
    candidate = Path(path).expanduser()
    if not candidate.is_absolute() and base_path is not None:
        candidate = base_path / candidate
    return candidate.resolve()


def format_numbered_lines(content: str, offset: int = 0, limit: int | None = None) -> str:
    """Render ``content`` with right-aligned line numbers.

    At most ``DEFAULT_READ_LIMIT`` lines are returned per call; a trailing note
    reports how many lines remain past the window.
    """
    if content == "":
        return ""
    lines = content.split("\n")
    if content.endswith("\n"):
        lines = lines[:-1]
    offset = max(0, int(offset or 0))
    requested = len(lines) if limit is None else max(0, int(limit))
    window = min(requested, DEFAULT_READ_LIMIT)
    selected = lines[offset:offset + window]
    body = "\n".join(
        f"{offset + idx + 1:>4}| {line}" for idx, line in enumerate(selected)
    )
    remaining = len(lines) - offset - len(selected)
    if remaining > 0:
        body += f"\n\n... ({remaining} more line(s). Use offset/limit to read in chunks.)"
    return body


class ReadTool(Tool):
    """Read file contents."""

    name = "read"
    description = (
        "Read file with line numbers (file path, not directory). Use limit and offset "
        "to read a portion; avoid reading huge files in one go. Long output is "
        "truncated; use offset/limit to get more."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to read",
            },
            "offset": {
                "type": "integer",
                "description": "Number of lines to skip before reading (0-indexed)",
            },
            "limit": {
                "type": "integer",
                "description": f"Maximum number of lines to read (capped at {DEFAULT_READ_LIMIT})",
            },
        },
        "required": ["path"],
    }

    async def execute(self, path: str, offset: int | None = None, limit: int | None = None, **kwargs: Any) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file
            offset: Optional number of lines to skip
            limit: Optional line limit

        Returns:
            ToolResult with numbered file contents
        """
        file_path = resolve_tool_path(path, kwargs.get("_runtime_base_path"))
        if not file_path.exists():
            return ToolResult(success=False, error=f"File not found: {path}")
        if not file_path.is_file():
            return ToolResult(success=False, error=f"Not a file: {path}")

        try:
            content = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            log.error("Read failed", path=str(file_path), error=str(e))
            return ToolResult(success=False, error=str(e))

        return ToolResult(
            success=True,
            content=format_numbered_lines(content, offset=offset or 0, limit=limit),
        )
