"""Write and edit tools for changing file contents."""

import asyncio
from pathlib import Path
from typing import Any

from ideacode.logging import get_logger
from ideacode.tools.read import resolve_tool_path
from ideacode.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def _write_text(file_path: Path, content: str) -> None:
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(content, encoding="utf-8")


class WriteTool(Tool):
    """Write content to files."""

    name = "write"
    description = "Write content to file"
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to write",
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
        },
        "required": ["path", "content"],
    }

    async def execute(self, path: str, content: str, **kwargs: Any) -> ToolResult:
        """Create or overwrite a file."""
        file_path = resolve_tool_path(path, kwargs.get("_runtime_base_path"))
        try:
            await asyncio.to_thread(_write_text, file_path, content)
        except OSError as e:
            log.error("Write failed", path=str(file_path), error=str(e))
            return ToolResult(success=False, error=str(e))
        return ToolResult(success=True, content="ok")


class EditTool(Tool):
    """Replace text inside an existing file."""

    name = "edit"
    description = "Replace old with new in file (old must be unique unless all=true)"
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to edit",
            },
            "old": {
                "type": "string",
                "description": "Exact text to replace",
            },
            "new": {
                "type": "string",
                "description": "Replacement text",
            },
            "all": {
                "type": "boolean",
                "description": "Replace every occurrence instead of requiring a unique match",
            },
        },
        "required": ["path", "old", "new"],
    }

    async def execute(self, path: str, old: str, new: str, all: bool = False, **kwargs: Any) -> ToolResult:
        """Replace ``old`` with ``new``.

        Args:
            path: Path to file
            old: Text to find
            new: Replacement text
            all: Replace every occurrence

        Returns:
            ToolResult with "ok" or the reason nothing was changed
        """
        file_path = resolve_tool_path(path, kwargs.get("_runtime_base_path"))
        try:
            text = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            log.error("Edit read failed", path=str(file_path), error=str(e))
            return ToolResult(success=False, error=str(e))

        if not old or old not in text:
            return ToolResult(success=False, error="old_string not found")
        count = text.count(old)
        if not all and count > 1:
            return ToolResult(
                success=False,
                error=f"old_string appears {count} times, must be unique (use all=true)",
            )

        updated = text.replace(old, new) if all else text.replace(old, new, 1)
        try:
            await asyncio.to_thread(_write_text, file_path, updated)
        except OSError as e:
            log.error("Edit write failed", path=str(file_path), error=str(e))
            return ToolResult(success=False, error=str(e))
        return ToolResult(success=True, content="ok")
