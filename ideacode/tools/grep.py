"""Grep tool for regex search across files."""

import asyncio
import re
from pathlib import Path
from typing import Any

from ideacode.logging import get_logger
from ideacode.tools.glob import display_path, is_project_root, iter_matching_files, load_ignore_patterns
from ideacode.tools.read import resolve_tool_path
from ideacode.tools.registry import Tool, ToolResult

log = get_logger(__name__)

DEFAULT_GREP_LIMIT = 50
MAX_GREP_LIMIT = 100
MAX_GREP_CHARS = 16_000


def _search(
    base: Path,
    regex: re.Pattern[str],
    limit: int,
    ignore: list[str] | None,
    runtime_base: Path | None,
) -> list[str]:
    hits: list[str] = []
    files = [base] if base.is_file() else iter_matching_files(base, "**/*", ignore)
    for file_path in files:
        try:
            content = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        label = display_path(file_path, runtime_base)
        for lineno, line in enumerate(content.split("\n"), start=1):
            line = line.rstrip("\r")
            if regex.search(line):
                hits.append(f"{label}:{lineno}:{line}")
        if len(hits) >= limit:
            break
    return hits


def format_grep_hits(hits: list[str], limit: int) -> str:
    """Join hits up to ``limit`` and cap the output size."""
    sliced = hits[:limit]
    out = "\n".join(sliced) or "none"
    if len(out) <= MAX_GREP_CHARS:
        return out
    consumed = 0
    kept = 0
    for line in sliced:
        if consumed + len(line) + 1 > MAX_GREP_CHARS:
            break
        consumed += len(line) + 1
        kept += 1
    dropped = len(sliced) - kept
    return (
        "\n".join(sliced[:kept])
        + f"\n\n... (truncated: {dropped} more matches, total {len(hits)} hit(s). "
        "Use a more specific pattern or path to reduce output.)"
    )


class GrepTool(Tool):
    """Search file contents with a regular expression."""

    name = "grep"
    description = (
        "Search files for regex. Prefer specific patterns and narrow path; search for "
        "the most recent or relevant occurrence by keyword. With path '.' (default), "
        ".gitignore entries are excluded; use path node_modules/<pkg> to search one "
        f"package. Returns at most limit matches (default {DEFAULT_GREP_LIMIT}, max "
        f"{MAX_GREP_LIMIT}). Long output is truncated."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pat": {
                "type": "string",
                "description": "Regular expression to search for",
            },
            "path": {
                "type": "string",
                "description": "File or directory to search (default: current directory)",
            },
            "limit": {
                "type": "integer",
                "description": f"Maximum matches (default {DEFAULT_GREP_LIMIT}, max {MAX_GREP_LIMIT})",
            },
        },
        "required": ["pat"],
    }

    async def execute(self, pat: str, path: str | None = None, limit: int | None = None, **kwargs: Any) -> ToolResult:
        """Return ``file:line:text`` hits for ``pat``."""
        try:
            regex = re.compile(pat)
        except re.error as e:
            return ToolResult(success=False, error=f"Invalid regex: {e}")

        runtime_base = kwargs.get("_runtime_base_path")
        base = resolve_tool_path(path or ".", runtime_base)
        if not base.exists():
            return ToolResult(success=False, error=f"Path not found: {path}")
        effective_limit = min(MAX_GREP_LIMIT, max(1, int(limit or DEFAULT_GREP_LIMIT)))
        ignore = load_ignore_patterns(base) if is_project_root(path) else None

        try:
            hits = await asyncio.to_thread(_search, base, regex, effective_limit, ignore, runtime_base)
        except OSError as e:
            log.error("Grep failed", pattern=pat, error=str(e))
            return ToolResult(success=False, error=str(e))
        return ToolResult(success=True, content=format_grep_hits(hits, effective_limit))
