"""Glob tool for finding files by pattern."""

import asyncio
import fnmatch
from pathlib import Path
from typing import Any, Iterator

from ideacode.logging import get_logger
from ideacode.tools.read import resolve_tool_path
from ideacode.tools.registry import Tool, ToolResult

log = get_logger(__name__)

DEFAULT_IGNORES = ["node_modules", "dist"]
ALWAYS_IGNORED = {".git"}


def load_ignore_patterns(root: Path) -> list[str]:
    """Read ``.gitignore`` entries under ``root`` (defaults when absent)."""
    gitignore = root / ".gitignore"
    try:
        raw_lines = gitignore.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        return list(DEFAULT_IGNORES)
    patterns: list[str] = []
    for raw in raw_lines:
        line = raw.strip()
        if not line or line.startswith("#") or line.startswith("!"):
            continue
        cleaned = line.strip("/")
        if cleaned:
            patterns.append(cleaned)
    return patterns or list(DEFAULT_IGNORES)


def is_ignored(relative: Path, patterns: list[str]) -> bool:
    """Match a root-relative path against gitignore-style patterns."""
    parts = relative.parts
    if any(part in ALWAYS_IGNORED for part in parts):
        return True
    rel_text = relative.as_posix()
    for pattern in patterns:
        if "/" in pattern:
            if rel_text == pattern or rel_text.startswith(pattern + "/") or fnmatch.fnmatch(rel_text, pattern):
                return True
            continue
        if any(fnmatch.fnmatch(part, pattern) for part in parts):
            return True
    return False


def iter_matching_files(base: Path, pattern: str, ignore: list[str] | None) -> Iterator[Path]:
    """Yield files under ``base`` matching ``pattern``, skipping ignored paths."""
    for candidate in base.glob(pattern):
        if not candidate.is_file():
            continue
        if ignore is not None:
            try:
                relative = candidate.relative_to(base)
            except ValueError:
                relative = candidate
            if is_ignored(relative, ignore):
                continue
        yield candidate


def display_path(path: Path, base_path: Path | None) -> str:
    if base_path is not None:
        try:
            return path.relative_to(base_path).as_posix()
        except ValueError:
            pass
    return str(path)


def is_project_root(path: str | None) -> bool:
    return (path or ".").strip() in {"", "."}


class GlobTool(Tool):
    """Find files by pattern."""

    name = "glob"
    description = (
        "Find files by pattern, sorted by mtime. With path '.' (default), .gitignore "
        "entries (e.g. node_modules, dist) are excluded; use path node_modules/<pkg> "
        "to search inside a single package."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pat": {
                "type": "string",
                "description": "Glob pattern (e.g., '**/*.py', 'src/**/*.ts')",
            },
            "path": {
                "type": "string",
                "description": "Directory to search from (default: current directory)",
            },
        },
        "required": ["pat"],
    }

    @staticmethod
    def _find(base: Path, pattern: str, ignore: list[str] | None) -> list[Path]:
        matches = list(iter_matching_files(base, pattern, ignore))
        return sorted(matches, key=lambda item: item.stat().st_mtime, reverse=True)

    async def execute(self, pat: str, path: str | None = None, **kwargs: Any) -> ToolResult:
        """Find files matching pattern, newest first."""
        runtime_base = kwargs.get("_runtime_base_path")
        base = resolve_tool_path(path or ".", runtime_base)
        if not base.is_dir():
            return ToolResult(success=False, error=f"Not a directory: {path}")
        ignore = load_ignore_patterns(base) if is_project_root(path) else None
        try:
            matches = await asyncio.to_thread(self._find, base, pat, ignore)
        except (OSError, ValueError, NotImplementedError) as e:
            log.error("Glob failed", pattern=pat, error=str(e))
            return ToolResult(success=False, error=str(e))

        if not matches:
            return ToolResult(success=True, content="none")
        return ToolResult(
            success=True,
            content="\n".join(display_path(match, runtime_base) for match in matches),
        )
