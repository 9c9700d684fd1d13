"""Bash tool for executing shell commands."""

import asyncio
import os
import re
import shlex
import signal
from typing import Any

from ideacode.config import get_config
from ideacode.logging import get_logger
from ideacode.tools.registry import Tool, ToolResult

log = get_logger(__name__)

MIN_TIMEOUT_MS = 1_000
MAX_TIMEOUT_MS = 60 * 60 * 1000
TERM_GRACE_SECONDS = 2.0
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}


def _split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in lexer:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def is_blocked_shell_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Evaluate command against blocked patterns, per segment and as a whole."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return True, "empty_command"
    try:
        segment_texts = [" ".join(tokens) for tokens in _split_shell_segments(cleaned)]
    except ValueError:
        segment_texts = []
    targets = [cleaned, *segment_texts]
    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        literal = re.compile(re.escape(pattern))
        if any(literal.search(target) for target in targets):
            return True, pattern
    return False, ""


def clamp_timeout_ms(value: Any, default_ms: int) -> int:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default_ms
    if parsed <= 0:
        return default_ms
    return int(max(MIN_TIMEOUT_MS, min(MAX_TIMEOUT_MS, round(parsed))))


class BashTool(Tool):
    """Execute shell commands."""

    name = "bash"
    description = (
        "Run shell command. Use for things the other tools don't cover (e.g. running "
        "tests, installs, one-off commands). Prefer read/grep/glob for file content and "
        "search; use targeted commands and avoid dumping huge output."
    )
    # The command enforces its own timeout; this only backs it up.
    timeout_seconds = MAX_TIMEOUT_MS / 1000 + 10
    parameters = {
        "type": "object",
        "properties": {
            "cmd": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "timeout_ms": {
                "type": "integer",
                "description": "Timeout in milliseconds (optional, default from config)",
            },
        },
        "required": ["cmd"],
    }

    def __init__(self):
        self.config = get_config()

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
        """Signal the command's whole process group so children die too."""
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass

    async def _terminate(self, process: asyncio.subprocess.Process, chunks: list[str]) -> None:
        """SIGTERM, then SIGKILL when the process ignores it."""
        self._signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=TERM_GRACE_SECONDS)
        except asyncio.TimeoutError:
            self._signal_group(process, signal.SIGKILL)
            await process.wait()
            chunks.append("\n(process did not exit after SIGTERM; sent SIGKILL)")
            return
        # The shell may exit before its children; clear out the rest of the group.
        self._signal_group(process, signal.SIGKILL)

    async def execute(self, cmd: str, timeout_ms: int | None = None, **kwargs: Any) -> ToolResult:
        """Execute a shell command.

        Args:
            cmd: Shell command to execute
            timeout_ms: Optional timeout override in milliseconds

        Returns:
            ToolResult with combined stdout/stderr
        """
        blocked, matched = is_blocked_shell_command(cmd, self.config.tools.bash.blocked)
        if blocked:
            reason = "Command is empty" if matched == "empty_command" else f"Command matches blocked pattern: {matched}"
            log.warning("Blocked unsafe command", command=cmd, reason=reason)
            return ToolResult(success=False, error=f"Command blocked: {reason}")

        default_ms = clamp_timeout_ms(int(self.config.tools.bash.timeout) * 1000, 30_000)
        effective_ms = clamp_timeout_ms(timeout_ms, default_ms)
        cwd = kwargs.get("_runtime_base_path")

        log.info("Executing shell command", command=cmd, timeout_ms=effective_ms)
        process = await asyncio.create_subprocess_exec(
            "/bin/sh",
            "-c",
            cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(cwd) if cwd else None,
            env=os.environ.copy(),
            start_new_session=True,
        )

        chunks: list[str] = []
        communicate_task = asyncio.create_task(process.communicate())
        try:
            done, _ = await asyncio.wait({communicate_task}, timeout=effective_ms / 1000)
            if communicate_task not in done:
                chunks.append(f"\n(timeout {round(effective_ms / 1000)}s reached, sending SIGTERM…)")
                await self._terminate(process, chunks)
            stdout, _ = await communicate_task
        except asyncio.CancelledError:
            self._signal_group(process, signal.SIGKILL)
            if process.returncode is None:
                await process.wait()
            communicate_task.cancel()
            raise

        output = (stdout or b"").decode("utf-8", errors="replace") + "".join(chunks)
        return ToolResult(success=True, content=output.strip() or "(empty)")
