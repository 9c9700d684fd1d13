from pathlib import Path

import pytest

from ideacode.config import Config, set_config
from ideacode.tools.shell import BashTool, clamp_timeout_ms, is_blocked_shell_command


@pytest.fixture(autouse=True)
def _config():
    set_config(Config())


@pytest.mark.asyncio
async def test_bash_merges_stdout_and_stderr(tmp_path: Path):
    result = await BashTool().execute(cmd="echo out; echo err 1>&2", _runtime_base_path=tmp_path)

    assert result.success is True
    assert "out" in result.content
    assert "err" in result.content


@pytest.mark.asyncio
async def test_bash_runs_in_runtime_base_path(tmp_path: Path):
    (tmp_path / "marker.txt").write_text("x", encoding="utf-8")

    result = await BashTool().execute(cmd="ls", _runtime_base_path=tmp_path)

    assert "marker.txt" in result.content


@pytest.mark.asyncio
async def test_bash_empty_output_placeholder(tmp_path: Path):
    result = await BashTool().execute(cmd="true", _runtime_base_path=tmp_path)

    assert result.content == "(empty)"


@pytest.mark.asyncio
async def test_bash_timeout_terminates_process(tmp_path: Path):
    result = await BashTool().execute(cmd="echo started; sleep 30", timeout_ms=1000, _runtime_base_path=tmp_path)

    assert result.success is True
    assert "started" in result.content
    assert "(timeout 1s reached, sending SIGTERM…)" in result.content


@pytest.mark.asyncio
async def test_bash_blocks_configured_patterns(tmp_path: Path):
    result = await BashTool().execute(cmd="echo hi && rm -rf /", _runtime_base_path=tmp_path)

    assert result.success is False
    assert "blocked pattern" in (result.error or "")


def test_blocked_command_detection():
    assert is_blocked_shell_command("", ["x"]) == (True, "empty_command")
    assert is_blocked_shell_command("ls; mkfs /dev/sda", ["mkfs"]) == (True, "mkfs")
    assert is_blocked_shell_command("ls -la", ["mkfs"]) == (False, "")


def test_clamp_timeout_ms():
    assert clamp_timeout_ms(None, 30_000) == 30_000
    assert clamp_timeout_ms("abc", 30_000) == 30_000
    assert clamp_timeout_ms(10, 30_000) == 1_000
    assert clamp_timeout_ms(5_000, 30_000) == 5_000
