from pathlib import Path

import pytest

from ideacode.tools.write import EditTool, WriteTool


@pytest.mark.asyncio
async def test_write_tool_creates_parent_directories(tmp_path: Path):
    result = await WriteTool().execute(path="nested/dir/out.txt", content="hello", _runtime_base_path=tmp_path)

    assert result.success is True
    assert result.content == "ok"
    assert (tmp_path / "nested" / "dir" / "out.txt").read_text(encoding="utf-8") == "hello"


@pytest.mark.asyncio
async def test_write_tool_overwrites_existing_file(tmp_path: Path):
    target = tmp_path / "out.txt"
    target.write_text("old", encoding="utf-8")

    await WriteTool().execute(path=str(target), content="new")

    assert target.read_text(encoding="utf-8") == "new"


@pytest.mark.asyncio
async def test_edit_tool_replaces_unique_match(tmp_path: Path):
    target = tmp_path / "code.py"
    target.write_text("a = 1\nb = 2\n", encoding="utf-8")

    result = await EditTool().execute(path=str(target), old="b = 2", new="b = 3")

    assert result.success is True
    assert target.read_text(encoding="utf-8") == "a = 1\nb = 3\n"


@pytest.mark.asyncio
async def test_edit_tool_requires_unique_match_unless_all(tmp_path: Path):
    target = tmp_path / "code.py"
    target.write_text("x\nx\n", encoding="utf-8")

    ambiguous = await EditTool().execute(path=str(target), old="x", new="y")
    assert ambiguous.success is False
    assert ambiguous.error == "old_string appears 2 times, must be unique (use all=true)"
    assert target.read_text(encoding="utf-8") == "x\nx\n"

    replaced = await EditTool().execute(path=str(target), old="x", new="y", all=True)
    assert replaced.success is True
    assert target.read_text(encoding="utf-8") == "y\ny\n"


@pytest.mark.asyncio
async def test_edit_tool_reports_missing_text(tmp_path: Path):
    target = tmp_path / "code.py"
    target.write_text("content", encoding="utf-8")

    result = await EditTool().execute(path=str(target), old="absent", new="x")

    assert result.success is False
    assert result.to_text() == "error: old_string not found"


@pytest.mark.asyncio
async def test_edit_tool_missing_file_fails(tmp_path: Path):
    result = await EditTool().execute(path=str(tmp_path / "missing.py"), old="a", new="b")

    assert result.success is False
