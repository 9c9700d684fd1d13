import os
from pathlib import Path

import pytest

from ideacode.tools.glob import GlobTool, is_ignored, load_ignore_patterns
from ideacode.tools.grep import MAX_GREP_CHARS, GrepTool, format_grep_hits


def _project(tmp_path: Path) -> Path:
    tmp_path = tmp_path.resolve()
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("import os\nTODO = 'fix me'\n", encoding="utf-8")
    (tmp_path / "src" / "util.py").write_text("def helper():\n    return 1\n", encoding="utf-8")
    (tmp_path / "node_modules" / "pkg").mkdir(parents=True)
    (tmp_path / "node_modules" / "pkg" / "index.py").write_text("TODO = 1\n", encoding="utf-8")
    (tmp_path / ".gitignore").write_text("# deps\nnode_modules/\n", encoding="utf-8")
    return tmp_path


@pytest.mark.asyncio
async def test_glob_skips_ignored_paths_and_sorts_by_mtime(tmp_path: Path):
    root = _project(tmp_path)
    os.utime(root / "src" / "app.py", (1_000_000, 1_000_000))
    os.utime(root / "src" / "util.py", (2_000_000, 2_000_000))

    result = await GlobTool().execute(pat="**/*.py", _runtime_base_path=root)

    assert result.success is True
    assert result.content.splitlines() == ["src/util.py", "src/app.py"]


@pytest.mark.asyncio
async def test_glob_inside_ignored_directory_when_targeted(tmp_path: Path):
    root = _project(tmp_path)

    result = await GlobTool().execute(pat="*.py", path="node_modules/pkg", _runtime_base_path=root)

    assert result.content == "node_modules/pkg/index.py"


@pytest.mark.asyncio
async def test_glob_without_matches_returns_none(tmp_path: Path):
    result = await GlobTool().execute(pat="*.rs", _runtime_base_path=_project(tmp_path))

    assert result.content == "none"


@pytest.mark.asyncio
async def test_grep_reports_file_line_and_text(tmp_path: Path):
    root = _project(tmp_path)

    result = await GrepTool().execute(pat="TODO", _runtime_base_path=root)

    assert result.success is True
    assert result.content == "src/app.py:2:TODO = 'fix me'"


@pytest.mark.asyncio
async def test_grep_single_file_and_limit(tmp_path: Path):
    tmp_path = tmp_path.resolve()
    target = tmp_path / "many.txt"
    target.write_text("\n".join("match" for _ in range(20)), encoding="utf-8")

    result = await GrepTool().execute(pat="match", path="many.txt", limit=5, _runtime_base_path=tmp_path)

    assert len(result.content.splitlines()) == 5
    assert result.content.splitlines()[0] == "many.txt:1:match"


@pytest.mark.asyncio
async def test_grep_invalid_regex_fails(tmp_path: Path):
    result = await GrepTool().execute(pat="(unclosed", _runtime_base_path=tmp_path)

    assert result.success is False
    assert "Invalid regex" in (result.error or "")


@pytest.mark.asyncio
async def test_grep_no_hits_returns_none(tmp_path: Path):
    result = await GrepTool().execute(pat="zzz_not_here", _runtime_base_path=_project(tmp_path))

    assert result.content == "none"


def test_format_grep_hits_truncates_large_output():
    hits = [f"file.py:{i}:" + "y" * 400 for i in range(100)]

    out = format_grep_hits(hits, limit=100)

    assert len(out) < MAX_GREP_CHARS + 200
    assert "more matches, total 100 hit(s)" in out


def test_ignore_patterns_default_and_matching(tmp_path: Path):
    assert load_ignore_patterns(tmp_path) == ["node_modules", "dist"]
    assert is_ignored(Path("node_modules/pkg/a.js"), ["node_modules"])
    assert is_ignored(Path(".git/config"), [])
    assert is_ignored(Path("build/out.log"), ["*.log"])
    assert not is_ignored(Path("src/main.py"), ["node_modules", "dist"])
