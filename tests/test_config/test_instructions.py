from pathlib import Path

import pytest

from ideacode.instructions import InstructionLoader


def test_packaged_templates_render(tmp_path: Path):
    loader = InstructionLoader(override_dir=tmp_path)

    assert "cwd: /work/project" in loader.system_prompt("/work/project")
    system, user = loader.summarizer_prompts("1. user: hello")
    assert "summarizer" in system.lower()
    assert user.endswith("1. user: hello")


def test_override_directory_takes_precedence(tmp_path: Path):
    (tmp_path / "system_prompt.md").write_text("Custom prompt in {cwd} with {unknown}\n", encoding="utf-8")
    loader = InstructionLoader(override_dir=tmp_path)

    assert loader.system_prompt("/x") == "Custom prompt in /x with {unknown}"


def test_env_override_directory(monkeypatch, tmp_path: Path):
    (tmp_path / "summarize_system_prompt.md").write_text("Env summarizer", encoding="utf-8")
    monkeypatch.setenv("IDEACODE_INSTRUCTIONS_DIR", str(tmp_path))

    system, _ = InstructionLoader().summarizer_prompts("t")

    assert system == "Env summarizer"


def test_compacted_context_lists_pinned_facts_first(tmp_path: Path):
    loader = InstructionLoader(override_dir=tmp_path)

    text = loader.compacted_context("  The digest.  ", ["/srv/app/main.py", "MUST keep tests green"])

    assert text == (
        "Previous context:\n"
        "Pinned facts:\n- /srv/app/main.py\n- MUST keep tests green\n\n"
        "The digest."
    )
    assert loader.compacted_context("Only summary", []) == "Previous context:\nOnly summary"


def test_missing_template_raises(tmp_path: Path):
    loader = InstructionLoader(base_dir=tmp_path / "empty", override_dir=tmp_path)

    with pytest.raises(FileNotFoundError):
        loader.load("nope.md")
