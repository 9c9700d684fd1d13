"""Prompt templates for the agent and the history summarizer.

Templates are Markdown files shipped under ``ideacode/instructions/``. A file
with the same name in the override directory (``IDEACODE_INSTRUCTIONS_DIR`` or
``~/.config/ideacode/instructions/``) replaces the packaged one.
"""

from __future__ import annotations

import os
from pathlib import Path

from ideacode.config import DEFAULT_CONFIG_DIR

PACKAGE_TEMPLATE_DIR = Path(__file__).resolve().parent / "instructions"

SYSTEM_PROMPT = "system_prompt.md"
SUMMARIZE_SYSTEM_PROMPT = "summarize_system_prompt.md"
SUMMARIZE_USER_PROMPT = "summarize_user_prompt.md"
COMPACTED_CONTEXT = "compacted_context.md"


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Resolve, cache and fill prompt templates."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        override_dir: Path | str | None = None,
    ):
        self.base_dir = Path(base_dir).expanduser() if base_dir is not None else PACKAGE_TEMPLATE_DIR
        if override_dir is None:
            env_dir = os.getenv("IDEACODE_INSTRUCTIONS_DIR", "").strip()
            override_dir = env_dir or DEFAULT_CONFIG_DIR / "instructions"
        self.override_dir = Path(override_dir).expanduser()
        self._cache: dict[str, str] = {}

    def load(self, name: str) -> str:
        """Return the stripped template text, preferring the override copy."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        candidates = [self.override_dir / name, self.base_dir / name]
        path = next((candidate for candidate in candidates if candidate.is_file()), None)
        if path is None:
            searched = ", ".join(str(candidate.parent) for candidate in candidates)
            raise FileNotFoundError(f"Prompt template {name} not found in: {searched}")
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, name: str, **variables: object) -> str:
        values = _SafeFormatDict({key: str(value) for key, value in variables.items()})
        return self.load(name).format_map(values)

    def system_prompt(self, cwd: Path | str) -> str:
        return self.render(SYSTEM_PROMPT, cwd=cwd)

    def summarizer_prompts(self, transcript: str) -> tuple[str, str]:
        """(system prompt, user prompt) for one summarization call."""
        return self.load(SUMMARIZE_SYSTEM_PROMPT), self.render(SUMMARIZE_USER_PROMPT, transcript=transcript)

    def compacted_context(self, summary: str, pinned_facts: list[str]) -> str:
        """Body of the synthetic message that replaces summarized history.

        Pinned facts come first as a bullet list so they survive verbatim.
        """
        pinned_block = ""
        if pinned_facts:
            pinned_block = "Pinned facts:\n" + "\n".join(f"- {fact}" for fact in pinned_facts) + "\n\n"
        return self.render(COMPACTED_CONTEXT, pinned_block=pinned_block, summary=summary.strip())
