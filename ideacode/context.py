"""Context-window accounting, summarization and budget enforcement."""

import json
import math
import re
from typing import Callable

from pydantic import BaseModel, Field

from ideacode.exceptions import CompactionError
from ideacode.instructions import InstructionLoader
from ideacode.llm import LLMProvider, Message, TextBlock, ToolResultBlock, ToolUseBlock
from ideacode.logging import get_logger

log = get_logger(__name__)

CHARS_PER_TOKEN = 4
MAX_PINNED_FACTS = 28
MAX_PINNED_FACT_CHARS = 200

_ABS_PATH_RE = re.compile(r"(?:^|[\s\"'`(=:,])(?:/[\w.@+\-]+(?:/[\w.@+\-]*)*|~/[\w./@+\-]+|[A-Za-z]:\\[\w\\.\-]+)")
_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
_ALL_CAPS_RE = re.compile(r"\b[A-Z][A-Z0-9_]{2,}\b")
_KEYWORD_RE = re.compile(r"\b(?:error|errors|must|todo|constraint|constraints)\b", re.IGNORECASE)


def _serialized_length(message: Message) -> int:
    if isinstance(message.content, str):
        return len(message.content)
    payload = [block.to_dict() for block in message.content]
    return len(json.dumps(payload, ensure_ascii=False, separators=(",", ":")))


def estimate_tokens(messages: list[Message], system_prompt: str | None = None) -> int:
    """Approximate token cost as ``ceil(chars / 4)``.

    String content counts its length; block content counts the length of its
    compact JSON serialization. The system prompt is added when given.
    """
    chars = sum(_serialized_length(msg) for msg in messages)
    if system_prompt:
        chars += len(system_prompt)
    return math.ceil(chars / CHARS_PER_TOKEN)


def estimate_tokens_for_text(text: str) -> int:
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def message_plain_text(message: Message) -> str:
    """Flatten a message into readable text lines (tool blocks included)."""
    if isinstance(message.content, str):
        return message.content
    parts: list[str] = []
    for block in message.content:
        if isinstance(block, TextBlock):
            parts.append(block.text)
        elif isinstance(block, ToolUseBlock):
            parts.append(f"[tool_use {block.name}] {json.dumps(block.input, ensure_ascii=False)}")
        elif isinstance(block, ToolResultBlock):
            parts.append(f"[tool_result] {block.content}")
    return "\n".join(part for part in parts if part)


def _is_pinnable(line: str) -> bool:
    return bool(
        _ABS_PATH_RE.search(line)
        or _URL_RE.search(line)
        or _ALL_CAPS_RE.search(line)
        or _KEYWORD_RE.search(line)
    )


def extract_pinned_facts(
    text: str,
    max_facts: int = MAX_PINNED_FACTS,
    max_chars: int = MAX_PINNED_FACT_CHARS,
) -> list[str]:
    """Pick high-salience lines to keep verbatim across summarization.

    Matches lines containing an absolute path, a URL, an all-caps token of
    three or more characters, or one of the keywords error/must/todo/constraint.
    Lines are whitespace-collapsed, capped at ``max_chars`` and deduplicated;
    at most ``max_facts`` are returned in order of first appearance.
    """
    facts: list[str] = []
    seen: set[str] = set()
    if max_facts <= 0:
        return facts
    for raw_line in (text or "").splitlines():
        line = re.sub(r"\s+", " ", raw_line).strip()
        if not line or not _is_pinnable(line):
            continue
        if len(line) > max_chars:
            line = line[: max(1, max_chars - 3)].rstrip() + "..."
            line = line[:max_chars]
        key = line.lower()
        if key in seen:
            continue
        seen.add(key)
        facts.append(line)
        if len(facts) >= max_facts:
            break
    return facts


def format_transcript(
    messages: list[Message],
    max_total_chars: int = 24000,
    max_item_chars: int = 600,
) -> str:
    """Format messages for the summarization prompt."""
    lines: list[str] = []
    consumed = 0
    for idx, msg in enumerate(messages, start=1):
        role = (msg.role or "").strip().lower() or "unknown"
        content = re.sub(r"\s+", " ", message_plain_text(msg).strip())
        if len(content) > max_item_chars:
            content = content[:max_item_chars].rstrip() + "... [truncated]"
        line = f"{idx}. {role}: {content}"
        if consumed + len(line) > max_total_chars:
            lines.append("[... older conversation excerpt truncated for summary ...]")
            break
        lines.append(line)
        consumed += len(line)
    return "\n".join(lines)


class BudgetConfig(BaseModel):
    """Token budget supplied per call to the budget manager."""

    max_tokens: int = Field(ge=1)
    keep_last_n: int = Field(default=8, ge=1)


class ContextCompressor:
    """Replace older history with a single summary message."""

    def __init__(
        self,
        provider: LLMProvider,
        instructions: InstructionLoader | None = None,
        summary_max_tokens: int = 4096,
    ):
        self.provider = provider
        self.instructions = instructions or InstructionLoader()
        self.summary_max_tokens = summary_max_tokens

    async def summarize(self, messages: list[Message]) -> str:
        """Ask the model for a prose digest of ``messages``."""
        transcript = format_transcript(messages)
        if not transcript.strip():
            raise CompactionError("Nothing to summarize")
        system_prompt, prompt = self.instructions.summarizer_prompts(transcript)
        blocks = await self.provider.complete(
            messages=[Message(role="user", content=prompt)],
            system_prompt=system_prompt,
            max_tokens=self.summary_max_tokens,
        )
        summary = next(
            (block.text.strip() for block in blocks if isinstance(block, TextBlock) and block.text.strip()),
            "",
        )
        if not summary:
            raise CompactionError("Summarizer returned an empty summary")
        return summary

    def build_summary_message(self, summary: str, pinned_facts: list[str]) -> Message:
        return Message(role="user", content=self.instructions.compacted_context(summary, pinned_facts))

    async def compress(self, history: list[Message], keep_last_n: int) -> list[Message]:
        """Return ``[summary_message, *history[-keep_last_n:]]``.

        History no longer than ``keep_last_n`` is returned unchanged. A failed
        or empty summary raises; the caller decides how to fall back.
        """
        if len(history) <= keep_last_n:
            return history

        to_summarize = history[: len(history) - keep_last_n]
        recent = history[len(history) - keep_last_n:]

        summary = await self.summarize(to_summarize)
        discarded_text = "\n".join(message_plain_text(msg) for msg in to_summarize)
        pinned = extract_pinned_facts(discarded_text)

        log.info(
            "Compressed conversation history",
            summarized_messages=len(to_summarize),
            kept_messages=len(recent),
            pinned_facts=len(pinned),
        )
        return [self.build_summary_message(summary, pinned), *recent]


class ContextBudgetManager:
    """Keep history plus system prompt inside the token budget."""

    def __init__(
        self,
        compressor: ContextCompressor | None = None,
        status_callback: Callable[[str], None] | None = None,
    ):
        self.compressor = compressor
        self.status_callback = status_callback

    def _emit_status(self, status: str) -> None:
        if self.status_callback:
            self.status_callback(status)

    async def ensure_under_budget(
        self,
        history: list[Message],
        system_prompt: str,
        config: BudgetConfig,
    ) -> list[Message]:
        """Return a history that fits ``config.max_tokens`` or has one message.

        Summarization is tried first when history is longer than
        ``keep_last_n``; any failure there is logged and the oldest messages
        are dropped instead. The input list is never mutated.
        """
        result = list(history)
        before = estimate_tokens(result, system_prompt)
        if before <= config.max_tokens:
            return result

        if self.compressor is not None and len(result) > config.keep_last_n:
            self._emit_status("Compacting context…")
            try:
                result = list(await self.compressor.compress(result, config.keep_last_n))
            except Exception as e:
                log.warning("Context compression failed, trimming instead", error=str(e))

        dropped = 0
        while len(result) > 1 and estimate_tokens(result, system_prompt) > config.max_tokens:
            result = result[1:]
            dropped += 1

        log.debug(
            "Context budget enforced",
            before_tokens=before,
            after_tokens=estimate_tokens(result, system_prompt),
            max_tokens=config.max_tokens,
            dropped=dropped,
            messages=len(result),
        )
        return result
