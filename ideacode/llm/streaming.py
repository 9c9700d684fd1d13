"""Incremental decoder for chat-completions server-sent event streams."""

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from ideacode.llm import ContentBlock, TextBlock, ToolUseBlock
from ideacode.logging import get_logger

log = get_logger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass
class ToolCallAccumulator:
    """Partial tool call for one stream slot."""

    slot_index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""
    # Index reserved in the block list once id and name are known.
    position: int | None = None

    def reset(self) -> None:
        self.id = None
        self.name = None
        self.arguments = ""
        self.position = None

    def is_addressable(self) -> bool:
        return bool(self.id and self.name)


def _parse_arguments(raw: str, allow_empty: bool) -> dict[str, Any] | None:
    """Parse an arguments buffer, or None while it is still incomplete."""
    if not raw.strip():
        return {} if allow_empty else None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


@dataclass
class StreamDecoder:
    """Fold SSE lines into text deltas and an ordered content-block list.

    Text deltas are joined into a single text block that keeps the position
    where text first appeared. Tool-call fragments are accumulated per slot
    index and emitted as ``ToolUseBlock`` as soon as the slot has an id, a
    name and an arguments buffer that parses as a JSON object. A slot holds
    its place from the moment it is addressable, so a call whose empty
    arguments are only accepted at the end of the stream still keeps the
    order in which the model issued it.

    Usage::

        decoder = StreamDecoder()
        for line in lines:
            delta = decoder.feed_line(line)
            if decoder.finished:
                break
        blocks = decoder.finish()
    """

    blocks: list[ContentBlock | None] = field(default_factory=list)
    finished: bool = False
    _text_index: int = -1
    _slots: dict[int, ToolCallAccumulator] = field(default_factory=dict)
    _pending: str = ""

    @property
    def text(self) -> str:
        if self._text_index < 0:
            return ""
        block = self.blocks[self._text_index]
        return block.text if isinstance(block, TextBlock) else ""

    def feed(self, chunk: str) -> list[str]:
        """Buffer raw stream text and process every complete line.

        Returns the text deltas produced by the processed lines.
        """
        self._pending += chunk
        deltas: list[str] = []
        while "\n" in self._pending and not self.finished:
            line, self._pending = self._pending.split("\n", 1)
            delta = self.feed_line(line)
            if delta:
                deltas.append(delta)
        return deltas

    def feed_line(self, line: str) -> str:
        """Process one SSE line and return the text delta it carried."""
        if self.finished:
            return ""
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return ""
        data = line[len(DATA_PREFIX):].strip()
        if not data:
            return ""
        if data == DONE_SENTINEL:
            self._finish_stream()
            return ""
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            log.debug("Skipping malformed stream event", line=data[:200])
            return ""
        if not isinstance(payload, dict):
            return ""

        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return ""
        choice = choices[0]
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            delta = {}

        text_delta = ""
        content = delta.get("content")
        if isinstance(content, str) and content:
            self._append_text(content)
            text_delta = content

        fragments = delta.get("tool_calls")
        if isinstance(fragments, list):
            for fragment in fragments:
                if isinstance(fragment, dict):
                    self._apply_fragment(fragment)

        if choice.get("finish_reason"):
            self._finish_stream()
        return text_delta

    def finish(self) -> list[ContentBlock]:
        """Flush remaining slots (if not done yet) and return the block list."""
        if self._pending and not self.finished:
            line, self._pending = self._pending, ""
            self.feed_line(line)
        if not self.finished:
            self._finish_stream()
        return [block for block in self.blocks if block is not None]

    def _append_text(self, content: str) -> None:
        if self._text_index < 0:
            self.blocks.append(TextBlock(text=content))
            self._text_index = len(self.blocks) - 1
            return
        block = self.blocks[self._text_index]
        if isinstance(block, TextBlock):
            block.text += content

    def _apply_fragment(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index")
        if not isinstance(index, int):
            index = 0
        slot = self._slots.get(index)
        if slot is None:
            slot = ToolCallAccumulator(slot_index=index)
            self._slots[index] = slot

        function = fragment.get("function")
        if not isinstance(function, dict):
            function = {}
        call_id = fragment.get("id")
        name = fragment.get("name") or function.get("name")
        arguments = fragment.get("arguments")
        if arguments is None:
            arguments = function.get("arguments")

        if isinstance(call_id, str) and call_id:
            slot.id = call_id
        if isinstance(name, str) and name:
            slot.name = name
        if isinstance(arguments, str):
            slot.arguments += arguments

        self._try_emit(slot, allow_empty=False)

    def _try_emit(self, slot: ToolCallAccumulator, allow_empty: bool) -> bool:
        if not slot.is_addressable():
            return False
        if slot.position is None:
            self.blocks.append(None)
            slot.position = len(self.blocks) - 1
        args = _parse_arguments(slot.arguments, allow_empty=allow_empty)
        if args is None:
            return False
        self.blocks[slot.position] = ToolUseBlock(id=str(slot.id), name=str(slot.name), input=args)
        slot.reset()
        return True

    def _finish_stream(self) -> None:
        for index in sorted(self._slots):
            slot = self._slots[index]
            if slot.is_addressable():
                self._try_emit(slot, allow_empty=True)
            if slot.is_addressable() or slot.arguments.strip():
                log.warning(
                    "Dropping tool call with unparseable arguments",
                    slot_index=index,
                    tool_id=slot.id,
                    tool_name=slot.name,
                    arguments_preview=slot.arguments[:200],
                )
        self._slots.clear()
        self.finished = True


async def decode_sse_lines(
    lines: AsyncIterator[str],
    on_text_delta: Callable[[str], None] | None = None,
) -> list[ContentBlock]:
    """Drive a ``StreamDecoder`` over an async iterator of SSE lines."""
    decoder = StreamDecoder()
    async for line in lines:
        delta = decoder.feed_line(line)
        if delta and on_text_delta is not None:
            on_text_delta(delta)
        if decoder.finished:
            break
    return decoder.finish()
