"""Conversation content model and the chat endpoint client."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Union

import httpx

from ideacode.exceptions import LLMAPIError, LLMError, RateLimitError, StreamError
from ideacode.logging import get_logger

log = get_logger(__name__)


OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
RATE_LIMIT_STATUSES = frozenset({429, 529})


@dataclass
class TextBlock:
    """Plain assistant or user text."""

    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ToolUseBlock:
    """A tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": dict(self.input)}


@dataclass
class ToolResultBlock:
    """Result of one tool invocation, correlated by tool-use id."""

    tool_use_id: str
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_result", "tool_use_id": self.tool_use_id, "content": self.content}


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


def block_from_dict(data: dict[str, Any]) -> ContentBlock | None:
    """Parse a wire/persisted block; unknown types yield None."""
    block_type = str(data.get("type", "")).strip()
    if block_type == "text":
        return TextBlock(text=str(data.get("text") or ""))
    if block_type == "tool_use":
        raw_input = data.get("input")
        return ToolUseBlock(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            input=dict(raw_input) if isinstance(raw_input, dict) else {},
        )
    if block_type == "tool_result":
        content = data.get("content")
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False)
        return ToolResultBlock(tool_use_id=str(data.get("tool_use_id") or ""), content=content)
    return None


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "user" or "assistant"
    content: str | list[ContentBlock]

    def blocks(self) -> list[ContentBlock]:
        """Content as a block list (string content becomes one text block)."""
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)] if self.content else []
        return list(self.content)

    def text(self) -> str:
        """Concatenated text of all text blocks."""
        if isinstance(self.content, str):
            return self.content
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.blocks() if isinstance(block, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [block for block in self.blocks() if isinstance(block, ToolResultBlock)]

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [block.to_dict() for block in self.content]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        role = str(data.get("role") or "user")
        raw = data.get("content")
        if isinstance(raw, list):
            blocks: list[ContentBlock] = []
            for item in raw:
                if not isinstance(item, dict):
                    continue
                block = block_from_dict(item)
                if block is None:
                    log.debug("Skipping unknown content block", block_type=item.get("type"))
                    continue
                blocks.append(block)
            return cls(role=role, content=blocks)
        return cls(role=role, content="" if raw is None else str(raw))


def has_meaningful_output(blocks: list[ContentBlock]) -> bool:
    """True when a response holds a tool call or non-blank text."""
    for block in blocks:
        if isinstance(block, ToolUseBlock):
            return True
        if isinstance(block, TextBlock) and block.text.strip():
            return True
    return False


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass
class ModelInfo:
    """One entry of the endpoint's model catalog."""

    id: str
    name: str = ""
    context_length: int | None = None


TextDeltaCallback = Callable[[str], None]


def parse_retry_after(headers: httpx.Headers | dict[str, str]) -> float | None:
    """Read a server wait hint in seconds from rate-limit response headers."""
    lowered = {str(k).lower(): str(v) for k, v in dict(headers).items()}
    raw_ms = lowered.get("retry-after-ms", "").strip()
    if raw_ms:
        try:
            return max(0.0, float(raw_ms) / 1000.0)
        except ValueError:
            pass
    raw = lowered.get("retry-after", "").strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def api_error_from_response(status_code: int, body: str, headers: httpx.Headers | dict[str, str]) -> LLMAPIError:
    """Map a failed HTTP response to the matching exception."""
    message = f"API {status_code}: {body.strip()[:500]}"
    if status_code in RATE_LIMIT_STATUSES:
        return RateLimitError(message, status_code=status_code, retry_after=parse_retry_after(headers))
    return LLMAPIError(message, status_code=status_code)


class LLMProvider(ABC):
    """Abstract base class for chat endpoints."""

    model: str = ""

    @abstractmethod
    async def stream_chat(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
        on_text_delta: TextDeltaCallback | None = None,
    ) -> list[ContentBlock]:
        """Run one streamed round-trip and return the settled content blocks."""
        pass

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system_prompt: str,
        max_tokens: int | None = None,
    ) -> list[ContentBlock]:
        """Run one non-streaming call (used for summarization)."""
        pass

    async def list_models(self) -> list[ModelInfo]:
        return []

    async def close(self) -> None:
        return None


class OpenRouterProvider(LLMProvider):
    """OpenRouter-compatible provider over direct HTTP calls."""

    def __init__(
        self,
        model: str,
        api_key: str = "",
        base_url: str = OPENROUTER_BASE_URL,
        max_tokens: int = 8192,
        temperature: float | None = None,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize provider.

        Args:
            model: Model id (e.g. 'anthropic/claude-sonnet-4')
            api_key: Bearer token for the endpoint
            base_url: API base URL
            max_tokens: Max output tokens per round-trip
            temperature: Optional sampling temperature
            timeout: HTTP timeout in seconds
            client: Optional preconfigured httpx client
        """
        self.model = model
        self.api_key = api_key
        self.base_url = (base_url or OPENROUTER_BASE_URL).rstrip("/")
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition] | list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Convert tools to chat-completions function format."""
        result = []
        for tool in tools:
            if isinstance(tool, dict):
                name = tool.get("name")
                description = tool.get("description", "")
                parameters = tool.get("parameters", {})
            else:
                name = getattr(tool, "name", None)
                description = getattr(tool, "description", "") or ""
                parameters = getattr(tool, "parameters", None) or {}

            if name:
                result.append({
                    "type": "function",
                    "function": {
                        "name": name,
                        "description": description or "",
                        "parameters": parameters or {},
                    },
                })
        return result

    @staticmethod
    def _convert_messages(messages: list[Message], system_prompt: str) -> list[dict[str, Any]]:
        """Convert block messages to chat-completions messages.

        Assistant tool uses become ``tool_calls``; tool results answering them
        become ``tool`` role messages. Results whose call is no longer in
        context (trimmed or summarized away) are sent as plain user text, and
        calls left without any result are stripped, since the endpoint
        rejects both.
        """
        converted: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        pending_ids: set[str] = set()
        pending_idx: int | None = None

        def _strip_unanswered() -> None:
            nonlocal pending_ids, pending_idx
            if pending_idx is not None and pending_ids:
                entry = converted[pending_idx]
                remaining = [
                    call for call in entry.get("tool_calls", [])
                    if call["id"] not in pending_ids
                ]
                if remaining:
                    entry["tool_calls"] = remaining
                else:
                    entry.pop("tool_calls", None)
                    if entry.get("content") is None:
                        entry["content"] = ""
            pending_ids = set()
            pending_idx = None

        for msg in messages:
            if msg.role == "assistant":
                _strip_unanswered()
                tool_uses = msg.tool_uses()
                entry: dict[str, Any] = {"role": "assistant", "content": msg.text() or None}
                if tool_uses:
                    entry["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.input, ensure_ascii=False),
                            },
                        }
                        for call in tool_uses
                    ]
                    pending_ids = {call.id for call in tool_uses}
                    pending_idx = len(converted)
                elif entry["content"] is None:
                    entry["content"] = ""
                converted.append(entry)
                continue

            orphan_lines: list[str] = []
            text_parts: list[str] = []
            answered: list[dict[str, Any]] = []
            for block in msg.blocks():
                if isinstance(block, ToolResultBlock):
                    if block.tool_use_id in pending_ids:
                        answered.append({
                            "role": "tool",
                            "tool_call_id": block.tool_use_id,
                            "content": block.content,
                        })
                        pending_ids.discard(block.tool_use_id)
                    else:
                        orphan_lines.append(f"[tool_result {block.tool_use_id}] {block.content}")
                elif isinstance(block, TextBlock):
                    text_parts.append(block.text)
            converted.extend(answered)
            _strip_unanswered()
            user_text = "\n\n".join(part for part in [*orphan_lines, *text_parts] if part)
            if user_text or not answered:
                converted.append({"role": msg.role, "content": user_text})

        _strip_unanswered()
        return converted

    async def stream_chat(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
        on_text_delta: TextDeltaCallback | None = None,
    ) -> list[ContentBlock]:
        """Stream a chat completion and decode it into content blocks."""
        from ideacode.llm.streaming import decode_sse_lines

        url = f"{self.base_url}/chat/completions"
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": self._convert_messages(messages, system_prompt),
            "stream": True,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        if self.temperature is not None:
            body["temperature"] = self.temperature

        log.debug("Calling model (stream)", model=self.model, url=url, msg_count=len(messages))
        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise api_error_from_response(response.status_code, error_text, response.headers)
                return await decode_sse_lines(response.aiter_lines(), on_text_delta=on_text_delta)
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise StreamError(f"Model stream failed: {e}") from e

    async def complete(
        self,
        messages: list[Message],
        system_prompt: str,
        max_tokens: int | None = None,
    ) -> list[ContentBlock]:
        """Non-streaming messages call returning ``{content: [...]}``."""
        url = f"{self.base_url}/messages"
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "system": system_prompt,
            "messages": [msg.to_dict() for msg in messages],
        }
        try:
            log.debug("Calling model", model=self.model, url=url, msg_count=len(messages))
            response = await self.client.post(url, json=body, headers=self._headers())
            if not response.is_success:
                raise api_error_from_response(response.status_code, response.text, response.headers)
            data = response.json()
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"HTTP error: {e}") from e
        except json.JSONDecodeError as e:
            raise LLMError(f"Response decode error: {e}") from e

        blocks: list[ContentBlock] = []
        for item in data.get("content") or []:
            if isinstance(item, dict):
                block = block_from_dict(item)
                if block is not None:
                    blocks.append(block)
        if not blocks:
            # Some routes answer in chat-completions shape instead.
            choices = data.get("choices") or []
            if choices and isinstance(choices[0], dict):
                text = (choices[0].get("message") or {}).get("content")
                if isinstance(text, str) and text:
                    blocks.append(TextBlock(text=text))
        return blocks

    async def list_models(self) -> list[ModelInfo]:
        """Fetch the model catalog."""
        try:
            response = await self.client.get(f"{self.base_url}/models", headers=self._headers())
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Failed to fetch models: {e}") from e
        if not response.is_success:
            raise api_error_from_response(response.status_code, response.text, response.headers)
        models: list[ModelInfo] = []
        for item in response.json().get("data") or []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            context_length = item.get("context_length")
            models.append(ModelInfo(
                id=str(item["id"]),
                name=str(item.get("name") or ""),
                context_length=int(context_length) if isinstance(context_length, (int, float)) else None,
            ))
        return models

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "openrouter",
    model: str = "anthropic/claude-sonnet-4",
    api_key: str | None = None,
    base_url: str | None = None,
    max_tokens: int = 8192,
    temperature: float | None = None,
    timeout: float = 120.0,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (openrouter, openai-compatible)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        max_tokens: Default max output tokens
        temperature: Optional sampling temperature
        timeout: HTTP timeout in seconds

    Returns:
        Configured LLMProvider instance
    """
    key = (provider or "").strip().lower()
    if key in {"openrouter", "openai-compatible", "openai"}:
        return OpenRouterProvider(
            model=model,
            api_key=api_key or "",
            base_url=base_url or OPENROUTER_BASE_URL,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'openrouter'.")


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from ideacode.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
            max_tokens=cfg.model.max_output_tokens,
            temperature=cfg.model.temperature,
            timeout=cfg.model.timeout,
        )
    return _provider


def set_provider(provider: LLMProvider | None) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
