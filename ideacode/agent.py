"""Turn orchestration for ideacode."""

import asyncio
import functools
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ideacode.config import Config, get_config
from ideacode.context import BudgetConfig, ContextBudgetManager, ContextCompressor, estimate_tokens
from ideacode.exceptions import (
    EmptyResponseError,
    IdeacodeError,
    LLMError,
    RateLimitExhaustedError,
)
from ideacode.instructions import InstructionLoader
from ideacode.llm import (
    ContentBlock,
    LLMProvider,
    Message,
    TextBlock,
    ToolUseBlock,
    get_provider,
)
from ideacode.logging import get_logger
from ideacode.retry import RetryController
from ideacode.scheduler import PlannedToolCall, ToolCallScheduler
from ideacode.session import ConversationStore
from ideacode.tools import ToolRegistry, get_tool_registry

log = get_logger(__name__)

EMPTY_TURN_MESSAGE = (
    'model returned empty output repeatedly. Stopping this turn; you can submit "continue" to resume.'
)


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    SETTLED = "settled"


class TurnStatus(str, Enum):
    """How a turn ended."""

    SETTLED = "settled"
    EMPTY = "empty"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    CANCELLED = "cancelled"
    IGNORED = "ignored"


@dataclass
class TurnResult:
    """Outcome of one ``Agent.run_turn`` call."""

    status: TurnStatus
    text: str = ""
    messages_added: int = 0
    compressed: bool = False
    round_trips: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == TurnStatus.SETTLED


class Agent:
    """Drives conversational turns: model round-trips, tool execution, budget."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        tools: ToolRegistry | None = None,
        store: ConversationStore | None = None,
        config: Config | None = None,
        cwd: Path | str | None = None,
        instructions: InstructionLoader | None = None,
        status_callback: Callable[[str], None] | None = None,
        text_delta_callback: Callable[[str], None] | None = None,
        tool_output_callback: Callable[[str, dict[str, Any], str], None] | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        """Initialize the agent.

        Args:
            provider: Optional LLM provider override
            tools: Optional tool registry override
            store: Optional conversation store; None disables persistence
            config: Optional config override
            cwd: Working directory the conversation belongs to
            instructions: Optional prompt template loader
            status_callback: Receives advisory status strings
            text_delta_callback: Receives streamed assistant text
            tool_output_callback: Receives (tool, args, result) after each call
            sleep: Backoff sleep, injectable for tests
        """
        self.config = config or get_config()
        self.provider = provider or get_provider()
        self.tools = tools or get_tool_registry()
        self.store = store
        self.cwd = Path(cwd or Path.cwd()).expanduser().resolve()
        self.tools.set_runtime_base_path(self.cwd)
        self.instructions = instructions or InstructionLoader()
        self.status_callback = status_callback
        self.text_delta_callback = text_delta_callback
        self.tool_output_callback = tool_output_callback

        self.messages: list[Message] = []
        self.state = TurnState.IDLE
        self.context_length: int | None = None
        self.last_result: TurnResult | None = None
        self._turn_active = False

        cfg = self.config
        self.compressor = ContextCompressor(
            self.provider,
            instructions=self.instructions,
            summary_max_tokens=cfg.model.summary_max_tokens,
        )
        self.budget_manager = ContextBudgetManager(
            self.compressor,
            status_callback=self._set_runtime_status,
        )
        self.retry = RetryController(
            max_attempts=cfg.retry.max_attempts,
            base_delay=cfg.retry.base_delay_seconds,
            max_delay=cfg.retry.max_delay_seconds,
            max_empty_retries=cfg.retry.max_empty_retries,
            status_callback=self._set_runtime_status,
            sleep=sleep,
        )
        self.scheduler = ToolCallScheduler(
            self.tools.run,
            parallel_safe=cfg.tools.parallel_safe,
            parallel=cfg.tools.parallel,
            max_result_chars=cfg.tools.max_result_chars,
            status_callback=self._set_runtime_status,
            result_callback=self._emit_tool_output,
        )

    def _set_runtime_status(self, status: str) -> None:
        """Forward runtime status updates when callback is configured."""
        if self.status_callback:
            try:
                self.status_callback(status)
            except Exception as e:
                log.debug("Status callback failed", error=str(e))

    def _emit_text_delta(self, delta: str) -> None:
        if self.text_delta_callback:
            try:
                self.text_delta_callback(delta)
            except Exception as e:
                log.debug("Text delta callback failed", error=str(e))

    def _emit_tool_output(self, planned: PlannedToolCall, output: str) -> None:
        """Forward tool output to UI callback when configured."""
        if not self.tool_output_callback:
            return
        try:
            self.tool_output_callback(planned.tool_name, planned.args, output)
        except Exception as e:
            log.debug("Tool output callback failed", error=str(e))

    def _set_state(self, state: TurnState) -> None:
        if state != self.state:
            log.debug("Turn state", previous=self.state.value, current=state.value)
        self.state = state

    def _adopt(self, history: list[Message]) -> None:
        """Replace the conversation with a settled working copy."""
        self.messages = list(history)

    def _schedule_save(self) -> None:
        if self.store is None or not self.config.session.auto_save:
            return
        self.store.schedule_save(self.cwd, self.messages)

    async def initialize(self) -> None:
        """Load the stored conversation and the model's context length."""
        if self.store is not None:
            self.messages = await self.store.load(self.cwd)
            log.info("Loaded conversation", cwd=str(self.cwd), messages=len(self.messages))
        await self.refresh_context_length()

    async def refresh_context_length(self) -> int | None:
        """Look up the active model's context window in the endpoint catalog."""
        try:
            models = await self.provider.list_models()
        except LLMError as e:
            log.warning("Could not fetch model catalog", error=str(e))
            self.context_length = None
            return None
        model_id = getattr(self.provider, "model", "")
        match = next((model for model in models if model.id == model_id), None)
        self.context_length = match.context_length if match else None
        return self.context_length

    async def set_model(self, model_id: str) -> None:
        """Switch the active model for subsequent turns."""
        self.provider.model = model_id
        self.config.model.model = model_id
        await self.refresh_context_length()

    def build_system_prompt(self) -> str:
        return self.instructions.system_prompt(self.cwd)

    def budget_config(self) -> BudgetConfig:
        return BudgetConfig(
            max_tokens=self.config.budget_max_tokens(self.context_length),
            keep_last_n=self.config.context.keep_last_n,
        )

    def context_usage(self) -> tuple[int, int]:
        """Estimated tokens in use and the current budget."""
        used = estimate_tokens(self.messages, self.build_system_prompt())
        return used, self.budget_config().max_tokens

    async def clear(self) -> None:
        """Forget the conversation for this working directory."""
        self.messages = []
        if self.store is not None:
            await self.store.delete(self.cwd)

    async def _stream_round_trip(self, history: list[Message], system_prompt: str) -> list[ContentBlock]:
        self._set_state(TurnState.STREAMING)
        return await self.provider.stream_chat(
            messages=history,
            system_prompt=system_prompt,
            tools=self.tools.get_definitions(),
            max_tokens=self.config.model.max_output_tokens,
            on_text_delta=self._emit_text_delta,
        )

    async def run_turn(self, user_input: str) -> TurnResult:
        """Run one turn from operator input to a settled assistant reply.

        The conversation only ever holds settled messages: the user message and
        each completed round-trip (assistant blocks plus, when tools ran, the
        user message carrying every tool result). Partial output from a failed
        or cancelled round-trip is discarded.
        """
        if not (user_input or "").strip():
            return TurnResult(status=TurnStatus.IGNORED)
        if self._turn_active:
            raise IdeacodeError("A turn is already in progress")

        self._turn_active = True
        result = TurnResult(status=TurnStatus.FAILED)
        try:
            result = await self._run_turn(user_input, result)
            return result
        except asyncio.CancelledError:
            result.status = TurnStatus.CANCELLED
            result.error = "Turn cancelled"
            log.info("Turn cancelled", round_trips=result.round_trips, kept_messages=len(self.messages))
            raise
        finally:
            self.last_result = result
            self._turn_active = False
            self._set_state(TurnState.IDLE)
            self._schedule_save()

    async def _run_turn(self, user_input: str, result: TurnResult) -> TurnResult:
        cfg = self.config
        system_prompt = self.build_system_prompt()
        working = [*self.messages, Message(role="user", content=user_input)]
        self._adopt(working)
        result.messages_added = 1

        self._set_state(TurnState.AWAITING_MODEL)
        budgeted = await self.budget_manager.ensure_under_budget(working, system_prompt, self.budget_config())
        result.compressed = budgeted != working
        if result.compressed:
            log.info("Context reduced before turn", before=len(working), after=len(budgeted))
        working = budgeted
        self._adopt(working)

        try:
            while True:
                if result.round_trips >= cfg.agent.max_round_trips:
                    result.status = TurnStatus.FAILED
                    result.error = f"Stopped after {result.round_trips} model round-trips without a final answer"
                    log.warning("Round-trip limit reached", round_trips=result.round_trips)
                    return result

                result.round_trips += 1
                self._set_state(TurnState.AWAITING_MODEL)
                self._set_runtime_status("Thinking…")
                blocks = await self.retry.run(
                    functools.partial(self._stream_round_trip, working, system_prompt)
                )

                tool_uses = [block for block in blocks if isinstance(block, ToolUseBlock)]
                if not tool_uses:
                    working = [*working, Message(role="assistant", content=blocks)]
                    self._adopt(working)
                    result.messages_added += 1
                    result.text = "".join(block.text for block in blocks if isinstance(block, TextBlock))
                    result.status = TurnStatus.SETTLED
                    self._set_state(TurnState.SETTLED)
                    return result

                self._set_state(TurnState.EXECUTING_TOOLS)
                tool_results = await self.scheduler.schedule(tool_uses)
                working = [
                    *working,
                    Message(role="assistant", content=blocks),
                    Message(role="user", content=list(tool_results)),
                ]
                self._adopt(working)
                result.messages_added += 2
        except EmptyResponseError as e:
            result.status = TurnStatus.EMPTY
            result.error = EMPTY_TURN_MESSAGE
            log.warning("Turn stopped on empty output", attempts=e.attempts)
        except RateLimitExhaustedError as e:
            result.status = TurnStatus.RATE_LIMITED
            result.error = str(e)
            log.warning("Turn stopped on rate limit", attempts=e.attempts, status=e.status_code)
        except LLMError as e:
            result.status = TurnStatus.FAILED
            result.error = str(e)
            log.error("Model call failed", error=str(e))
        return result
