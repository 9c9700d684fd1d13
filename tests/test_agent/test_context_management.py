import pytest

from ideacode.context import (
    MAX_PINNED_FACT_CHARS,
    MAX_PINNED_FACTS,
    BudgetConfig,
    ContextBudgetManager,
    ContextCompressor,
    estimate_tokens,
    extract_pinned_facts,
)
from ideacode.exceptions import CompactionError
from ideacode.llm import LLMProvider, Message, TextBlock, ToolUseBlock


class SummaryProvider(LLMProvider):
    model = "test/summary"

    def __init__(self, summary: str = "Earlier the user set up the project."):
        self.summary = summary
        self.calls: list[list[Message]] = []

    async def stream_chat(self, messages, system_prompt, tools=None, max_tokens=None, on_text_delta=None):
        return []

    async def complete(self, messages, system_prompt, max_tokens=None):
        self.calls.append(list(messages))
        return [TextBlock(text=self.summary)] if self.summary else []


class FailingSummaryProvider(SummaryProvider):
    async def complete(self, messages, system_prompt, max_tokens=None):
        self.calls.append(list(messages))
        raise RuntimeError("summarizer unavailable")


def _history(count: int, size: int = 400) -> list[Message]:
    messages = []
    for idx in range(count):
        role = "user" if idx % 2 == 0 else "assistant"
        messages.append(Message(role=role, content=f"msg{idx + 1} " + "x" * size))
    return messages


@pytest.mark.asyncio
async def test_history_under_budget_is_returned_unchanged():
    provider = SummaryProvider()
    manager = ContextBudgetManager(ContextCompressor(provider))
    history = _history(10)

    result = await manager.ensure_under_budget(history, "system", BudgetConfig(max_tokens=1_000_000, keep_last_n=8))

    assert result == history
    assert provider.calls == []


@pytest.mark.asyncio
async def test_over_budget_history_is_summarized_keeping_recent_messages():
    provider = SummaryProvider()
    statuses: list[str] = []
    manager = ContextBudgetManager(ContextCompressor(provider), status_callback=statuses.append)
    history = _history(10)
    used = estimate_tokens(history, "system")

    result = await manager.ensure_under_budget(history, "system", BudgetConfig(max_tokens=used - 50, keep_last_n=8))

    assert len(result) == 9
    assert result[0].role == "user"
    assert "Previous context:" in result[0].text()
    assert "Earlier the user set up the project." in result[0].text()
    assert result[1:] == history[2:]
    assert len(provider.calls) == 1
    assert statuses == ["Compacting context…"]


@pytest.mark.asyncio
async def test_failed_summary_falls_back_to_dropping_oldest():
    provider = FailingSummaryProvider()
    manager = ContextBudgetManager(ContextCompressor(provider))
    history = _history(10)
    budget = estimate_tokens(history[4:], "system")

    result = await manager.ensure_under_budget(history, "system", BudgetConfig(max_tokens=budget, keep_last_n=8))

    assert result == history[4:]
    assert estimate_tokens(result, "system") <= budget


@pytest.mark.asyncio
async def test_budget_enforcement_stops_at_one_message():
    manager = ContextBudgetManager(ContextCompressor(FailingSummaryProvider()))
    history = _history(5, size=4000)

    result = await manager.ensure_under_budget(history, "system", BudgetConfig(max_tokens=1, keep_last_n=1))

    assert result == history[-1:]


@pytest.mark.asyncio
async def test_result_fits_budget_or_has_single_message():
    manager = ContextBudgetManager(ContextCompressor(SummaryProvider("short")))
    history = _history(12, size=300)
    full = estimate_tokens(history, "system")

    for max_tokens in (1, 50, full // 4, full // 2, full - 1, full, full * 2):
        config = BudgetConfig(max_tokens=max(1, max_tokens), keep_last_n=4)
        result = await manager.ensure_under_budget(history, "system", config)
        assert len(result) == 1 or estimate_tokens(result, "system") <= config.max_tokens


@pytest.mark.asyncio
async def test_enforcement_is_idempotent_once_under_budget():
    provider = SummaryProvider()
    manager = ContextBudgetManager(ContextCompressor(provider))
    history = _history(10)
    config = BudgetConfig(max_tokens=estimate_tokens(history, "system") - 50, keep_last_n=8)

    first = await manager.ensure_under_budget(history, "system", config)
    second = await manager.ensure_under_budget(first, "system", config)

    assert second == first
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_input_history_is_not_mutated():
    manager = ContextBudgetManager(ContextCompressor(FailingSummaryProvider()))
    history = _history(6)
    snapshot = list(history)

    await manager.ensure_under_budget(history, "system", BudgetConfig(max_tokens=10, keep_last_n=2))

    assert history == snapshot


@pytest.mark.asyncio
async def test_compress_is_noop_for_short_history():
    provider = SummaryProvider()
    compressor = ContextCompressor(provider)
    history = _history(3)

    assert await compressor.compress(history, keep_last_n=8) == history
    assert provider.calls == []


@pytest.mark.asyncio
async def test_empty_summary_raises_compaction_error():
    compressor = ContextCompressor(SummaryProvider(summary=""))

    with pytest.raises(CompactionError):
        await compressor.compress(_history(10), keep_last_n=2)


@pytest.mark.asyncio
async def test_summary_message_carries_pinned_facts():
    provider = SummaryProvider()
    compressor = ContextCompressor(provider)
    history = [
        Message(role="user", content="Fix the crash in /srv/app/main.py"),
        Message(role="assistant", content=[
            TextBlock(text="Checking."),
            ToolUseBlock(id="t1", name="read", input={"path": "/srv/app/main.py"}),
        ]),
        Message(role="user", content="the build MUST stay green"),
        Message(role="assistant", content="ok"),
        Message(role="user", content="latest"),
    ]

    result = await compressor.compress(history, keep_last_n=1)

    summary_text = result[0].text()
    assert "Pinned facts:" in summary_text
    assert "- Fix the crash in /srv/app/main.py" in summary_text
    assert "- the build MUST stay green" in summary_text
    assert result[1:] == history[-1:]
    prompt = provider.calls[0][0].text()
    assert "Fix the crash" in prompt


def test_pinned_facts_are_capped_and_deduplicated():
    lines = [f"ERROR_{idx} failed at /tmp/file{idx}.log" for idx in range(60)]
    lines += ["ERROR_1 failed at /tmp/file1.log", "error: " + "y" * 500]
    facts = extract_pinned_facts("\n".join(lines))

    assert len(facts) <= MAX_PINNED_FACTS
    assert all(len(fact) <= MAX_PINNED_FACT_CHARS for fact in facts)
    assert len({fact.lower() for fact in facts}) == len(facts)


def test_pinned_facts_skip_unremarkable_lines():
    text = "hello there\njust chatting\nsee https://example.com/docs\n"

    assert extract_pinned_facts(text) == ["see https://example.com/docs"]


def test_estimate_grows_with_content():
    base = [Message(role="user", content="hello")]
    longer = base + [Message(role="assistant", content="a reply with more text")]

    assert estimate_tokens(base) <= estimate_tokens(longer)
    assert estimate_tokens(base) < estimate_tokens(base, "a long system prompt")
    assert estimate_tokens([Message(role="user", content="abcd")]) == 1
    assert estimate_tokens([Message(role="user", content="abcde")]) == 2


def test_budget_config_rejects_zero_values():
    with pytest.raises(ValueError):
        BudgetConfig(max_tokens=0)
    with pytest.raises(ValueError):
        BudgetConfig(max_tokens=10, keep_last_n=0)
