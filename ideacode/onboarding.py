"""First-run setup: ask for an OpenRouter key, check it and save it."""

from __future__ import annotations

import asyncio
import sys
from typing import Callable

from rich.console import Console
from rich.markup import escape
from rich.prompt import Prompt

from ideacode.config import Config
from ideacode.exceptions import LLMError
from ideacode.llm import create_provider

DEFAULT_MODEL_PREFERENCES = ("anthropic/claude-sonnet-4", "claude-sonnet", "gpt-4o")

KeyValidator = Callable[[Config, str], list[str]]


def can_run_onboarding_interactively() -> bool:
    """Return True when stdin/stdout are interactive terminals."""
    return sys.stdin.isatty() and sys.stdout.isatty()


def fetch_model_ids(cfg: Config, api_key: str) -> list[str]:
    """List the endpoint's model ids with ``api_key``; raises ``LLMError`` if rejected."""

    async def _list() -> list[str]:
        provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=api_key,
            base_url=cfg.model.base_url or None,
            timeout=cfg.model.timeout,
        )
        try:
            return [model.id for model in await provider.list_models()]
        finally:
            await provider.close()

    return asyncio.run(_list())


def pick_default_model(model_ids: list[str], current: str) -> str:
    if current in model_ids:
        return current
    for preference in DEFAULT_MODEL_PREFERENCES:
        match = next((model_id for model_id in model_ids if preference in model_id), None)
        if match:
            return match
    return model_ids[0] if model_ids else current


def run_onboarding(
    cfg: Config,
    console: Console | None = None,
    validate: KeyValidator = fetch_model_ids,
) -> bool:
    """Prompt until a working API key is entered, then persist key and model.

    Returns False when the operator aborts (Ctrl-C or end of input).
    """
    console = console or Console(highlight=False)
    console.print(
        "\n[bold cyan]OpenRouter API key required[/bold cyan]\n"
        "[dim]Get one at https://openrouter.ai/keys[/dim]\n"
    )

    try:
        while True:
            api_key = Prompt.ask("API key", password=True, console=console).strip()
            if not api_key:
                console.print("[red]Key cannot be empty. Try again.[/red]")
                continue
            try:
                model_ids = validate(cfg, api_key)
            except LLMError as e:
                console.print(f"[red]Invalid key: {escape(str(e))}[/red]")
                continue
            break

        console.print(f"[green]✓ API key accepted[/green] [dim]({len(model_ids)} models available)[/dim]")
        default_model = pick_default_model(model_ids, cfg.model.model)
        model = Prompt.ask("Model", default=default_model, console=console).strip() or default_model

        console.print("[dim]Brave Search API key (optional, for web search). Get one at https://brave.com/search/api[/dim]")
        brave_key = Prompt.ask("Brave key (Enter to skip)", default="", console=console).strip()
    except (EOFError, KeyboardInterrupt):
        console.print("\n[yellow]Setup cancelled. No changes were saved.[/yellow]")
        return False

    updates: dict = {"model": {"api_key": api_key, "model": model}}
    if brave_key:
        updates["tools"] = {"web_search": {"api_key": brave_key}}
    path = cfg.persist(updates)
    console.print(f"[dim]Saved to {escape(str(path))}[/dim]\n")
    return True
