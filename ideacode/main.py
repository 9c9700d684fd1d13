"""Main entry point for ideacode."""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape

from ideacode.agent import Agent, TurnResult, TurnStatus
from ideacode.config import Config, set_config
from ideacode.context import estimate_tokens_for_text
from ideacode.exceptions import ConfigurationError, IdeacodeError
from ideacode.llm import get_provider
from ideacode.logging import configure_logging, log
from ideacode.onboarding import can_run_onboarding_interactively, run_onboarding
from ideacode.scheduler import tool_arg_preview
from ideacode.session import get_conversation_store
from ideacode.tools import ERROR_MARKER, WebSearchTool, get_tool_registry

console = Console(highlight=False)

HELP_TEXT = """\
Commands:
  /help, /?            Show this help
  /clear, /c           Forget the conversation for this directory
  /status              Model, message count and context usage
  /model, /models <id> Switch model and save it as the default
  /brave <key>         Save a Brave Search API key and enable web_search
  /q, /quit, exit      Quit
Ctrl-C while the model is working cancels the current turn."""

COMMAND_ALIASES = {
    "/models": "/model",
    "/brave-key": "/brave",
    "/?": "/help",
    "/c": "/clear",
    "/quit": "/q",
    "/exit": "/q",
    "exit": "/q",
}


def resolve_command(word: str) -> str:
    """Map a command word or alias to its canonical slash command."""
    key = word.strip().lower()
    return COMMAND_ALIASES.get(key, key)


def is_command(line: str) -> bool:
    stripped = line.strip()
    return stripped.startswith("/") or resolve_command(stripped) == "/q"


def _print_status(status: str) -> None:
    if status == "Thinking…":
        return
    console.print(f"[dim]  {status}[/dim]")


def _print_delta(delta: str) -> None:
    console.print(delta, end="", markup=False, soft_wrap=True)


def _print_tool_output(tool_name: str, arguments: dict[str, Any], output: str) -> None:
    ok = not output.startswith(ERROR_MARKER)
    color = "green" if ok else "red"
    preview = escape(tool_arg_preview(tool_name, arguments))
    tokens = estimate_tokens_for_text(output)
    console.print(f"  [{color}]●[/{color}] {tool_name} [dim]{preview} ({tokens} tokens)[/dim]")
    if not ok:
        console.print(f"    [red]{escape(output.splitlines()[0])}[/red]")


def _print_turn_result(result: TurnResult) -> None:
    if result.compressed:
        console.print("[dim]  (context compressed to stay under limit)[/dim]")
    if result.status == TurnStatus.SETTLED:
        console.print()
        return
    console.print()
    if result.status == TurnStatus.EMPTY:
        console.print(f"[red]✖ {escape(result.error or '')}[/red]")
    elif result.status == TurnStatus.RATE_LIMITED:
        console.print(f"[red]✖ {escape(result.error or '')}. You can resubmit when the endpoint recovers.[/red]")
    elif result.error:
        console.print(f"[red]✖ {escape(result.error or '')}[/red]")


async def _run_turn_cancellable(agent: Agent, user_input: str) -> TurnResult | None:
    """Run one turn; Ctrl-C cancels the turn instead of the session."""
    loop = asyncio.get_running_loop()
    turn_task = asyncio.create_task(agent.run_turn(user_input))
    handler_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, turn_task.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        pass
    try:
        return await turn_task
    except asyncio.CancelledError:
        if not turn_task.cancelled():
            raise
        console.print("\n[yellow]Turn cancelled.[/yellow]")
        return None
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


async def handle_command(agent: Agent, line: str) -> bool:
    """Handle a slash command. Returns False when the session should end."""
    parts = line.strip().split(maxsplit=1)
    command = resolve_command(parts[0])
    argument = parts[1].strip() if len(parts) > 1 else ""

    if command == "/q":
        return False
    if command == "/help":
        console.print(HELP_TEXT)
    elif command == "/clear":
        await agent.clear()
        console.print("[dim]Conversation cleared.[/dim]")
    elif command == "/status":
        used, budget = agent.context_usage()
        window = agent.context_length or agent.config.context.context_window_tokens
        web_search = "on" if agent.tools.has_tool("web_search") else "off"
        console.print(
            f"model: {agent.provider.model}\n"
            f"messages: {len(agent.messages)}\n"
            f"context: ~{used} / {budget} tokens (window {window})\n"
            f"web_search: {web_search}"
        )
    elif command == "/model":
        if not argument:
            console.print(f"model: {agent.provider.model}")
        else:
            await agent.set_model(argument)
            path = _persist(agent.config, {"model": {"model": argument}})
            saved = f", saved to {escape(str(path))}" if path else ""
            console.print(f"[dim]Model set to {escape(argument)}{saved}.[/dim]")
    elif command == "/brave":
        if not argument:
            console.print("[yellow]Usage: /brave <key>. Get one at https://brave.com/search/api[/yellow]")
        else:
            path = _persist(agent.config, {"tools": {"web_search": {"api_key": argument}}})
            await enable_web_search(agent)
            saved = "saved" if path else "set for this session"
            console.print(f"[dim]Brave Search API key {saved}. web_search is enabled.[/dim]")
    else:
        console.print(f"[yellow]Unknown command: {command}. Type /help.[/yellow]")
    return True


def _persist(config: Config, updates: dict[str, Any]) -> Path | None:
    """Save settings to the config file, warning instead of failing the command."""
    try:
        return config.persist(updates)
    except (ConfigurationError, OSError) as e:
        log.warning("Could not save config", error=str(e))
        console.print(f"[yellow]Applied for this session only, could not save: {escape(str(e))}[/yellow]")
        return None


async def enable_web_search(agent: Agent) -> None:
    """(Re)register web_search so it picks up a newly configured key."""
    previous = agent.tools.unregister("web_search")
    if previous is not None:
        await previous.close()
    agent.tools.register(WebSearchTool())


async def run_interactive() -> None:
    """Run the interactive agent loop."""
    store = get_conversation_store()
    agent = Agent(
        provider=get_provider(),
        tools=get_tool_registry(),
        store=store,
        status_callback=_print_status,
        text_delta_callback=_print_delta,
        tool_output_callback=_print_tool_output,
    )
    await agent.initialize()

    console.print(f"[bold]ideacode[/bold] [dim]{agent.provider.model} · {agent.cwd}[/dim]")
    if agent.messages:
        console.print(f"[dim]Resumed conversation with {len(agent.messages)} message(s). /clear to start over.[/dim]")
    console.print("[dim]Type /help for commands.[/dim]\n")

    try:
        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold cyan]›[/bold cyan] ")
            except (EOFError, KeyboardInterrupt):
                console.print()
                break
            if not line.strip():
                continue
            if is_command(line):
                if not await handle_command(agent, line):
                    break
                continue

            console.print()
            result = await _run_turn_cancellable(agent, line)
            if result is not None:
                _print_turn_result(result)
    finally:
        await store.close()
        await agent.tools.close()
        await agent.provider.close()


def main(
    config: str = "",
    model: str = "",
    verbose: bool = False,
) -> None:
    """Start an interactive ideacode session."""
    try:
        cfg = Config.load(Path(config) if config else None)
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    # Apply CLI overrides
    if model:
        cfg.model.model = model
    if verbose:
        cfg.logging.level = "DEBUG"

    set_config(cfg)
    configure_logging()

    if not cfg.model.api_key:
        if not can_run_onboarding_interactively():
            console.print("[red]No API key configured. Set OPENROUTER_API_KEY or model.api_key in config.yaml.[/red]")
            sys.exit(1)
        if not run_onboarding(cfg, console=console):
            sys.exit(1)

    try:
        asyncio.run(run_interactive())
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)
    except IdeacodeError as e:
        log.error("Fatal error", error=str(e))
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)


app = typer.Typer(help="ideacode - a terminal coding agent", add_completion=False)


@app.command()
def run(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    main(config, model, verbose)


if __name__ == "__main__":
    app()
