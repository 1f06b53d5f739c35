import asyncio
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape

from slab.config import GLOBAL_DIR, SLAB_DIR_NAME, Config, get_config
from slab.errors import TransportError
from slab.fileops.engine import Decision, PendingOperation
from slab.fileops.operations import describe
from slab.llm import OllamaClient
from slab.logging import configure_logging
from slab.repl import Repl, ReplUI, print_models, print_templates
from slab.session.loop import Session, SessionUI
from slab.templates import TemplateManager, write_default_templates

console = Console()

PROJECT_CONFIG_TEMPLATE = """\
# slab project configuration. Values here override ~/.config/slab/config.toml.

# ollama_host = "http://localhost:11434"
# default_model = "qwen2.5-coder:7b"
# context_limit = 32768
# temperature = 0.7
# top_p = 0.9
# phase_timeout = 120

[ui]
# streaming = true
# auto_apply_file_ops = false
# inline_completion_preview = true
# fuzzy_completion = true
# max_completion_items = 10

# Per-model overrides
# [models."qwen2.5-coder:7b"]
# temperature = 0.2
"""

EXAMPLE_RULE = """\
---
description: Project-wide conventions
priority: 0
---
Keep changes minimal and consistent with the surrounding code.
"""


def _client(config: Config) -> OllamaClient:
    return OllamaClient(config.ollama_host, timeout=config.request_timeout, stream_timeout=config.stream_timeout)


def _load_config(ctx: click.Context, **overrides) -> Config:
    try:
        return get_config(**overrides)
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        ctx.exit(1)


def _add_files(session: Session, files: tuple[str, ...]) -> None:
    for name in files:
        path = session.context.resolve(name)
        try:
            if path.is_dir():
                added, _ = session.context.add_directory(path)
                console.print(f"[dim]Added {len(added)} file(s) from {name}[/dim]")
            else:
                session.context.add_file(path)
        except (OSError, ValueError) as e:
            console.print(f"[yellow]Skipping {name}: {e}[/yellow]")


@click.group(invoke_without_command=True)
@click.option("-m", "--model", help="Model to use (default: from config)")
@click.option("--no-stream", is_flag=True, help="Wait for the full response instead of streaming")
@click.option("--watch", is_flag=True, help="Re-read context files before each message")
@click.option("--load", "load_name", metavar="NAME", help="Resume a saved session")
@click.option("-f", "--file", "files", multiple=True, type=click.Path(), help="Add a file or directory to context")
@click.option(
    "--log-level",
    envvar="SLAB_LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level",
)
@click.pass_context
def main(ctx, model, no_stream, watch, load_name, files, log_level):
    """slab - a local-model coding assistant for your terminal"""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level
    configure_logging(log_level or "WARNING")

    if ctx.invoked_subcommand is None:
        ctx.invoke(chat, model=model, no_stream=no_stream, watch=watch, load_name=load_name, files=files)


@main.command()
@click.option("-m", "--model", help="Model to use")
@click.option("--no-stream", is_flag=True, help="Wait for the full response instead of streaming")
@click.option("--watch", is_flag=True, help="Re-read context files before each message")
@click.option("--load", "load_name", metavar="NAME", help="Resume a saved session")
@click.argument("files", nargs=-1, type=click.Path())
@click.pass_context
def chat(ctx, model, no_stream, watch, load_name, files):
    """Start an interactive session (the default command)."""
    config = _load_config(ctx, default_model=model, log_level=ctx.obj.get("log_level") if ctx.obj else None)
    configure_logging(config.log_level)
    asyncio.run(_chat(config, model, files, watch, load_name, stream=not no_stream))


async def _chat(
    config: Config,
    model: str | None,
    files: tuple[str, ...],
    watch: bool,
    load_name: str | None,
    stream: bool,
) -> None:
    async with _client(config) as client:
        session = Session(config, client, ui=ReplUI(console), model=model)
        session.streaming = stream
        session.context.watch = watch
        if load_name:
            try:
                for path in session.load(load_name):
                    console.print(f"[yellow]Saved file no longer readable: {path}[/yellow]")
            except (FileNotFoundError, ValueError) as e:
                console.print(f"[red]Could not load session:[/red] {e}")
                return
        _add_files(session, files)

        repl = Repl(session, console)
        if not await repl.ensure_model():
            return
        await repl.run()


class _AskUI(SessionUI):
    """Non-interactive hooks: stream to stdout, accept in-project edits only with --apply."""

    def __init__(self, apply: bool):
        self.apply = apply

    def on_chunk(self, text: str) -> None:
        console.print(text, end="", markup=False, highlight=False, soft_wrap=True)

    def decide(self, item: PendingOperation) -> Decision:
        return Decision.ACCEPT if self.apply else Decision.SKIP


@main.command()
@click.argument("prompt")
@click.option("-m", "--model", help="Model to use")
@click.option("-f", "--files", "files", multiple=True, type=click.Path(), help="Add a file to context")
@click.option("--apply", is_flag=True, help="Apply proposed file changes inside the project")
@click.pass_context
def ask(ctx, prompt, model, files, apply):
    """Ask a single question and print the answer."""
    config = _load_config(ctx, default_model=model, log_level=ctx.obj.get("log_level") if ctx.obj else None)
    configure_logging(config.log_level)
    code = asyncio.run(_ask(config, model, prompt, files, apply))
    ctx.exit(code)


async def _ask(config: Config, model: str | None, prompt: str, files: tuple[str, ...], apply: bool) -> int:
    async with _client(config) as client:
        session = Session(config, client, ui=_AskUI(apply), model=model)
        _add_files(session, files)
        if session.model is None:
            try:
                models = await session.available_models()
            except TransportError as e:
                console.print(f"[red]Error:[/red] {e}")
                return 1
            if not models:
                console.print("[red]No models installed.[/red]")
                return 1
            session.set_model(models[0].name)

        result = await session.run_turn(prompt)
        if not session.streaming:
            console.print(result.assistant, markup=False, highlight=False)
        else:
            console.print()
        for op in result.operations:
            console.print(f"[dim]{op.status}: {escape(describe(op.op))}[/dim]")
        if result.error is not None:
            console.print(f"[red]Error:[/red] {result.error}")
            return 1
        return 0


@main.command()
@click.pass_context
def models(ctx):
    """List models installed in Ollama."""
    config = _load_config(ctx)

    async def _list():
        async with _client(config) as client:
            return await client.list_models()

    try:
        found = asyncio.run(_list())
    except TransportError as e:
        console.print(f"[red]Error:[/red] {e}")
        ctx.exit(1)
    print_models(console, found, config.default_model)


@main.command()
@click.option("--global", "global_", is_flag=True, help="Initialise ~/.config/slab instead of the project")
def init(global_):
    """Create a .slab/ directory with config, rules and templates."""
    base = GLOBAL_DIR if global_ else Path.cwd() / SLAB_DIR_NAME
    base.mkdir(parents=True, exist_ok=True)

    config_path = base / "config.toml"
    if config_path.exists():
        console.print(f"[dim]Keeping existing {config_path}[/dim]")
    else:
        config_path.write_text(PROJECT_CONFIG_TEMPLATE)
        console.print(f"[green]✓[/green] Created {config_path}")

    rules_dir = base / "rules"
    rules_dir.mkdir(exist_ok=True)
    example = rules_dir / "conventions.md"
    if not any(rules_dir.iterdir()):
        example.write_text(EXAMPLE_RULE)
        console.print(f"[green]✓[/green] Created {example}")

    for path in write_default_templates(base / "templates"):
        console.print(f"[green]✓[/green] Created {path}")

    if not global_:
        (base / "sessions").mkdir(exist_ok=True)
        console.print("\nRun [cyan]slab[/cyan] here to start a session.")


@main.command()
@click.pass_context
def templates(ctx):
    """List available prompt templates."""
    config = _load_config(ctx)
    manager = TemplateManager()
    manager.load_defaults()
    manager.load(config.templates_dirs)
    print_templates(console, manager)
