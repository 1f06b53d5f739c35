import asyncio
import signal
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm, Prompt
from rich.syntax import Syntax
from rich.table import Table

from slab.config import remember_model
from slab.constants import EXEC_PREVIEW_WIDTH
from slab.context.models import RefreshReport
from slab.editor.completion import Completer
from slab.editor.state import EditorState
from slab.editor.terminal import TerminalEditor
from slab.errors import TransportError
from slab.fileops.engine import ApplyResult, ApplyStatus, Decision, PendingOperation
from slab.fileops.operations import describe
from slab.fileops.safety import AllowedWithConfirmation
from slab.logging import get_logger
from slab.phases.models import FeedbackMode, PhaseRun, StopReason
from slab.session.loop import Session, SessionUI, TurnResult
from slab.shell import ShellResult
from slab.templates import TemplateManager

_logger = get_logger(__name__)

COMMANDS: dict[str, str] = {
    "help": "Show commands and templates",
    "exit": "Leave slab",
    "quit": "Leave slab",
    "clear": "Clear conversation history",
    "model": "Show or switch the model",
    "models": "List available models",
    "context": "Show context summary",
    "tokens": "Show token usage",
    "files": "List files in context",
    "add": "Add files or directories to context",
    "remove": "Remove files from context",
    "fileops": "Toggle file operation detection",
    "watch": "Toggle re-reading files before each message",
    "templates": "List prompt templates",
    "rules": "List loaded rules",
    "rule": "Enable or disable a rule",
    "exec": "Run a shell command and add its output to context",
    "rollback": "Undo the last applied change to a file",
    "save": "Save the session",
    "load": "Load a saved session",
    "export": "Export the conversation as Markdown",
    "pwd": "Show the project root",
}

_DECISIONS = {
    "y": Decision.ACCEPT,
    "n": Decision.SKIP,
    "v": Decision.VIEW,
    "a": Decision.ACCEPT_ALL,
    "s": Decision.SKIP_ALL,
}

_STATUS_STYLE = {
    ApplyStatus.APPLIED: "[green]✓ applied[/green]",
    ApplyStatus.SKIPPED: "[dim]skipped[/dim]",
    ApplyStatus.DENIED: "[red]✗ denied[/red]",
    ApplyStatus.BLOCKED: "[yellow]! blocked[/yellow]",
    ApplyStatus.FAILED: "[red]✗ failed[/red]",
}


def parse_exec_choice(answer: str, count: int) -> list[int]:
    """Map an answer to "run all, skip, or numbers" onto zero-based indices."""
    answer = answer.strip().lower()
    if answer in ("r", "run", "a", "all", "y", "yes"):
        return list(range(count))
    if answer in ("", "s", "skip", "n", "no"):
        return []
    indices = []
    for part in answer.replace(",", " ").split():
        if part.isdigit() and 1 <= int(part) <= count and int(part) - 1 not in indices:
            indices.append(int(part) - 1)
    return indices


def preview_line(command: str, width: int = EXEC_PREVIEW_WIDTH) -> str:
    first = command.strip().splitlines()[0] if command.strip() else ""
    if len(first) > width:
        return first[: width - 3] + "..."
    return first


def is_glob(arg: str) -> bool:
    return any(ch in arg for ch in "*?[")


class ReplUI(SessionUI):
    """Terminal prompts and output for one interactive session."""

    def __init__(self, console: Console):
        self.console = console

    def on_chunk(self, text: str) -> None:
        self.console.print(text, end="", markup=False, highlight=False, soft_wrap=True)

    def on_refresh(self, report: RefreshReport) -> None:
        if report.refreshed:
            self.console.print(f"[dim]↺  Refreshed {len(report.refreshed)} file(s) from disk.[/dim]")
        for path in report.failed:
            self.console.print(f"[yellow]Could not re-read {path}; using last-known content[/yellow]")

    def decide(self, item: PendingOperation) -> Decision:
        self.console.print(f"\n[bold cyan]{escape(describe(item.op))}[/bold cyan]")
        if isinstance(item.verdict, AllowedWithConfirmation):
            self.console.print(f"[yellow]  {item.verdict.reason}[/yellow]")
        answer = Prompt.ask(
            "[dim]Apply? \\[y]es / \\[n]o / \\[v]iew diff / \\[a]ll / \\[s]kip rest[/dim]",
            choices=list(_DECISIONS),
            default="y",
            console=self.console,
            show_choices=False,
        )
        return _DECISIONS[answer]

    def view(self, item: PendingOperation) -> None:
        self.console.print(Syntax(item.preview, "diff", word_wrap=True))

    def confirm(self, item: PendingOperation) -> bool:
        reason = item.verdict.reason if isinstance(item.verdict, AllowedWithConfirmation) else describe(item.op)
        return Confirm.ask(f"[yellow]{reason}.[/yellow] Apply anyway?", default=False, console=self.console)

    def on_applied(self, results: list[ApplyResult]) -> None:
        for result in results:
            line = f"  {_STATUS_STYLE[result.status]} {escape(describe(result.op))}"
            if result.detail:
                line += f" [dim]({result.detail})[/dim]"
            self.console.print(line)

    def choose_exec(self, commands: list[str]) -> list[int]:
        self.console.print(f"\n[cyan]→[/cyan] {len(commands)} command(s) to run:\n")
        for i, command in enumerate(commands, 1):
            self.console.print(f"  [dim][{i}][/dim] [cyan]{escape(preview_line(command))}[/cyan]")
        answer = Prompt.ask(
            "[dim]\\[r]un all, \\[s]kip all, or enter numbers to run (e.g. 1 3)[/dim]",
            default="s",
            console=self.console,
            show_default=False,
        )
        indices = parse_exec_choice(answer, len(commands))
        if not indices:
            self.console.print("[dim]No commands run.[/dim]")
        return indices

    def on_exec(self, result: ShellResult) -> None:
        print_shell_result(self.console, result)

    def on_phase_run(self, run: PhaseRun) -> None:
        label = escape(f"[{run.spec.label}]")
        if run.skipped:
            self.console.print(f"[yellow]{label} skipped: no files in context[/yellow]")
            return
        if run.success:
            self.console.print(f"[green]✓ {label} passed[/green]")
        elif run.error is not None:
            self.console.print(f"[red]✗ {label} {escape(run.error)}[/red]")
        else:
            self.console.print(f"[red]✗ {label} failed (exit {run.exit_code})[/red]")
        echo = run.spec.feedback == FeedbackMode.NEVER or not run.success
        if echo and not run.injected and (run.stdout or run.stderr):
            # output the model will not see
            self.console.print(run.stdout + run.stderr, markup=False, highlight=False, style="dim")

    def continue_phases(self, number: int) -> bool:
        return Confirm.ask(
            f"[cyan]→[/cyan] Checks found issues on pass {number}. Send them to the model?",
            default=True,
            console=self.console,
        )

    def on_follow_up(self, message: str) -> None:
        header = message.splitlines()[0] if message else ""
        self.console.print(f"\n[cyan]→ {escape(header)}[/cyan]")


def print_shell_result(console: Console, result: ShellResult) -> None:
    if result.stdout:
        console.print(result.stdout, end="", markup=False, highlight=False)
    if result.stderr:
        console.print(result.stderr, end="", markup=False, highlight=False, style="red")
    if result.error is not None:
        console.print(f"[red]Exec failed:[/red] {result.error}")
    elif result.exit_code != 0:
        console.print(f"[dim]Exit code: {result.exit_code}[/dim]")


class Repl:
    """Slash-command loop around a `Session`."""

    def __init__(
        self,
        session: Session,
        console: Console,
        editor: TerminalEditor | None = None,
        persist_model: bool = True,
    ):
        self.session = session
        self.console = console
        self.persist_model = persist_model

        ui_config = session.config.ui
        source = session.sync_completions()
        source.commands = dict(COMMANDS)
        completer = Completer(source, fuzzy=ui_config.fuzzy_completion, max_items=ui_config.max_completion_items)
        state = EditorState(completer, ghost_text=ui_config.inline_completion_preview)
        self.editor = editor or TerminalEditor(state)
        # completion reads the editor's own history list
        source.history = self.editor.state.history
        self._refresh_template_commands()

    def _refresh_template_commands(self) -> None:
        commands = self.session.completions.commands
        for template in self.session.templates.all():
            commands.setdefault(template.key, template.description)

    @property
    def prompt(self) -> str:
        return f"{self.session.model or 'slab'}> "

    async def ensure_model(self) -> bool:
        if self.session.model:
            return True
        try:
            models = await self.session.available_models()
        except TransportError as e:
            self.console.print(f"[red]Error:[/red] {e}")
            self.console.print("[dim]Is Ollama running? Start it with `ollama serve`.[/dim]")
            return False
        if not models:
            self.console.print("[red]No models installed.[/red] Pull one with `ollama pull <model>`.")
            return False
        self.session.set_model(models[0].name)
        self.console.print(f"[dim]Using model {models[0].name}[/dim]")
        return True

    async def run(self) -> None:
        self.console.print("[bold]slab[/bold] [dim]- /help for commands, Ctrl+D to exit[/dim]\n")
        while True:
            self.session.sync_completions()
            line = await self.editor.read_line(self.prompt)
            if line is None:
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not await self.handle_command(line):
                    break
            else:
                await self.send(line)
        self.console.print("[dim]Goodbye.[/dim]")

    async def _run_cancellable(self, work):
        """Await a turn or command with Ctrl+C bound to cancelling it."""
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, self.session.cancel)
        try:
            return await work
        finally:
            loop.remove_signal_handler(signal.SIGINT)

    async def send(self, text: str) -> TurnResult:
        result = await self._run_cancellable(self.session.run_turn(text))
        self.report(result)
        return result

    def report(self, result: TurnResult) -> None:
        if self.session.streaming:
            self.console.print()
        elif result.assistant:
            self.console.print(result.assistant, markup=False, highlight=False)

        if result.pruned:
            self.console.print(f"[dim]Pruned {result.pruned} old turn(s) to fit the context window.[/dim]")
        if result.cancelled:
            self.console.print("[dim](interrupted)[/dim]")
        elif result.incomplete:
            self.console.print(f"[red]Response incomplete:[/red] {result.error}")
        elif result.error is not None:
            self.console.print(f"[red]Error:[/red] {result.error}")

        if result.phase_outcome is not None:
            match result.phase_outcome.reason:
                case StopReason.PASSED:
                    self.console.print("[green]✓ All checks passed.[/green]")
                case StopReason.LIMIT_REACHED:
                    self.console.print("[yellow]Phase loop limit reached.[/yellow]")
                case StopReason.DECLINED:
                    self.console.print("[dim]Phase loop stopped.[/dim]")

    # --- commands ---

    async def handle_command(self, line: str) -> bool:
        """Run one slash command. Returns False when the REPL should exit."""
        name, _, rest = line[1:].partition(" ")
        args = rest.split()

        match name:
            case "exit" | "quit":
                return False
            case "help":
                self._help()
            case "clear":
                self.session.context.clear_history()
                self.console.print("[dim]Conversation cleared.[/dim]")
            case "model":
                await self._model(args)
            case "models":
                await self._models()
            case "context":
                self._context()
            case "tokens":
                self._tokens()
            case "files":
                self._files()
            case "add":
                self._add(args)
            case "remove":
                self._remove(args)
            case "fileops":
                self.session.file_ops_enabled = self._toggle(args, self.session.file_ops_enabled, "File operations")
            case "watch":
                self.session.context.watch = self._toggle(args, self.session.context.watch, "Watch mode")
            case "templates":
                print_templates(self.console, self.session.templates)
            case "rules":
                self._rules()
            case "rule":
                self._rule(args)
            case "exec":
                await self._exec(rest.strip())
            case "rollback":
                self._rollback(args)
            case "save":
                self._save(args)
            case "load":
                self._load(args)
            case "export":
                self._export(args)
            case "pwd":
                self.console.print(str(self.session.root))
            case _:
                template = self.session.templates.get(name)
                if template is None:
                    self.console.print(f"[red]Unknown command:[/red] /{name}. Type /help for commands.")
                    return True
                self.console.print(f"[cyan]→[/cyan] [dim]Using template:[/dim] [yellow]{template.name}[/yellow]")
                result = await self._run_cancellable(self.session.run_template(template, args))
                self.report(result)
        return True

    def _help(self) -> None:
        table = Table(show_header=False, box=None, padding=(0, 2))
        for name, desc in COMMANDS.items():
            table.add_row(f"[cyan]/{name}[/cyan]", desc)
        self.console.print(table)
        self.console.print("\n[bold]Templates[/bold]")
        print_templates(self.console, self.session.templates)
        self.console.print("\n[dim]Reference a file in context with @name. Ctrl+C clears the line.[/dim]")

    async def _model(self, args: list[str]) -> None:
        if not args:
            self.console.print(f"Current model: [cyan]{self.session.model or '(none)'}[/cyan]")
            return
        model = args[0]
        try:
            names = [m.name for m in await self.session.available_models()]
        except TransportError as e:
            _logger.warning("Could not verify model %s: %s", model, e)
            names = []
        if names and model not in names:
            self.console.print(f"[yellow]Model {model} is not installed locally.[/yellow]")
            return
        self.session.set_model(model)
        if self.persist_model:
            remember_model(model)
        self.console.print(f"[green]✓[/green] Switched to [cyan]{model}[/cyan]")

    async def _models(self) -> None:
        try:
            models = await self.session.available_models(refresh=True)
        except TransportError as e:
            self.console.print(f"[red]Error:[/red] {e}")
            return
        print_models(self.console, models, self.session.model)

    def _context(self) -> None:
        summary = self.session.context.summary()
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_row("Model", self.session.model or "(none)")
        table.add_row("Files", str(summary.files))
        table.add_row("Turns", str(summary.turns))
        table.add_row("Rules applied", str(summary.rules_applied))
        table.add_row("Tokens", f"{summary.tokens_used} / {summary.token_budget} ({summary.usage_percent:.1f}%)")
        table.add_row("Watch", "on" if summary.watch else "off")
        table.add_row("File operations", "on" if self.session.file_ops_enabled else "off")
        self.console.print(table)

    def _tokens(self) -> None:
        summary = self.session.context.summary()
        self.console.print(
            f"~{summary.tokens_used} tokens used, {summary.tokens_remaining} remaining "
            f"of {summary.token_budget} ({summary.usage_percent:.1f}%)"
        )

    def _files(self) -> None:
        paths = self.session.context.display_paths()
        if not paths:
            self.console.print("[dim]No files in context. Use /add <path>.[/dim]")
            return
        for path in paths:
            self.console.print(f"  {path}")

    def _add(self, args: list[str]) -> None:
        if not args:
            self.console.print("[dim]Usage:[/dim] /add <path> [path...]")
            return
        context = self.session.context
        for arg in args:
            targets = sorted(context.root.glob(arg)) if is_glob(arg) else [context.resolve(arg)]
            if not targets:
                self.console.print(f"[yellow]No match for {arg}[/yellow]")
            for target in targets:
                try:
                    if target.is_dir():
                        added, skipped = context.add_directory(target)
                        self.console.print(f"[green]✓[/green] Added {len(added)} file(s) from {arg}")
                        if skipped:
                            self.console.print(f"[dim]  skipped {len(skipped)}: {', '.join(skipped[:5])}[/dim]")
                    else:
                        record = context.add_file(target)
                        self.console.print(f"[green]✓[/green] Added {record.display(context.root)}")
                except (OSError, ValueError) as e:
                    self.console.print(f"[red]✗[/red] {e}")

    def _remove(self, args: list[str]) -> None:
        if not args:
            self.console.print("[dim]Usage:[/dim] /remove <path> [path...]")
            return
        for arg in args:
            if self.session.context.remove_file(arg):
                self.console.print(f"[green]✓[/green] Removed {arg}")
            else:
                self.console.print(f"[yellow]{arg} is not in context[/yellow]")

    def _toggle(self, args: list[str], current: bool, label: str) -> bool:
        match args[:1]:
            case ["on"]:
                value = True
            case ["off"]:
                value = False
            case []:
                value = not current
            case _:
                self.console.print("[dim]Usage: on | off[/dim]")
                return current
        self.console.print(f"{label} {'[green]on[/green]' if value else '[dim]off[/dim]'}")
        return value

    def _rules(self) -> None:
        rules = list(self.session.context.rules)
        if not rules:
            self.console.print("[dim]No rules loaded. Add rules to .slab/rules/ (.yaml, .md, or .txt)[/dim]")
            return
        for rule in rules:
            mark = "[green]✓[/green]" if rule.enabled else "[dim]✗[/dim]"
            line = f"  {mark} {rule.name}"
            if not rule.enabled:
                line += " [dim](disabled)[/dim]"
            if rule.description:
                line += f" [dim]- {rule.description}[/dim]"
            self.console.print(line)
            if rule.applies_to:
                self.console.print(f"    [dim]applies to: {', '.join(rule.applies_to)}[/dim]")

    def _rule(self, args: list[str]) -> None:
        if len(args) < 2 or args[0] not in ("enable", "disable"):
            self.console.print("[dim]Usage:[/dim] /rule enable|disable <name>")
            return
        name = " ".join(args[1:])
        rules = self.session.context.rules
        changed = rules.enable(name) if args[0] == "enable" else rules.disable(name)
        if changed:
            self.console.print(f"[green]✓[/green] {args[0].capitalize()}d rule: [cyan]{name}[/cyan]")
        else:
            self.console.print(f"[red]✗[/red] Rule not found: [cyan]{name}[/cyan]")

    async def _exec(self, command: str) -> None:
        if not command:
            self.console.print("[dim]Usage:[/dim] /exec <shell command>")
            return
        result = await self._run_cancellable(self.session.exec(command))
        if result is None:
            self.console.print("[dim](interrupted)[/dim]")
            return
        print_shell_result(self.console, result)

    def _rollback(self, args: list[str]) -> None:
        if not args:
            self.console.print("[dim]Usage:[/dim] /rollback <path>")
            return
        if self.session.rollback(args[0]):
            self.console.print(f"[green]✓[/green] Restored {args[0]}")
        else:
            self.console.print(f"[yellow]Nothing to roll back for {args[0]}[/yellow]")

    def _save(self, args: list[str]) -> None:
        name = args[0] if args else datetime.now().strftime("session-%Y%m%d-%H%M%S")
        path = self.session.save(name)
        self.console.print(f"[green]✓[/green] Saved session to {path}")

    def _load(self, args: list[str]) -> None:
        if not args:
            sessions = self.session.store.names()
            self.console.print("Saved sessions: " + (", ".join(sessions) if sessions else "[dim](none)[/dim]"))
            return
        try:
            missing = self.session.load(args[0])
        except (FileNotFoundError, ValueError) as e:
            self.console.print(f"[red]✗[/red] {e}")
            return
        self.console.print(
            f"[green]✓[/green] Loaded {args[0]}: {len(self.session.context.history)} turn(s), "
            f"{len(self.session.context.files)} file(s)"
        )
        for path in missing:
            self.console.print(f"[yellow]  missing: {path}[/yellow]")

    def _export(self, args: list[str]) -> None:
        if args:
            path = Path(args[0]).expanduser()
        else:
            path = self.session.root / datetime.now().strftime("slab-session-%Y%m%d-%H%M%S.md")
        self.session.export(path)
        self.console.print(f"[green]✓[/green] Exported conversation to {path}")


def print_templates(console: Console, templates: TemplateManager) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    for template in templates.all():
        extra = f" [dim]({len(template.phases)} phase(s))[/dim]" if template.phases else ""
        table.add_row(f"[cyan]{template.command}[/cyan]", template.description + extra)
    console.print(table)


def print_models(console: Console, models, current: str | None = None) -> None:
    if not models:
        console.print("[dim]No models installed. Pull one with `ollama pull <model>`.[/dim]")
        return
    table = Table("Model", "Size", "Parameters", "Family")
    for model in models:
        name = f"[green]{model.name} *[/green]" if model.name == current else model.name
        table.add_row(name, f"{model.size_gb:.1f} GB", model.parameter_size or "", model.family or "")
    console.print(table)
