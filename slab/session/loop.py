import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from slab.config import Config
from slab.context.manager import ContextManager
from slab.context.models import RefreshReport
from slab.context.rules import RuleSet
from slab.editor.completion import CompletionSource
from slab.errors import ModelNotFoundError, OverBudgetError, TemplateError, TransportError
from slab.fileops.engine import ApplyResult, Decision, FileOpEngine, PendingOperation
from slab.fileops.operations import Create, Delete, Edit, Rename, resolve_path
from slab.fileops.parsing import parse_exec_blocks, parse_file_operations
from slab.llm import ChatBackend, ModelInfo
from slab.logging import get_logger
from slab.phases.loop import PhaseLoop, Runner
from slab.phases.models import LoopOutcome, PhaseRun, StopReason
from slab.session.store import SavedSession, SavedTurn, SessionStore, export_markdown
from slab.shell import ShellResult, format_for_context, run_shell
from slab.templates import PromptTemplate, TemplateManager

_logger = get_logger(__name__)

T = TypeVar("T")

INCOMPLETE_MARKER = "\n\n[response incomplete]"


class SessionUI:
    """Interaction hooks the session calls during a turn.

    The defaults never touch the filesystem or run commands; the REPL
    overrides them with terminal prompts.
    """

    def on_chunk(self, text: str) -> None:
        pass

    def on_refresh(self, report: RefreshReport) -> None:
        pass

    def decide(self, item: PendingOperation) -> Decision:
        return Decision.SKIP

    def confirm(self, item: PendingOperation) -> bool:
        return False

    def view(self, item: PendingOperation) -> None:
        pass

    def on_applied(self, results: list[ApplyResult]) -> None:
        pass

    def choose_exec(self, commands: list[str]) -> list[int]:
        return []

    def on_exec(self, result: ShellResult) -> None:
        pass

    def on_phase_run(self, run: PhaseRun) -> None:
        pass

    def continue_phases(self, number: int) -> bool:
        return True

    def on_follow_up(self, message: str) -> None:
        pass


@dataclass
class TurnResult:
    prompt: str
    assistant: str = ""
    operations: list[ApplyResult] = field(default_factory=list)
    exec_results: list[ShellResult] = field(default_factory=list)
    phase_outcome: LoopOutcome | None = None
    follow_ups: list["TurnResult"] = field(default_factory=list)
    error: Exception | None = None
    cancelled: bool = False
    incomplete: bool = False
    pruned: int = 0
    refreshed: RefreshReport | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled

    @property
    def phase_runs(self) -> list[PhaseRun]:
        if self.phase_outcome is None:
            return []
        return [run for p in self.phase_outcome.passes for run in p.runs]


class _FollowUpAborted(Exception):
    def __init__(self, turn: TurnResult):
        self.turn = turn
        super().__init__("phase follow-up turn did not complete")


class Session:
    """One interactive conversation with a model over a project directory.

    Owns the context, the file-operation engine, the templates and the
    cached model list. `run_turn` is the whole per-turn pipeline: watch
    refresh, prompt build, streamed response, file operations, exec blocks
    and, for template turns, the phase loop.
    """

    def __init__(
        self,
        config: Config,
        backend: ChatBackend,
        ui: SessionUI | None = None,
        model: str | None = None,
        root: Path | None = None,
        runner: Runner = run_shell,
    ):
        self.config = config
        self.backend = backend
        self.ui = ui or SessionUI()
        self.root = (root or config.project_root).resolve()
        self.model = model or config.default_model
        self.streaming = config.ui.streaming
        self.file_ops_enabled = True
        self.auto_apply = config.ui.auto_apply_file_ops
        self._runner = runner

        rules = RuleSet()
        rules.load(config.rules_dir)
        system_prompt = config.system_prompt_for(self.model) if self.model else config.system_prompt
        self.context = ContextManager(self.root, config.context_limit, system_prompt, rules)
        self.engine = FileOpEngine(self.root)
        self.templates = TemplateManager()
        self.templates.load_defaults()
        self.templates.load(config.templates_dirs)
        self.store = SessionStore(config.sessions_dir)

        self.models: list[ModelInfo] | None = None
        self.phase_loop: PhaseLoop | None = None
        self.completions = CompletionSource(root=self.root)
        self._active: asyncio.Task | None = None

    # --- models ---

    async def available_models(self, refresh: bool = False) -> list[ModelInfo]:
        if self.models is None or refresh:
            self.models = await self.backend.list_models()
            self.completions.models = [m.name for m in self.models]
        return self.models

    def set_model(self, model: str) -> None:
        self.model = model
        self.context.system_prompt = self.config.system_prompt_for(model)
        _logger.info("Switched model to %s", model)

    # --- turns ---

    def cancel(self) -> bool:
        """Cancel the active turn or `/exec` command; returns False when nothing is running.

        Cancelling stops a streaming response as well as a running exec block
        or phase command (the subprocess is killed).
        """
        if self._active is None or self._active.done():
            return False
        self._active.cancel()
        return True

    async def _run_active(self, work: Coroutine[object, object, T]) -> T | None:
        """Await `work` as the active task; returns None when `cancel` stopped it."""
        self._active = asyncio.create_task(work)
        try:
            return await self._active
        except asyncio.CancelledError:
            if asyncio.current_task().cancelling():
                raise
            _logger.info("Cancelled; partial response discarded")
            return None
        finally:
            self._active = None

    async def _respond(self, messages: list[dict]) -> str:
        options = self.config.options_for(self.model)
        if not self.streaming:
            return await self.backend.chat(self.model, messages, options)

        chunks: list[str] = []
        try:
            async for chunk in self.backend.stream_chat(self.model, messages, options):
                chunks.append(chunk)
                self.ui.on_chunk(chunk)
        except TransportError as e:
            raise TransportError(str(e), partial="".join(chunks)) from e
        return "".join(chunks)

    async def _exchange(self, result: TurnResult) -> TurnResult:
        if self.model is None:
            result.error = ValueError("No model selected. Use /model <name> or --model")
            return result

        if self.context.watch:
            result.refreshed = self.context.refresh_from_disk()
            self.ui.on_refresh(result.refreshed)

        try:
            prompt = self.context.build_prompt(result.prompt)
        except OverBudgetError as e:
            _logger.warning("Turn not sent: %s", e)
            result.error = e
            return result
        result.pruned = prompt.pruned

        try:
            response = await self._respond(prompt.messages)
        except TransportError as e:
            _logger.warning("Response failed: %s", e)
            result.error = e
            if e.partial:
                result.assistant = e.partial
                result.incomplete = True
                self.context.add_turn("user", prompt.user_turn)
                self.context.add_turn("assistant", e.partial + INCOMPLETE_MARKER)
            return result
        except ModelNotFoundError as e:
            result.error = e
            return result

        result.assistant = response
        self.context.add_turn("user", prompt.user_turn)
        if not response.strip():
            return result
        self.context.add_turn("assistant", response)

        if self.file_ops_enabled:
            result.operations = self._review_file_operations(response)
        result.exec_results = await self._run_exec_blocks(response)
        return result

    async def run_turn(self, text: str, phases: PhaseLoop | None = None) -> TurnResult:
        result = TurnResult(prompt=text)
        if await self._run_active(self._turn(result, phases)) is None:
            result.cancelled = True
        return result

    async def _turn(self, result: TurnResult, phases: PhaseLoop | None) -> TurnResult:
        await self._exchange(result)
        if phases is not None and result.ok:
            await self._run_phases(phases, result)
        return result

    async def _run_phases(self, loop: PhaseLoop, result: TurnResult) -> None:
        async def send(message: str) -> None:
            self.ui.on_follow_up(message)
            follow = TurnResult(prompt=message)
            result.follow_ups.append(follow)
            await self._exchange(follow)
            if not follow.ok:
                raise _FollowUpAborted(follow)

        self.phase_loop = loop
        try:
            result.phase_outcome = await loop.run(self.context.display_paths, send)
        except _FollowUpAborted as e:
            result.error = e.turn.error
        except asyncio.CancelledError:
            result.phase_outcome = LoopOutcome(reason=StopReason.CANCELLED, passes=list(loop.passes))
            raise
        finally:
            self.phase_loop = None

    def phase_loop_for(self, template: PromptTemplate) -> PhaseLoop | None:
        if not template.phases:
            return None
        return PhaseLoop(
            template.phases,
            max_phases=template.max_phases,
            follow_up=template.phases_follow_up,
            cwd=self.root,
            timeout=self.config.phase_timeout,
            runner=self._runner,
            on_run=self.ui.on_phase_run,
            confirm=self.ui.continue_phases,
        )

    async def run_template(self, template: PromptTemplate, args: list[str]) -> TurnResult:
        values = self.templates.parse_args(template, args)
        try:
            rendered = self.templates.render(template, values, self.context)
        except TemplateError as e:
            return TurnResult(prompt=template.command, error=e)

        result = TurnResult(prompt=rendered)
        if await self._run_active(self._template_turn(template, result)) is None:
            result.cancelled = True
        return result

    async def _template_turn(self, template: PromptTemplate, result: TurnResult) -> TurnResult:
        await self._exchange(result)
        if not result.ok:
            return result
        # keep later prompts from being dominated by the template text
        self.context.replace_last_user_turn(f"[Used {template.command} template]")

        loop = self.phase_loop_for(template)
        if loop is not None:
            await self._run_phases(loop, result)
        return result

    # --- file operations ---

    def _review_file_operations(self, response: str) -> list[ApplyResult]:
        operations = parse_file_operations(response, self.root)
        if not operations:
            return []
        pending = self.engine.prepare(operations)
        results = self.engine.review_batch(
            pending,
            decide=self.ui.decide,
            confirm=self.ui.confirm,
            view=self.ui.view,
            accept_all=self.auto_apply,
        )
        self._sync_context(results)
        self.ui.on_applied(results)
        return results

    def _sync_context(self, results: list[ApplyResult]) -> None:
        """Keep tracked file snapshots in step with what was just written."""
        for result in results:
            if not result.ok:
                continue
            match result.op:
                case Create(path=path) | Edit(path=path):
                    target = resolve_path(path, self.root)
                    if self.context.has_file(target):
                        self.context.add_file(target)
                case Delete(path=path):
                    self.context.remove_file(resolve_path(path, self.root))
                case Rename(source=source, target=dest):
                    if self.context.remove_file(resolve_path(source, self.root)):
                        self.context.add_file(resolve_path(dest, self.root))

    def rollback(self, path: str) -> bool:
        if not self.engine.rollback(path):
            return False
        target = resolve_path(Path(path), self.root)
        if self.context.has_file(target) and target.is_file():
            self.context.add_file(target)
        return True

    # --- shell ---

    async def exec(self, command: str) -> ShellResult | None:
        """Run a command and record its output as a user turn; None when cancelled."""
        return await self._run_active(self._exec(command))

    async def _exec(self, command: str) -> ShellResult:
        result = await self._runner(command, cwd=self.root, timeout=self.config.phase_timeout)
        self.context.add_turn("user", format_for_context(result))
        return result

    async def _run_exec_blocks(self, response: str) -> list[ShellResult]:
        commands = parse_exec_blocks(response)
        if not commands:
            return []
        results = []
        for index in self.ui.choose_exec(commands):
            if not 0 <= index < len(commands):
                continue
            result = await self._exec(commands[index])
            self.ui.on_exec(result)
            results.append(result)
        return results

    # --- persistence ---

    def snapshot(self, name: str) -> SavedSession:
        return SavedSession(
            name=name,
            model=self.model,
            files=self.context.display_paths(),
            turns=[SavedTurn(role=t.role, content=t.content) for t in self.context.history],
        )

    def save(self, name: str) -> Path:
        path = self.store.save(self.snapshot(name))
        self.completions.sessions = self.store.names()
        return path

    def restore(self, saved: SavedSession) -> list[str]:
        """Replace model, files and history from a saved session; returns missing files."""
        if saved.model:
            self.set_model(saved.model)
        self.context.files.clear()
        missing = []
        for path in saved.files:
            try:
                self.context.add_file(path)
            except (OSError, ValueError):
                _logger.warning("Saved file %s is no longer readable", path)
                missing.append(path)
        self.context.history = saved.to_turns()
        return missing

    def load(self, name: str) -> list[str]:
        return self.restore(self.store.load(name))

    def export(self, path: Path, name: str | None = None) -> Path:
        return export_markdown(self.snapshot(name or path.stem), path)

    # --- completion ---

    def sync_completions(self) -> CompletionSource:
        source = self.completions
        source.context_files = self.context.display_paths()
        source.rules = self.context.rules.names
        source.sessions = self.store.names()
        if self.models is not None:
            source.models = [m.name for m in self.models]
        return source
