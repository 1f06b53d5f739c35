import shlex
from collections.abc import Awaitable, Callable
from pathlib import Path

from slab.constants import DEFAULT_MAX_PHASES, PHASE_TIMEOUT
from slab.logging import get_logger
from slab.phases.models import LoopOutcome, LoopState, PassResult, PhaseRun, PhaseSpec, StopReason
from slab.shell import ShellResult, run_shell

_logger = get_logger(__name__)

Runner = Callable[..., Awaitable[ShellResult]]
RunCallback = Callable[[PhaseRun], None]
ConfirmCallback = Callable[[int], bool]
SendCallback = Callable[[str], Awaitable[None]]


def interpolate_command(command: str, files: list[str]) -> str | None:
    """Substitute `{{file}}` (first file) and `{{files}}` (all files).

    Returns None when the command needs files but none are in context.
    """
    uses_files = "{{file}}" in command or "{{files}}" in command
    if uses_files and not files:
        return None
    first = shlex.quote(files[0]) if files else ""
    every = " ".join(shlex.quote(f) for f in files)
    return command.replace("{{files}}", every).replace("{{file}}", first)


class PhaseLoop:
    """Bounded generate -> verify -> fix cycle.

    IDLE -> RUNNING(n) -> CONTINUING(n+1) | STOPPED. Each pass runs every
    phase in order; when any phase's branch says continue, one combined
    follow-up turn goes back to the model. The pass count never exceeds
    `max_phases`.
    """

    def __init__(
        self,
        phases: list[PhaseSpec],
        max_phases: int = DEFAULT_MAX_PHASES,
        follow_up: str | None = None,
        cwd: Path | None = None,
        timeout: float = PHASE_TIMEOUT,
        runner: Runner = run_shell,
        on_run: RunCallback | None = None,
        confirm: ConfirmCallback | None = None,
    ):
        if max_phases < 1:
            raise ValueError(f"max_phases must be at least 1, got {max_phases}")
        self.phases = phases
        self.max_phases = max_phases
        self.follow_up = follow_up
        self.cwd = cwd
        self.timeout = timeout
        self._runner = runner
        self._on_run = on_run
        self._confirm = confirm
        self.state = LoopState.IDLE
        self.iteration = 0
        self.passes: list[PassResult] = []

    async def _run_phase(self, spec: PhaseSpec, files: list[str]) -> PhaseRun:
        command = interpolate_command(spec.run, files)
        if command is None:
            _logger.warning("[%s] skipped: no files in context", spec.label)
            return PhaseRun(spec=spec, command=None, skipped=True)

        result = await self._runner(command, cwd=self.cwd, timeout=self.timeout)
        run = PhaseRun(
            spec=spec,
            command=command,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            error=result.error,
            timed_out=result.timed_out,
        )
        run.injected = spec.injects(run.success)
        return run

    async def run_pass(self, number: int, files: list[str]) -> PassResult:
        result = PassResult(number=number)
        # recorded up front so a cancelled pass keeps the runs that finished
        self.passes.append(result)
        for spec in self.phases:
            run = await self._run_phase(spec, files)
            result.runs.append(run)
            if self._on_run is not None:
                self._on_run(run)
        return result

    async def run(self, files: Callable[[], list[str]], send: SendCallback) -> LoopOutcome:
        """Drive passes until every triggered branch stops or the limit is hit.

        `files` is called before each pass so fixes that add files are seen.
        """
        self.passes = []
        number = 1
        self.state = LoopState.RUNNING
        while True:
            if number > self.max_phases:
                _logger.warning("Phase loop limit reached after %d pass(es)", self.max_phases)
                return self._stop(StopReason.LIMIT_REACHED)

            self.iteration = number
            result = await self.run_pass(number, files())

            if not result.should_continue:
                return self._stop(StopReason.PASSED)
            if self._confirm is not None and not self._confirm(number):
                return self._stop(StopReason.DECLINED)

            self.state = LoopState.CONTINUING
            await send(result.message(self.follow_up))
            number += 1
            self.state = LoopState.RUNNING

    def _stop(self, reason: StopReason) -> LoopOutcome:
        self.state = LoopState.STOPPED
        return LoopOutcome(reason=reason, passes=list(self.passes))
