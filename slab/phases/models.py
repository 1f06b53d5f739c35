from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel

from slab.constants import DEFAULT_PHASE_FOLLOW_UP


class PhaseAction(StrEnum):
    STOP = "stop"
    CONTINUE = "continue"


class FeedbackMode(StrEnum):
    ON_FAILURE = "on_failure"
    ALWAYS = "always"
    NEVER = "never"


class LoopState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    CONTINUING = "continuing"
    STOPPED = "stopped"


class StopReason(StrEnum):
    PASSED = "passed"
    DECLINED = "declined"
    LIMIT_REACHED = "limit_reached"
    CANCELLED = "cancelled"


class PhaseSpec(BaseModel):
    name: str | None = None
    run: str
    on_success: PhaseAction = PhaseAction.STOP
    on_failure: PhaseAction = PhaseAction.CONTINUE
    feedback: FeedbackMode = FeedbackMode.ON_FAILURE
    follow_up: str | None = None

    @property
    def label(self) -> str:
        return self.name or "phase"

    def action_for(self, success: bool) -> PhaseAction:
        return self.on_success if success else self.on_failure

    def injects(self, success: bool) -> bool:
        match self.feedback:
            case FeedbackMode.ALWAYS:
                return True
            case FeedbackMode.ON_FAILURE:
                return not success
            case FeedbackMode.NEVER:
                return False


@dataclass
class PhaseRun:
    spec: PhaseSpec
    command: str | None
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    timed_out: bool = False
    skipped: bool = False
    injected: bool = False

    @property
    def success(self) -> bool:
        return not self.skipped and self.error is None and self.exit_code == 0

    @property
    def action(self) -> PhaseAction | None:
        if self.skipped:
            return None
        return self.spec.action_for(self.success)

    def feedback_entry(self) -> str:
        if self.error is not None:
            return f"[{self.spec.label}]: error: {self.error}\n"
        code = self.exit_code if self.exit_code is not None else -1
        return f"[{self.spec.label}] (exit {code}):\n{self.stdout}{self.stderr}\n"


@dataclass
class PassResult:
    number: int
    runs: list[PhaseRun] = field(default_factory=list)

    @property
    def should_continue(self) -> bool:
        return any(r.action == PhaseAction.CONTINUE for r in self.runs)

    @property
    def feedback(self) -> str:
        return "\n".join(r.feedback_entry() for r in self.runs if r.injected)

    def follow_up(self, template_follow_up: str | None = None) -> str:
        # per-phase follow-ups, then the template's, then the built-in one
        parts = [
            r.spec.follow_up
            for r in self.runs
            if r.action == PhaseAction.CONTINUE and r.spec.follow_up
        ]
        if parts:
            return "\n\n".join(parts)
        return template_follow_up or DEFAULT_PHASE_FOLLOW_UP

    def message(self, template_follow_up: str | None = None) -> str:
        return f"[Phase results - pass {self.number}]\n{self.feedback}\n\n{self.follow_up(template_follow_up)}"


@dataclass
class LoopOutcome:
    reason: StopReason
    passes: list[PassResult] = field(default_factory=list)

    @property
    def limit_reached(self) -> bool:
        return self.reason == StopReason.LIMIT_REACHED
