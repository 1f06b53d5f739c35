from slab.phases.loop import PhaseLoop, interpolate_command
from slab.phases.models import (
    FeedbackMode,
    LoopOutcome,
    LoopState,
    PassResult,
    PhaseAction,
    PhaseRun,
    PhaseSpec,
    StopReason,
)

__all__ = [
    "FeedbackMode",
    "LoopOutcome",
    "LoopState",
    "PassResult",
    "PhaseAction",
    "PhaseLoop",
    "PhaseRun",
    "PhaseSpec",
    "StopReason",
    "interpolate_command",
]
