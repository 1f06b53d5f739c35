from dataclasses import dataclass
from pathlib import Path

from slab.constants import PROTECTED_DIR
from slab.fileops.operations import FileOperation, op_paths, resolve_path


@dataclass(frozen=True)
class Allowed:
    pass


@dataclass(frozen=True)
class AllowedWithConfirmation:
    reason: str


@dataclass(frozen=True)
class Denied:
    reason: str


SafetyVerdict = Allowed | AllowedWithConfirmation | Denied

_SEVERITY = {Allowed: 0, AllowedWithConfirmation: 1, Denied: 2}


def _is_protected(path: Path) -> bool:
    return any(part.lower() == PROTECTED_DIR for part in path.parts)


def check_path(path: Path, root: Path) -> SafetyVerdict:
    root = root.resolve()
    if _is_protected(path):
        return Denied(f"protected path: cannot modify files in {PROTECTED_DIR}/ ({path})")

    target = resolve_path(path, root)
    if not path.is_absolute() and not target.is_relative_to(root):
        return Denied(f"path traversal: '{path}' escapes the project root")

    # follow symlinks for whatever part of the path already exists
    real = target.resolve()
    if real.is_relative_to(root):
        if _is_protected(real.relative_to(root)):
            return Denied(f"protected path: '{path}' resolves into {PROTECTED_DIR}/")
        return Allowed()

    if path.is_absolute():
        return AllowedWithConfirmation(f"absolute path outside the project root: {path}")
    return Denied(f"path traversal: '{path}' resolves outside the project root")


def evaluate_safety(op: FileOperation, root: Path) -> SafetyVerdict:
    """Strictest verdict over every path the operation touches."""
    verdicts = [check_path(p, root) for p in op_paths(op)]
    return max(verdicts, key=lambda v: _SEVERITY[type(v)])


def is_denied(verdict: SafetyVerdict) -> bool:
    return isinstance(verdict, Denied)


def needs_confirmation(verdict: SafetyVerdict) -> bool:
    return isinstance(verdict, AllowedWithConfirmation)
