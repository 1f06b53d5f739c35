from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from slab.fileops.operations import (
    Create,
    Delete,
    Edit,
    FileOperation,
    Rename,
    compute_preview,
    op_paths,
    resolve_path,
    truncation_check,
)
from slab.fileops.safety import Denied, SafetyVerdict, evaluate_safety, needs_confirmation
from slab.logging import get_logger

_logger = get_logger(__name__)


class ApplyStatus(StrEnum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    DENIED = "denied"
    BLOCKED = "blocked"
    FAILED = "failed"


class Decision(StrEnum):
    ACCEPT = "accept"
    SKIP = "skip"
    VIEW = "view"
    ACCEPT_ALL = "accept_all"
    SKIP_ALL = "skip_all"


@dataclass
class PendingOperation:
    op: FileOperation
    verdict: SafetyVerdict
    root: Path
    truncation: tuple[int, int] | None = None
    _preview: str | None = field(default=None, repr=False)

    @property
    def preview(self) -> str:
        if self._preview is None:
            self._preview = compute_preview(self.op, self.root)
        return self._preview


@dataclass(frozen=True)
class ApplyResult:
    op: FileOperation
    status: ApplyStatus
    verdict: SafetyVerdict
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == ApplyStatus.APPLIED


@dataclass(frozen=True)
class Snapshot:
    path: Path
    existed: bool
    content: bytes | None


def _take_snapshot(path: Path) -> Snapshot:
    if path.is_file():
        return Snapshot(path, True, path.read_bytes())
    return Snapshot(path, False, None)


def _restore(snapshot: Snapshot) -> None:
    if snapshot.existed:
        snapshot.path.parent.mkdir(parents=True, exist_ok=True)
        snapshot.path.write_bytes(snapshot.content or b"")
    elif snapshot.path.exists():
        snapshot.path.unlink()


class FileOpEngine:
    """Applies file operations one at a time with per-path rollback.

    Every commit records the pre-apply state of the paths it touches. That
    snapshot is what `rollback` restores, and it is replaced by the next
    commit to the same path.
    """

    def __init__(self, root: Path):
        self.root = root.resolve()
        self._snapshots: dict[Path, tuple[Snapshot, ...]] = {}

    def prepare(self, operations: list[FileOperation]) -> list[PendingOperation]:
        return [
            PendingOperation(
                op=op,
                verdict=evaluate_safety(op, self.root),
                root=self.root,
                truncation=truncation_check(op, self.root),
            )
            for op in operations
        ]

    def _write(self, op: FileOperation) -> None:
        match op:
            case Create(path=path, content=content) | Edit(path=path, new_content=content):
                target = resolve_path(path, self.root)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content)
            case Delete(path=path):
                target = resolve_path(path, self.root)
                if target.is_dir():
                    raise IsADirectoryError(f"Refusing to delete directory {path}")
                target.unlink()
            case Rename(source=source, target=dest):
                src = resolve_path(source, self.root)
                dst = resolve_path(dest, self.root)
                if not src.is_file():
                    raise FileNotFoundError(f"Rename source not found: {source}")
                dst.parent.mkdir(parents=True, exist_ok=True)
                src.replace(dst)

    def apply(self, op: FileOperation) -> ApplyResult:
        verdict = evaluate_safety(op, self.root)
        if isinstance(verdict, Denied):
            return ApplyResult(op, ApplyStatus.DENIED, verdict, verdict.reason)

        targets = [resolve_path(p, self.root) for p in op_paths(op)]
        try:
            snapshots = tuple(_take_snapshot(t) for t in targets)
            self._write(op)
        except OSError as e:
            _logger.warning("File operation failed for %s: %s", targets[0], e)
            return ApplyResult(op, ApplyStatus.FAILED, verdict, str(e))

        for target in targets:
            self._forget(target)
        for target in targets:
            self._snapshots[target] = snapshots
        _logger.debug("Applied %s", op)
        return ApplyResult(op, ApplyStatus.APPLIED, verdict)

    def _forget(self, path: Path) -> None:
        group = self._snapshots.get(path)
        if group is None:
            return
        for snapshot in group:
            if self._snapshots.get(snapshot.path) is group:
                del self._snapshots[snapshot.path]

    def can_rollback(self, path: str | Path) -> bool:
        return resolve_path(Path(path), self.root) in self._snapshots

    def rollback(self, path: str | Path) -> bool:
        """Restore the pre-apply state of the last commit touching `path`."""
        target = resolve_path(Path(path), self.root)
        group = self._snapshots.get(target)
        if group is None:
            return False
        # reverse order puts a rename source back after clearing its target
        for snapshot in reversed(group):
            _restore(snapshot)
        self._forget(target)
        _logger.info("Rolled back %s", target)
        return True

    def review_batch(
        self,
        pending: list[PendingOperation],
        decide: Callable[[PendingOperation], Decision],
        confirm: Callable[[PendingOperation], bool],
        view: Callable[[PendingOperation], None] | None = None,
        accept_all: bool = False,
    ) -> list[ApplyResult]:
        """Walk a batch asking accept/skip/view/accept-all per operation.

        Safety is evaluated again for each operation as it is reached, so
        accept-all never bypasses a Denied verdict or an explicit
        confirmation for paths outside the project root.
        """
        results: list[ApplyResult] = []
        skip_rest = False
        for item in pending:
            item.verdict = evaluate_safety(item.op, self.root)
            if isinstance(item.verdict, Denied):
                results.append(ApplyResult(item.op, ApplyStatus.DENIED, item.verdict, item.verdict.reason))
                continue
            if item.truncation is not None:
                original, new = item.truncation
                detail = f"edit shrinks the file from {original} to {new} lines; likely a snippet"
                results.append(ApplyResult(item.op, ApplyStatus.BLOCKED, item.verdict, detail))
                continue
            if skip_rest:
                results.append(ApplyResult(item.op, ApplyStatus.SKIPPED, item.verdict))
                continue

            decision = Decision.ACCEPT if accept_all else None
            while decision is None or decision == Decision.VIEW:
                if decision == Decision.VIEW and view is not None:
                    view(item)
                decision = decide(item)

            if decision == Decision.ACCEPT_ALL:
                accept_all = True
            elif decision == Decision.SKIP_ALL:
                skip_rest = True
            if decision in (Decision.SKIP, Decision.SKIP_ALL):
                results.append(ApplyResult(item.op, ApplyStatus.SKIPPED, item.verdict))
                continue

            if needs_confirmation(item.verdict) and not confirm(item):
                results.append(ApplyResult(item.op, ApplyStatus.SKIPPED, item.verdict, "not confirmed"))
                continue
            results.append(self.apply(item.op))
        return results
