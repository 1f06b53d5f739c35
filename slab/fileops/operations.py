import difflib
import os
from dataclasses import dataclass
from pathlib import Path

from slab.constants import TRUNCATION_MIN_ORIGINAL_LINES, TRUNCATION_RATIO


@dataclass(frozen=True)
class Create:
    path: Path
    content: str
    language: str | None = None


@dataclass(frozen=True)
class Edit:
    path: Path
    new_content: str
    language: str | None = None


@dataclass(frozen=True)
class Delete:
    path: Path


@dataclass(frozen=True)
class Rename:
    source: Path
    target: Path


FileOperation = Create | Edit | Delete | Rename


def kind(op: FileOperation) -> str:
    match op:
        case Create():
            return "create"
        case Edit():
            return "edit"
        case Delete():
            return "delete"
        case Rename():
            return "rename"
    raise TypeError(f"Unknown file operation: {op!r}")


def primary_path(op: FileOperation) -> Path:
    if isinstance(op, Rename):
        return op.source
    return op.path


def op_paths(op: FileOperation) -> tuple[Path, ...]:
    if isinstance(op, Rename):
        return (op.source, op.target)
    return (op.path,)


def resolve_path(path: Path, root: Path) -> Path:
    """Absolute, normalised target of `path` without following symlinks."""
    if not path.is_absolute():
        path = root / path
    return Path(os.path.normpath(path))


def describe(op: FileOperation) -> str:
    match op:
        case Rename(source=source, target=target):
            return f"RENAME {source} -> {target}"
        case _:
            return f"{kind(op).upper()} {op.path}"


def _read_or_empty(path: Path) -> str:
    try:
        return path.read_text()
    except (OSError, UnicodeDecodeError):
        return ""


def _unified(old: str, new: str, fromfile: str, tofile: str) -> str:
    diff = difflib.unified_diff(
        old.splitlines(),
        new.splitlines(),
        fromfile=fromfile,
        tofile=tofile,
        lineterm="",
    )
    return "\n".join(diff)


def compute_preview(op: FileOperation, root: Path) -> str:
    """Unified diff of the on-disk state against what `op` would leave."""
    match op:
        case Create(path=path, content=content):
            return _unified("", content, "/dev/null", f"b/{path}")
        case Edit(path=path, new_content=new_content):
            current = _read_or_empty(resolve_path(path, root))
            return _unified(current, new_content, f"a/{path}", f"b/{path}")
        case Delete(path=path):
            current = _read_or_empty(resolve_path(path, root))
            return _unified(current, "", f"a/{path}", "/dev/null")
        case Rename(source=source, target=target):
            return f"rename from {source}\nrename to {target}"
    raise TypeError(f"Unknown file operation: {op!r}")


def truncation_check(op: FileOperation, root: Path) -> tuple[int, int] | None:
    """(original_lines, new_lines) when an Edit looks like a snippet of the file."""
    if not isinstance(op, Edit):
        return None
    original = _read_or_empty(resolve_path(op.path, root))
    original_lines = len(original.splitlines())
    new_lines = len(op.new_content.splitlines())
    if original_lines < TRUNCATION_MIN_ORIGINAL_LINES:
        return None
    if new_lines < original_lines * TRUNCATION_RATIO:
        return original_lines, new_lines
    return None
