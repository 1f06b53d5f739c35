import re
from pathlib import Path

from slab.constants import EXEC_FENCE_TAGS
from slab.fileops.operations import Create, Delete, Edit, FileOperation, Rename, resolve_path
from slab.logging import get_logger

_logger = get_logger(__name__)

_DELETE_PREFIXES = ("DELETE:", "[DELETE]", "**DELETE:**")
_RENAME_RE = re.compile(r"^(?:RENAME:|\[RENAME\]|\*\*RENAME:\*\*)\s*(\S+)\s*->\s*(\S+)$")
_PATH_KEYS = ("path=", "file:", "file=")


def parse_delete_marker(line: str) -> Path | None:
    line = line.strip()
    for prefix in _DELETE_PREFIXES:
        if line.startswith(prefix):
            rest = line[len(prefix):].strip()
            if rest:
                return Path(rest)
    return None


def parse_rename_marker(line: str) -> tuple[Path, Path] | None:
    m = _RENAME_RE.match(line.strip())
    if not m:
        return None
    return Path(m.group(1)), Path(m.group(2))


def parse_code_block_header(header: str) -> tuple[str | None, Path | None]:
    """Language and target path of a fence opener (text after the backticks).

    Accepts `lang:path`, `lang path=p`, `lang file:p` and `lang file=p`.
    """
    header = header.strip()
    if not header:
        return None, None

    lang, sep, rest = header.partition(":")
    if sep and rest and " " not in rest and " " not in lang:
        return lang or None, Path(rest)

    parts = header.split()
    if len(parts) >= 2:
        for part in parts[1:]:
            for key in _PATH_KEYS:
                if part.startswith(key) and len(part) > len(key):
                    return parts[0], Path(part[len(key):])

    return parts[0], None


def parse_file_operations(text: str, root: Path) -> list[FileOperation]:
    """Detect file mutations proposed in model output.

    A fenced block with a path becomes an Edit when the target exists and
    a Create otherwise. DELETE/RENAME marker lines count only outside
    fences; deletes of missing files are dropped.
    """
    operations: list[FileOperation] = []
    in_block = False
    lang: str | None = None
    path: Path | None = None
    body: list[str] = []

    for line in text.splitlines():
        if not in_block:
            deleted = parse_delete_marker(line)
            if deleted is not None:
                if resolve_path(deleted, root).exists():
                    operations.append(Delete(deleted))
                else:
                    _logger.debug("Ignoring delete of missing file %s", deleted)
                continue
            renamed = parse_rename_marker(line)
            if renamed is not None:
                operations.append(Rename(*renamed))
                continue

        if line.startswith("```"):
            if in_block:
                if path is not None:
                    content = "\n".join(body) + "\n" if body else ""
                    if resolve_path(path, root).is_file():
                        operations.append(Edit(path, content, lang))
                    else:
                        operations.append(Create(path, content, lang))
                in_block, lang, path, body = False, None, None, []
            else:
                lang, path = parse_code_block_header(line[3:])
                in_block = True
        elif in_block and path is not None:
            body.append(line)

    return operations


def parse_exec_blocks(text: str) -> list[str]:
    """Commands from fences tagged `exec` or `run`."""
    commands: list[str] = []
    in_block = False
    capture = False
    body: list[str] = []

    for line in text.splitlines():
        if line.startswith("```"):
            if in_block:
                command = "\n".join(body).strip()
                if capture and command:
                    commands.append(command)
                in_block, capture, body = False, False, []
            else:
                in_block = True
                capture = line[3:].strip().lower() in EXEC_FENCE_TAGS
        elif in_block and capture:
            body.append(line)

    return commands
