import re
from collections.abc import Mapping
from pathlib import Path

from slab.context.models import FileRecord
from slab.logging import get_logger

_logger = get_logger(__name__)

# `@name` at the start of the text or after whitespace
_REFERENCE_RE = re.compile(r"(?<!\S)@([^\s@`]+)")
_TRAILING_PUNCT = ".,;:!?)]}'\""
_FENCE_RE = re.compile(r"^\s*(`{3,})")


def fence_for(content: str) -> str:
    """A backtick fence longer than any backtick run inside `content`."""
    longest = max((len(run) for run in re.findall(r"`+", content)), default=0)
    return "`" * max(3, longest + 1)


def render_reference(record: FileRecord, root: Path) -> str:
    fence = fence_for(record.content)
    return f"File: {record.display(root)}\n{fence}{record.language}\n{record.content}\n{fence}"


class ReferenceResolver:
    def __init__(self, files: Mapping[Path, FileRecord], root: Path):
        self._files = files
        self._root = root

    def lookup(self, name: str) -> FileRecord | None:
        """Resolve a reference name to a tracked file.

        A name with a path separator must match a relative (or absolute)
        path exactly, or else be the unique trailing-components match. A
        bare name must be the unique basename among tracked files, so
        `@a.rs` stays ambiguous while both `a.rs` and `src/a.rs` are
        tracked. Ambiguous and unknown names resolve to None.
        """
        if "/" in name:
            for record in self._files.values():
                if record.display(self._root) == name or str(record.path) == name:
                    return record
            parts = Path(name).parts
            matches = [r for r in self._files.values() if r.path.parts[-len(parts):] == parts]
        else:
            matches = [r for r in self._files.values() if r.path.name == name]

        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            _logger.debug("Ambiguous reference @%s (%d files)", name, len(matches))
        return None

    def _expand_token(self, token: str) -> tuple[str, str] | None:
        """Rendered block plus any trailing punctuation split off the token."""
        record = self.lookup(token)
        if record is not None:
            return render_reference(record, self._root), ""
        stripped = token.rstrip(_TRAILING_PUNCT)
        if stripped and stripped != token:
            record = self.lookup(stripped)
            if record is not None:
                return render_reference(record, self._root), token[len(stripped):]
        return None

    def _expand_line(self, line: str) -> str:
        def replace(m: re.Match) -> str:
            expanded = self._expand_token(m.group(1))
            if expanded is None:
                return m.group(0)
            block, trailing = expanded
            prefix = "" if m.start() == 0 else "\n"
            return f"{prefix}{block}\n{trailing}"

        return _REFERENCE_RE.sub(replace, line)

    def expand(self, text: str) -> str:
        """Inline `@name` references as fenced file blocks.

        Text inside fenced blocks is never scanned, so expanding an already
        expanded text changes nothing.
        """
        if "@" not in text or not self._files:
            return text

        out = []
        fence: str | None = None
        for line in text.split("\n"):
            m = _FENCE_RE.match(line)
            if fence is None:
                if m:
                    fence = m.group(1)
                    out.append(line)
                else:
                    out.append(self._expand_line(line))
            else:
                if m and line.strip() == m.group(1) and len(m.group(1)) >= len(fence):
                    fence = None
                out.append(line)
        return "\n".join(out)
