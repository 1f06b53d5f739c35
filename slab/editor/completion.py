from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path


class CompletionKind(StrEnum):
    COMMAND = "command"
    FILE = "file"
    DIRECTORY = "directory"
    MODEL = "model"
    RULE = "rule"
    HISTORY = "history"
    ARGUMENT = "argument"


@dataclass(frozen=True)
class Completion:
    text: str
    kind: CompletionKind
    description: str | None = None


def match_tier(candidate: str, query: str) -> int | None:
    """0 for a prefix match, 1 for a substring, 2 for a subsequence, else None."""
    c, q = candidate.lower(), query.lower()
    if c.startswith(q):
        return 0
    if q in c:
        return 1
    it = iter(c)
    if all(ch in it for ch in q):
        return 2
    return None


def rank(candidates: Iterable[Completion], query: str, fuzzy: bool = True) -> list[Completion]:
    """Deterministic ordering: tier, then shorter text, then lexical order.

    Without fuzzy matching only prefix matches survive.
    """
    scored: dict[str, tuple[tuple[int, int, str], Completion]] = {}
    for completion in candidates:
        tier = match_tier(completion.text, query)
        if tier is None or (not fuzzy and tier > 0):
            continue
        key = (tier, len(completion.text), completion.text)
        existing = scored.get(completion.text)
        if existing is None or key < existing[0]:
            scored[completion.text] = (key, completion)
    return [c for _, c in sorted(scored.values(), key=lambda item: item[0])]


@dataclass
class CompletionSource:
    """Everything the completer draws candidates from; owned by the session."""

    root: Path
    commands: dict[str, str] = field(default_factory=dict)
    models: list[str] = field(default_factory=list)
    context_files: list[str] = field(default_factory=list)
    rules: list[str] = field(default_factory=list)
    sessions: list[str] = field(default_factory=list)
    history: list[str] = field(default_factory=list)


RULE_ACTIONS = ("enable", "disable")


class Completer:
    def __init__(self, source: CompletionSource, fuzzy: bool = True, max_items: int | None = None):
        self.source = source
        self.fuzzy = fuzzy
        self.max_items = max_items

    def complete(self, text: str) -> tuple[int, list[Completion]]:
        """Candidates for the token ending at the end of `text`.

        Returns the token's start offset within `text` and the ranked
        candidates, each a full replacement for the token.
        """
        token_start = max(text.rfind(" "), text.rfind("\n")) + 1
        token = text[token_start:]

        if text.startswith("/"):
            if token_start == 0:
                candidates = self._commands() + self._history(text)
            else:
                candidates = self._arguments(text, token)
        elif token.startswith("@"):
            candidates = [
                Completion(f"@{p}", CompletionKind.FILE) for p in self._reference_names()
            ]
        else:
            # plain prose only completes from whole history lines
            token_start, token = 0, text
            candidates = self._history(text) if text.strip() else []

        query = token
        ranked = rank(candidates, query, self.fuzzy)
        # a candidate identical to what is typed completes nothing
        ranked = [c for c in ranked if c.text != query]
        if self.max_items is not None:
            ranked = ranked[: self.max_items]
        return token_start, ranked

    def _commands(self) -> list[Completion]:
        return [
            Completion(f"/{name}", CompletionKind.COMMAND, desc)
            for name, desc in self.source.commands.items()
        ]

    def _history(self, text: str) -> list[Completion]:
        seen: set[str] = set()
        out = []
        for entry in reversed(self.source.history):
            if entry in seen or not entry.lower().startswith(text.lower()):
                continue
            seen.add(entry)
            out.append(Completion(entry, CompletionKind.HISTORY, "from history"))
            if len(out) >= 5:
                break
        return out

    def _reference_names(self) -> list[str]:
        names = list(self.source.context_files)
        basenames = [Path(p).name for p in self.source.context_files]
        names.extend(n for n in basenames if basenames.count(n) == 1)
        return names

    def _arguments(self, text: str, token: str) -> list[Completion]:
        words = text.split()
        command = words[0][1:]
        # index of the argument being completed
        position = len(words) - 1 if token else len(words)

        match command:
            case "model":
                return [Completion(m, CompletionKind.MODEL) for m in self.source.models]
            case "add":
                return self._paths(token)
            case "remove":
                return [Completion(p, CompletionKind.FILE) for p in self.source.context_files]
            case "rule":
                if position == 1:
                    return [Completion(a, CompletionKind.ARGUMENT) for a in RULE_ACTIONS]
                return [Completion(r, CompletionKind.RULE) for r in self.source.rules]
            case "load":
                return [Completion(s, CompletionKind.ARGUMENT) for s in self.source.sessions]
            case "help":
                return [
                    Completion(name, CompletionKind.COMMAND, desc)
                    for name, desc in self.source.commands.items()
                ]
            case "fileops" | "watch":
                return [Completion(v, CompletionKind.ARGUMENT) for v in ("on", "off")]
        return []

    def _paths(self, token: str) -> list[Completion]:
        parent, _, prefix = token.rpartition("/")
        base = self.source.root / parent if parent else self.source.root
        if token.startswith("/"):
            base = Path(parent or "/")
        try:
            entries = sorted(base.iterdir())
        except OSError:
            return []

        out = []
        for entry in entries:
            name = entry.name
            if name.startswith(".") and not prefix.startswith("."):
                continue
            is_dir = entry.is_dir()
            text = f"{parent}/{name}" if parent or token.startswith("/") else name
            if is_dir:
                text += "/"
            out.append(Completion(text, CompletionKind.DIRECTORY if is_dir else CompletionKind.FILE))
        return out
