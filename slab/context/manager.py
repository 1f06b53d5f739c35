import os
from datetime import datetime
from pathlib import Path

from slab.constants import BINARY_EXTENSIONS, IGNORED_DIRS
from slab.context.models import ContextSummary, FileRecord, Prompt, RefreshReport, Turn
from slab.context.references import ReferenceResolver, fence_for
from slab.context.rules import Rule, RuleSet
from slab.context.tokens import count_tokens, estimate_tokens
from slab.errors import OverBudgetError
from slab.logging import get_logger

_logger = get_logger(__name__)


def is_likely_binary(path: Path) -> bool:
    return path.suffix.lstrip(".").lower() in BINARY_EXTENSIONS


def _read_text(path: Path) -> str:
    try:
        return path.read_text()
    except UnicodeDecodeError as e:
        raise ValueError(f"Not a text file: {path}") from e


class ContextManager:
    """Authoritative prompt state: system prompt, rules, files and history.

    Files are keyed by resolved absolute path. Rendering keeps the system
    prompt, rules and files intact and prunes history oldest-first to fit
    the token budget.
    """

    def __init__(
        self,
        root: Path,
        token_budget: int,
        system_prompt: str = "",
        rules: RuleSet | None = None,
    ):
        self.root = root.resolve()
        self.token_budget = token_budget
        self.system_prompt = system_prompt
        self.rules = rules or RuleSet()
        self.files: dict[Path, FileRecord] = {}
        self.history: list[Turn] = []
        self.watch = False
        self.estimate = 0

    # --- files ---

    def resolve(self, path: str | Path) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = self.root / p
        return p.resolve()

    def add_file(self, path: str | Path, content: str | None = None) -> FileRecord:
        resolved = self.resolve(path)
        if content is None:
            if not resolved.exists():
                raise FileNotFoundError(f"File not found: {path}")
            if not resolved.is_file():
                raise ValueError(f"Not a file: {path}")
            content = _read_text(resolved)
        record = FileRecord(path=resolved, content=content)
        self.files[resolved] = record
        return record

    def add_directory(self, path: str | Path) -> tuple[list[FileRecord], list[str]]:
        base = self.resolve(path)
        if not base.exists():
            raise FileNotFoundError(f"Directory not found: {path}")
        if not base.is_dir():
            raise ValueError(f"Not a directory: {path}")

        added: list[FileRecord] = []
        skipped: list[str] = []
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith(".") and d not in IGNORED_DIRS)
            for name in sorted(filenames):
                if name.startswith("."):
                    continue
                file_path = Path(dirpath) / name
                display = file_path.relative_to(self.root).as_posix() if file_path.is_relative_to(self.root) else str(file_path)
                if is_likely_binary(file_path):
                    skipped.append(f"{display} (binary)")
                    continue
                try:
                    added.append(self.add_file(file_path))
                except (OSError, ValueError):
                    skipped.append(f"{display} (unreadable)")
        return added, skipped

    def remove_file(self, path: str | Path) -> bool:
        resolved = self.resolve(path)
        if resolved not in self.files:
            _logger.info("remove_file: %s is not in context", path)
            return False
        del self.files[resolved]
        return True

    def has_file(self, path: str | Path) -> bool:
        return self.resolve(path) in self.files

    def file_paths(self) -> list[Path]:
        return list(self.files)

    def display_paths(self) -> list[str]:
        return [r.display(self.root) for r in self.files.values()]

    def refresh_from_disk(self) -> RefreshReport:
        report = RefreshReport()
        for path, record in self.files.items():
            try:
                content = _read_text(path)
            except (OSError, ValueError) as e:
                # keep last-known content
                _logger.warning("Could not refresh %s, keeping last-known content: %s", path, e)
                report.failed.append(path)
                continue
            if content != record.content:
                record.content = content
                report.refreshed.append(path)
            record.read_at = datetime.now()
        return report

    # --- history ---

    def add_turn(self, role: str, content: str) -> None:
        self.history.append(Turn(role, content))

    def clear_history(self) -> None:
        self.history.clear()

    def replace_last_user_turn(self, content: str) -> bool:
        """Swap the newest user turn's text, e.g. to shorten a rendered template."""
        for i in range(len(self.history) - 1, -1, -1):
            if self.history[i].role == "user":
                self.history[i] = Turn("user", content)
                return True
        return False

    # --- rendering ---

    def applicable_rules(self) -> list[Rule]:
        return self.rules.applicable(self.file_paths(), self.root)

    def build_system_content(self) -> str:
        parts = []
        if self.system_prompt:
            parts.append(self.system_prompt)

        rules = self.applicable_rules()
        if rules:
            parts.append("## Rules\n\n" + "\n\n".join(r.render() for r in rules))

        if self.files:
            sections = ["## Files in Context\n"]
            for record in self.files.values():
                fence = fence_for(record.content)
                sections.append(f"### {record.display(self.root)}\n{fence}{record.language}\n{record.content}\n{fence}\n")
            parts.append("\n".join(sections))

        return "\n\n".join(parts)

    def expand_references(self, text: str) -> str:
        return ReferenceResolver(self.files, self.root).expand(text)

    def build_prompt(self, user_turn: str) -> Prompt:
        """Render the full message list for one model call.

        `@name` references in `user_turn` are expanded first. History is
        pruned oldest-first until the estimate fits the budget; the pruning
        is kept only when the prompt fits. Raises OverBudgetError otherwise.
        """
        expanded = self.expand_references(user_turn)
        system = self.build_system_content()
        head = [{"role": "system", "content": system}] if system else []
        current = {"role": "user", "content": expanded}

        history = list(self.history)
        pruned = 0
        while True:
            messages = head + [t.as_message() for t in history] + [current]
            estimate = count_tokens(messages)
            if estimate <= self.token_budget:
                break
            if not history:
                raise OverBudgetError(estimate, self.token_budget)
            history.pop(0)
            pruned += 1

        if pruned:
            _logger.info("Pruned %d history turn(s) to fit %d tokens", pruned, self.token_budget)
            self.history = history
        self.estimate = estimate
        return Prompt(messages=messages, estimate=estimate, user_turn=expanded, pruned=pruned)

    def token_count(self) -> int:
        system = self.build_system_content()
        return estimate_tokens(system) + sum(estimate_tokens(t.content) for t in self.history)

    def summary(self) -> ContextSummary:
        return ContextSummary(
            files=len(self.files),
            turns=len(self.history),
            tokens_used=self.token_count(),
            token_budget=self.token_budget,
            rules_applied=len(self.applicable_rules()),
            has_system_prompt=bool(self.system_prompt),
            watch=self.watch,
        )
