from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path


@dataclass
class FileRecord:
    path: Path
    content: str
    read_at: datetime = field(default_factory=datetime.now)

    def display(self, root: Path) -> str:
        try:
            return self.path.relative_to(root).as_posix()
        except ValueError:
            return str(self.path)

    @property
    def language(self) -> str:
        return self.path.suffix.lstrip(".") or "txt"


@dataclass(frozen=True)
class Turn:
    role: str
    content: str

    def as_message(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Prompt:
    messages: list[dict]
    estimate: int
    user_turn: str
    pruned: int = 0


@dataclass
class RefreshReport:
    refreshed: list[Path] = field(default_factory=list)
    failed: list[Path] = field(default_factory=list)


@dataclass(frozen=True)
class ContextSummary:
    files: int
    turns: int
    tokens_used: int
    token_budget: int
    rules_applied: int
    has_system_prompt: bool
    watch: bool

    @property
    def tokens_remaining(self) -> int:
        return max(self.token_budget - self.tokens_used, 0)

    @property
    def usage_percent(self) -> float:
        if not self.token_budget:
            return 0.0
        return self.tokens_used / self.token_budget * 100
