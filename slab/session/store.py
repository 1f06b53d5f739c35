import re
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from slab.context.models import Turn
from slab.logging import get_logger

_logger = get_logger(__name__)

LAST_SESSION_FILE = "_last"

_UNSAFE_CHARS = re.compile(r'[/\\:*?"<>|]')


def sanitize_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name.strip())


class SavedTurn(BaseModel):
    role: str
    content: str


class SavedSession(BaseModel):
    name: str
    model: str | None = None
    files: list[str] = Field(default_factory=list)
    turns: list[SavedTurn] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=datetime.now)

    def to_turns(self) -> list[Turn]:
        return [Turn(t.role, t.content) for t in self.turns]


class SessionStore:
    """Named conversations saved as JSON under `.slab/sessions/`."""

    def __init__(self, directory: Path):
        self.directory = directory

    def path_for(self, name: str) -> Path:
        return self.directory / f"{sanitize_name(name)}.json"

    def save(self, session: SavedSession) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(session.name)
        path.write_text(session.model_dump_json(indent=2))
        (self.directory / LAST_SESSION_FILE).write_text(session.name)
        _logger.info("Saved session %s to %s", session.name, path)
        return path

    def load(self, name: str) -> SavedSession:
        path = self.path_for(name)
        if not path.exists():
            raise FileNotFoundError(f"No saved session named {name!r}")
        try:
            return SavedSession.model_validate_json(path.read_text())
        except ValidationError as e:
            raise ValueError(f"Session file {path} is corrupt: {e}") from e

    def load_last(self) -> SavedSession:
        marker = self.directory / LAST_SESSION_FILE
        if not marker.exists():
            raise FileNotFoundError("No previous session found")
        return self.load(marker.read_text().strip())

    def names(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    def delete(self, name: str) -> bool:
        path = self.path_for(name)
        if not path.exists():
            return False
        path.unlink()
        return True


def export_markdown(session: SavedSession, path: Path) -> Path:
    lines = [f"# slab session: {session.name}", ""]
    if session.model:
        lines.append(f"- **Model:** {session.model}")
    lines.append(f"- **Exported:** {datetime.now():%Y-%m-%d %H:%M}")
    if session.files:
        lines.append("- **Files:** " + ", ".join(f"`{f}`" for f in session.files))
    lines.append("")

    for turn in session.turns:
        heading = "User" if turn.role == "user" else "Assistant" if turn.role == "assistant" else turn.role.title()
        lines.extend([f"## {heading}", "", turn.content.rstrip(), ""])

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines))
    return path
