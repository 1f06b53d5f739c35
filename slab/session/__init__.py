from slab.session.loop import Session, SessionUI, TurnResult
from slab.session.store import SavedSession, SessionStore, export_markdown

__all__ = [
    "SavedSession",
    "Session",
    "SessionStore",
    "SessionUI",
    "TurnResult",
    "export_markdown",
]
