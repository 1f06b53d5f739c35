from slab.editor.completion import Completer, Completion, CompletionKind, CompletionSource, rank
from slab.editor.state import (
    CompletionMenu,
    EditAction,
    EditorInvariantError,
    EditorState,
    display_width,
)
from slab.editor.terminal import TerminalEditor

__all__ = [
    "Completer",
    "Completion",
    "CompletionKind",
    "CompletionMenu",
    "CompletionSource",
    "EditAction",
    "EditorInvariantError",
    "EditorState",
    "TerminalEditor",
    "display_width",
    "rank",
]
