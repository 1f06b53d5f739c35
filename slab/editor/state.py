from dataclasses import dataclass
from enum import StrEnum

from prompt_toolkit.key_binding.key_processor import KeyPress
from prompt_toolkit.keys import Keys
from prompt_toolkit.utils import get_cwidth

from slab.editor.completion import Completer, Completion

# Control characters are drawn as single-cell glyphs on the prompt line
DISPLAY_SUBSTITUTES = {"\n": "↵", "\t": "⇥"}


def display_text(text: str) -> str:
    return "".join(DISPLAY_SUBSTITUTES.get(ch, ch) for ch in text)


def display_width(text: str) -> int:
    return get_cwidth(display_text(text))


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


class EditorInvariantError(RuntimeError):
    pass


class EditAction(StrEnum):
    NONE = "none"
    SUBMIT = "submit"
    INTERRUPT = "interrupt"
    EXIT = "exit"


@dataclass
class CompletionMenu:
    token_start: int
    candidates: list[Completion]
    selected: int = 0

    def move(self, delta: int) -> None:
        self.selected = (self.selected + delta) % len(self.candidates)

    @property
    def current(self) -> Completion:
        return self.candidates[self.selected]


class EditorState:
    """Single-line prompt editor as a pure state machine.

    `cursor` indexes characters of `buffer`; `screen_cursor` counts terminal
    cells from the start of the input. Every mutation derives the new screen
    offset from the offset captured before the buffer changed, never from
    the buffer's new length.
    """

    def __init__(
        self,
        completer: Completer | None = None,
        history: list[str] | None = None,
        ghost_text: bool = True,
    ):
        self.completer = completer
        self.history: list[str] = list(history or [])
        self.ghost_text = ghost_text
        self.buffer = ""
        self.cursor = 0
        self.screen_cursor = 0
        self.suggestion: str | None = None
        self.menu: CompletionMenu | None = None
        self._history_index: int | None = None
        self._draft = ""

    # --- invariants ---

    def _set_screen(self, value: int) -> None:
        if value < 0:
            raise EditorInvariantError(f"screen cursor underflow ({value})")
        self.screen_cursor = value

    def is_consistent(self) -> bool:
        return self.screen_cursor == display_width(self.buffer[: self.cursor])

    # --- buffer primitives ---

    def _replace_range(self, start: int, text: str) -> None:
        """Atomically replace buffer[start:cursor] with `text`."""
        if not 0 <= start <= self.cursor:
            raise EditorInvariantError(f"replace start {start} outside 0..{self.cursor}")
        anchor = self.screen_cursor - display_width(self.buffer[start : self.cursor])
        self.buffer = self.buffer[:start] + text + self.buffer[self.cursor :]
        self.cursor = start + len(text)
        self._set_screen(anchor + display_width(text))

    def _insert(self, text: str) -> None:
        self._replace_range(self.cursor, text)

    def set_buffer(self, text: str) -> None:
        self.buffer = text
        self.cursor = len(text)
        self._set_screen(display_width(text))
        self.menu = None
        self._refresh_suggestion()

    # --- edits ---

    def insert_text(self, text: str) -> None:
        self.menu = None
        self._insert(normalize_newlines(text))
        self._refresh_suggestion()

    def paste(self, data: str) -> None:
        """Bracketed paste: one insertion and one suggestion refresh."""
        self.menu = None
        self._insert(normalize_newlines(data))
        self._refresh_suggestion()

    def backspace(self) -> None:
        if self.cursor == 0:
            return
        self.cursor -= 1
        self._set_screen(self.screen_cursor - display_width(self.buffer[self.cursor]))
        self.buffer = self.buffer[: self.cursor] + self.buffer[self.cursor + 1 :]
        self._refresh_suggestion()

    def delete(self) -> None:
        if self.cursor >= len(self.buffer):
            return
        self.buffer = self.buffer[: self.cursor] + self.buffer[self.cursor + 1 :]
        self._refresh_suggestion()

    def move_left(self) -> None:
        if self.cursor == 0:
            return
        self._set_screen(self.screen_cursor - display_width(self.buffer[self.cursor - 1]))
        self.cursor -= 1
        self.suggestion = None

    def move_right(self) -> None:
        if self.cursor >= len(self.buffer):
            self.accept_suggestion()
            return
        self._set_screen(self.screen_cursor + display_width(self.buffer[self.cursor]))
        self.cursor += 1
        self._refresh_suggestion()

    def move_home(self) -> None:
        self.cursor = 0
        self._set_screen(0)
        self.suggestion = None

    def move_end(self) -> None:
        self._set_screen(self.screen_cursor + display_width(self.buffer[self.cursor :]))
        self.cursor = len(self.buffer)
        self._refresh_suggestion()

    def kill_to_start(self) -> None:
        self._replace_range(0, "")
        self._refresh_suggestion()

    def kill_to_end(self) -> None:
        self.buffer = self.buffer[: self.cursor]
        self._refresh_suggestion()

    def kill_word(self) -> None:
        start = self.cursor
        while start > 0 and self.buffer[start - 1].isspace():
            start -= 1
        while start > 0 and not self.buffer[start - 1].isspace():
            start -= 1
        self._replace_range(start, "")
        self._refresh_suggestion()

    # --- history ---

    def history_prev(self) -> None:
        if not self.history:
            return
        if self._history_index is None:
            self._draft = self.buffer
            self._history_index = len(self.history) - 1
        elif self._history_index > 0:
            self._history_index -= 1
        else:
            return
        self.set_buffer(self.history[self._history_index])

    def history_next(self) -> None:
        if self._history_index is None:
            return
        if self._history_index < len(self.history) - 1:
            self._history_index += 1
            self.set_buffer(self.history[self._history_index])
        else:
            self._history_index = None
            self.set_buffer(self._draft)

    # --- completion ---

    def _refresh_suggestion(self) -> None:
        self.suggestion = None
        if not self.ghost_text or self.completer is None or not self.buffer:
            return
        if self.cursor != len(self.buffer):
            return
        token_start, candidates = self.completer.complete(self.buffer)
        token = self.buffer[token_start:]
        for candidate in candidates:
            if candidate.text.startswith(token) and len(candidate.text) > len(token):
                self.suggestion = candidate.text[len(token) :]
                return

    def accept_suggestion(self) -> bool:
        if not self.suggestion or self.cursor != len(self.buffer):
            return False
        suffix, self.suggestion = self.suggestion, None
        self._insert(suffix)
        self._refresh_suggestion()
        return True

    def tab(self) -> None:
        if self.menu is not None:
            self.menu.move(1)
            return
        if self.completer is None:
            return
        token_start, candidates = self.completer.complete(self.buffer[: self.cursor])
        if not candidates:
            return
        if len(candidates) == 1:
            self._replace_range(token_start, candidates[0].text)
            self._refresh_suggestion()
            return
        self.suggestion = None
        self.menu = CompletionMenu(token_start=token_start, candidates=candidates)

    def menu_move(self, delta: int) -> None:
        if self.menu is not None:
            self.menu.move(delta)

    def menu_commit(self) -> None:
        if self.menu is None:
            return
        menu, self.menu = self.menu, None
        self._replace_range(menu.token_start, menu.current.text)
        self._refresh_suggestion()

    def menu_dismiss(self) -> None:
        self.menu = None

    # --- line lifecycle ---

    def interrupt(self) -> None:
        """Ctrl+C: drop the current input without submitting."""
        self.buffer = ""
        self.cursor = 0
        self.screen_cursor = 0
        self.suggestion = None
        self.menu = None
        self._history_index = None
        self._draft = ""

    def submit(self) -> str:
        text = self.buffer
        if text.strip() and (not self.history or self.history[-1] != text):
            self.history.append(text)
        self.interrupt()
        return text

    # --- key dispatch ---

    def feed(self, key_press: KeyPress) -> EditAction:
        """Apply one prompt_toolkit key press; the next is read only after this returns."""
        key, data = key_press.key, key_press.data

        if self.menu is not None:
            match key:
                case Keys.Up | Keys.BackTab:
                    self.menu_move(-1)
                    return EditAction.NONE
                case Keys.Down | Keys.Tab:
                    self.menu_move(1)
                    return EditAction.NONE
                case Keys.Enter:
                    self.menu_commit()
                    return EditAction.NONE
                case Keys.Escape:
                    self.menu_dismiss()
                    return EditAction.NONE
            self.menu_dismiss()

        if not isinstance(key, Keys):
            self.insert_text(data or key)
            return EditAction.NONE

        match key:
            case Keys.BracketedPaste:
                self.paste(data)
            case Keys.Enter:
                return EditAction.SUBMIT
            case Keys.ControlJ:
                self.insert_text("\n")
            case Keys.ControlC:
                self.interrupt()
                return EditAction.INTERRUPT
            case Keys.ControlD:
                if not self.buffer:
                    return EditAction.EXIT
                self.delete()
            case Keys.Tab:
                self.tab()
            case Keys.Backspace:
                self.backspace()
            case Keys.Delete:
                self.delete()
            case Keys.Left | Keys.ControlB:
                self.move_left()
            case Keys.Right | Keys.ControlF:
                self.move_right()
            case Keys.Home | Keys.ControlA:
                self.move_home()
            case Keys.End | Keys.ControlE:
                self.move_end()
            case Keys.Up | Keys.ControlP:
                self.history_prev()
            case Keys.Down | Keys.ControlN:
                self.history_next()
            case Keys.ControlU:
                self.kill_to_start()
            case Keys.ControlK:
                self.kill_to_end()
            case Keys.ControlW:
                self.kill_word()
        return EditAction.NONE
