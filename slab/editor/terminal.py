import asyncio

from prompt_toolkit.input import Input, create_input
from prompt_toolkit.key_binding.key_processor import KeyPress
from prompt_toolkit.output import Output, create_output

from slab.editor.state import EditAction, EditorState, display_text, display_width
from slab.logging import get_logger

_logger = get_logger(__name__)

# A lone escape byte may start a sequence; wait this long before treating it as Escape
ESCAPE_FLUSH_DELAY = 0.05

_DIM = "\x1b[2m"
_REVERSE = "\x1b[7m"
_RESET = "\x1b[0m"


class TerminalEditor:
    """Drives an `EditorState` from raw terminal key presses.

    Keys are read through prompt_toolkit's input parser so escape sequences,
    bracketed paste and control keys arrive as `KeyPress` values. Each key is
    fully applied and rendered before the next one is taken from the queue.
    """

    def __init__(self, state: EditorState, input: Input | None = None, output: Output | None = None):
        self.state = state
        self._input = input or create_input()
        self._output = output or create_output()
        self._menu_lines = 0

    async def read_line(self, prompt: str = "> ") -> str | None:
        """Read one submitted line. Returns None when the user ends the session."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[KeyPress] = asyncio.Queue()

        def flush() -> None:
            for key_press in self._input.flush_keys():
                queue.put_nowait(key_press)

        def on_ready() -> None:
            for key_press in self._input.read_keys():
                queue.put_nowait(key_press)
            loop.call_later(ESCAPE_FLUSH_DELAY, flush)

        self._output.enable_bracketed_paste()
        try:
            with self._input.raw_mode(), self._input.attach(on_ready):
                self._render(prompt)
                while True:
                    key_press = await queue.get()
                    action = self.state.feed(key_press)
                    match action:
                        case EditAction.SUBMIT:
                            self._finish(prompt)
                            return self.state.submit()
                        case EditAction.EXIT:
                            self._finish(prompt)
                            return None
                        case EditAction.INTERRUPT:
                            self._write("^C")
                            self._finish(prompt, clear_line=False)
                    self._render(prompt)
        finally:
            self._output.disable_bracketed_paste()
            self._output.flush()

    def _write(self, text: str) -> None:
        self._output.write_raw(text)

    def _clear(self) -> None:
        self._write("\r")
        self._output.erase_down()
        self._menu_lines = 0

    def _render(self, prompt: str) -> None:
        state = self.state
        self._clear()
        self._write(prompt + display_text(state.buffer))
        if state.suggestion:
            self._write(_DIM + display_text(state.suggestion) + _RESET)

        if state.menu is not None:
            for i, completion in enumerate(state.menu.candidates):
                line = completion.text
                if completion.description:
                    line += f"  {completion.description}"
                style = _REVERSE if i == state.menu.selected else ""
                self._write("\r\n  " + style + line + (_RESET if style else ""))
            self._menu_lines = len(state.menu.candidates)
            self._output.cursor_up(self._menu_lines)

        self._write("\r")
        column = display_width(prompt) + state.screen_cursor
        if column:
            self._output.cursor_forward(column)
        self._output.flush()

    def _finish(self, prompt: str, clear_line: bool = True) -> None:
        """Redraw the committed line without ghost text or menu and move below it."""
        if clear_line:
            self._clear()
            self._write(prompt + display_text(self.state.buffer))
        else:
            self._output.erase_down()
        self._write("\r\n")
        self._output.flush()
