"""Native input through `pyautogui` for Windows, macOS and X11 fallbacks."""

import sys
from typing import Sequence

from .base import _BaseInputBackend, _FUNCTION_KEYS
from ...logging_config import log


_PYAUTOGUI_KEYS = {
    "Enter": "enter",
    "Backspace": "backspace",
    "Tab": "tab",
    "Escape": "esc",
    "Space": "space",
    "Delete": "delete",
    "Insert": "insert",
    "ArrowUp": "up",
    "ArrowDown": "down",
    "ArrowLeft": "left",
    "ArrowRight": "right",
    "Home": "home",
    "End": "end",
    "PageUp": "pageup",
    "PageDown": "pagedown",
    "Control": "ctrl",
    "Alt": "alt",
    "Shift": "shift",
    "Meta": "command" if sys.platform == "darwin" else "win",
    "AudioVolumeUp": "volumeup",
    "AudioVolumeDown": "volumedown",
    "AudioVolumeMute": "volumemute",
    "MediaPlayPause": "playpause",
    "MediaTrackNext": "nexttrack",
    "MediaTrackPrevious": "prevtrack",
    "MediaStop": "stop",
    **_FUNCTION_KEYS,
}

_BUTTONS = ("left", "right", "middle")


class _PyAutoGuiBackend(_BaseInputBackend):
    """Implement input with `pyautogui` for desktop sessions with GUI access."""

    name = "pyautogui"
    KEY_NAMES = _PYAUTOGUI_KEYS

    def __init__(self) -> None:
        self._pg = None
        self._loaded = False

    def _ensure(self) -> bool:
        """Lazy-load `pyautogui` once and report backend readiness."""
        if self._loaded:
            return self._pg is not None
        self._loaded = True
        try:
            import pyautogui  # noqa: PLC0415

            self._pg = pyautogui
            return True
        except Exception as error:
            log.warning("PyAutoGUI backend init failed: %s", error)
            self._pg = None
            return False

    @property
    def available(self) -> bool:
        return self._ensure()

    def configure(self) -> None:
        """Disable failsafe/pause to keep remote input responsive."""
        if self._ensure():
            self._pg.FAILSAFE = False
            self._pg.PAUSE = 0

    @staticmethod
    def _button(button: str) -> str:
        b = str(button or "left").lower()
        return b if b in _BUTTONS else "left"

    def move_rel(self, dx: int, dy: int) -> bool:
        if not self._ensure():
            return False
        self._pg.moveRel(int(dx), int(dy), _pause=False)
        return True

    def click(self, button: str = "left") -> bool:
        if not self._ensure():
            return False
        self._pg.click(button=self._button(button), _pause=False)
        return True

    def double_click(self, button: str = "left") -> bool:
        if not self._ensure():
            return False
        self._pg.click(button=self._button(button), clicks=2, _pause=False)
        return True

    def mouse_down(self, button: str = "left") -> bool:
        if not self._ensure():
            return False
        self._pg.mouseDown(button=self._button(button), _pause=False)
        return True

    def mouse_up(self, button: str = "left") -> bool:
        if not self._ensure():
            return False
        self._pg.mouseUp(button=self._button(button), _pause=False)
        return True

    def scroll(self, dx: float, dy: float) -> bool:
        if not self._ensure():
            return False
        # pyautogui scrolls up for positive amounts.
        if int(round(dy)):
            self._pg.scroll(-int(round(dy)), _pause=False)
        if int(round(dx)):
            self._pg.hscroll(int(round(dx)), _pause=False)
        return True

    def write_text(self, text: str) -> bool:
        if not self._ensure() or not text:
            return False
        self._pg.write(str(text), interval=0, _pause=False)
        return True

    def key_combo(self, modifiers: Sequence[str], key: str) -> bool:
        if not self._ensure():
            return False
        if modifiers:
            self._pg.hotkey(*modifiers, key, _pause=False)
        else:
            self._pg.press(key, _pause=False)
        return True
