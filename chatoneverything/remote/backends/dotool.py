"""Linux input through the dotool uinput tool (works on Wayland and X11)."""

import math
import time
from typing import Callable, Optional, Sequence

from ... import config
from ..daemon import DotoolRunner
from .base import _BaseInputBackend, _FUNCTION_KEYS


_DOTOOL_KEYS = {
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
    "Meta": "super",
    "AudioVolumeUp": "volumeup",
    "AudioVolumeDown": "volumedown",
    "AudioVolumeMute": "mute",
    "MediaPlayPause": "playpause",
    "MediaTrackNext": "nextsong",
    "MediaTrackPrevious": "previoussong",
    "MediaStop": "stopcd",
    **_FUNCTION_KEYS,
}

_BUTTONS = {"left": "left", "right": "right", "middle": "middle"}


def wheel_steps(dy: float, divisor: Optional[int] = None, cap: Optional[int] = None) -> int:
    """Convert a pointer wheel delta into signed discrete wheel steps."""
    divisor = int(divisor or config.SCROLL_DIVISOR)
    cap = int(cap or config.SCROLL_MAX_STEPS)
    magnitude = abs(float(dy))
    if magnitude == 0:
        return 0
    steps = min(int(math.ceil(magnitude / divisor)), cap)
    return steps if dy > 0 else -steps


def sanitize_text(text: str) -> str:
    """Drop characters that would terminate or corrupt a dotool command line."""
    return "".join(ch for ch in str(text or "") if ch not in "\r\n\0")


class _DotoolBackend(_BaseInputBackend):
    """Translate gestures to dotool command lines executed by `DotoolRunner`."""

    name = "dotool"
    KEY_NAMES = _DOTOOL_KEYS

    def __init__(
        self,
        runner: Optional[DotoolRunner] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runner = runner or DotoolRunner()
        self._sleep = sleep

    @property
    def available(self) -> bool:
        return bool(self.runner.available)

    def configure(self) -> None:
        if not self.runner.available:
            self.runner.detect()

    def close(self) -> None:
        self.runner.stop_daemon()

    @staticmethod
    def _button(button: str) -> str:
        return _BUTTONS.get(str(button or "left").lower(), "left")

    def move_rel(self, dx: int, dy: int) -> bool:
        return self.runner.execute(f"mousemove {int(dx)} {int(dy)}")

    def click(self, button: str = "left") -> bool:
        return self.runner.execute(f"click {self._button(button)}")

    def double_click(self, button: str = "left") -> bool:
        if not self.click(button):
            return False
        self._sleep(config.DOUBLE_CLICK_GAP_S)
        return self.click(button)

    def mouse_down(self, button: str = "left") -> bool:
        return self.runner.execute(f"buttondown {self._button(button)}")

    def mouse_up(self, button: str = "left") -> bool:
        return self.runner.execute(f"buttonup {self._button(button)}")

    def scroll(self, dx: float, dy: float) -> bool:
        # dotool only has a vertical wheel; REL_WHEEL is positive upwards.
        steps = wheel_steps(dy)
        if steps == 0:
            return True
        return self.runner.execute(f"wheel {-steps}")

    def write_text(self, text: str) -> bool:
        clean = sanitize_text(text)
        if not clean:
            return False
        return self.runner.execute(f"type {clean}")

    def key_combo(self, modifiers: Sequence[str], key: str) -> bool:
        chord = "+".join([*modifiers, key])
        return self.runner.execute(f"key {chord}")
