"""Shared base contracts and key-name translation for remote input backends."""

import os
import sys
from typing import Dict, Optional, Sequence


_FUNCTION_KEYS = {f"F{i}": f"f{i}" for i in range(1, 13)}


def _session_kind() -> str:
    """Detect the active desktop session kind."""
    if os.name == "nt":
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    xdg_type = (os.environ.get("XDG_SESSION_TYPE") or "").strip().lower()
    if xdg_type in ("wayland", "x11"):
        return xdg_type
    if os.environ.get("WAYLAND_DISPLAY"):
        return "wayland"
    if os.environ.get("DISPLAY"):
        return "x11"
    return "unknown"


class _BaseInputBackend:
    """Minimal contract consumed by the remote controller.

    Key names arriving here are already translated through `key_name`.
    """

    name = "base"
    available = False
    KEY_NAMES: Dict[str, str] = {}

    def configure(self) -> None:
        pass

    def close(self) -> None:
        pass

    def key_name(self, logical: str) -> Optional[str]:
        """Translate a browser key name to this backend's vocabulary; None when unknown."""
        key = str(logical or "")
        if key == " ":
            key = "Space"
        named = self.KEY_NAMES.get(key)
        if named:
            return named
        if len(key) == 1 and key.isascii() and key.isalnum():
            return key.lower()
        return None

    def move_rel(self, dx: int, dy: int) -> bool:
        return False

    def click(self, button: str = "left") -> bool:
        return False

    def double_click(self, button: str = "left") -> bool:
        return False

    def mouse_down(self, button: str = "left") -> bool:
        return False

    def mouse_up(self, button: str = "left") -> bool:
        return False

    def scroll(self, dx: float, dy: float) -> bool:
        """Scroll by wheel deltas; positive `dy` scrolls down."""
        return False

    def write_text(self, text: str) -> bool:
        return False

    def key_combo(self, modifiers: Sequence[str], key: str) -> bool:
        """Press modifiers in order, tap `key`, release in reverse."""
        return False


class _NullBackend(_BaseInputBackend):
    """Represent a fully unavailable backend."""

    name = "null"
