"""Remote input controller: rate limiting, drag state and gesture translation."""

from __future__ import annotations

import math
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .. import config
from ..logging_config import log
from .backends.base import _BaseInputBackend, _NullBackend


MAX_TYPE_CHARS = 1000

_BUTTONS = ("left", "right", "middle")

# Logical key chords in browser key names, translated per backend.
VOLUME_KEYS: Dict[str, Tuple[str, ...]] = {
    "up": ("AudioVolumeUp",),
    "down": ("AudioVolumeDown",),
    "mute": ("AudioVolumeMute",),
}

MEDIA_KEYS: Dict[str, Tuple[str, ...]] = {
    "play": ("Space",),
    "pause": ("Space",),
    "stop": ("Space",),
    "next": ("ArrowRight",),
    "prev": ("ArrowLeft",),
}

PLAYER_KEYS: Dict[str, Tuple[str, ...]] = {
    "play": ("Space",),
    "stop": ("s",),
    "fullscreen": ("f",),
    "volume-up": ("Control", "ArrowUp"),
    "volume-down": ("Control", "ArrowDown"),
    "mute": ("m",),
    "playlist-next": ("n",),
    "playlist-prev": ("p",),
    "shuffle": ("r",),
    "loop": ("l",),
}

DEFAULT_SEEK_S = 5


def seek_chord(seconds: Any) -> Tuple[str, ...]:
    """Pick the player jump size closest to the requested seek offset."""
    try:
        value = int(float(seconds))
    except (TypeError, ValueError):
        value = 0
    value = value or DEFAULT_SEEK_S
    arrow = "ArrowRight" if value > 0 else "ArrowLeft"
    magnitude = abs(value)
    if magnitude >= 60:
        return ("Control", "Shift", arrow)
    if magnitude >= 10:
        return ("Control", arrow)
    return ("Shift", arrow)


def _finite(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def sanitize_typed_text(text: Any) -> str:
    """Strip line breaks and NUL so typed text cannot inject extra tool commands."""
    clean = "".join(ch for ch in str(text or "") if ch not in "\r\n\0")
    return clean[:MAX_TYPE_CHARS]


class RemoteController:
    """Translate remote-* gestures into backend calls.

    Every gesture is guarded: failures are logged and the gesture is dropped.
    """

    def __init__(
        self,
        backend: Optional[_BaseInputBackend] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        move_interval_s: Optional[float] = None,
    ) -> None:
        self._backend = backend or _NullBackend()
        self._clock = clock
        self.move_interval_s = float(
            move_interval_s if move_interval_s is not None else config.MOUSE_MOVE_INTERVAL_S
        )
        self._lock = threading.Lock()
        self._armed = False
        self._dragging = False
        self._last_move: Optional[float] = None
        self._handlers: Dict[str, Callable[[Dict[str, Any]], bool]] = {
            "remote-mouse-move": lambda m: self.move(m.get("deltaX"), m.get("deltaY")),
            "remote-mouse-click": lambda m: self.click(m.get("button")),
            "remote-mouse-dblclick": lambda m: self.double_click(m.get("button")),
            "remote-mouse-down": lambda m: self.mouse_down(m.get("button")),
            "remote-mouse-up": lambda m: self.mouse_up(m.get("button")),
            "remote-scroll": lambda m: self.scroll(m.get("deltaX"), m.get("deltaY")),
            "remote-keyboard-type": lambda m: self.type_text(m.get("text")),
            "remote-keyboard-key": lambda m: self.key(m.get("key"), m.get("modifiers")),
            "remote-volume": lambda m: self.volume(m.get("action")),
            "remote-media": lambda m: self.media(m.get("action")),
            "remote-vlc": lambda m: self.player(m.get("action"), m.get("value")),
        }

    @property
    def backend(self) -> _BaseInputBackend:
        return self._backend

    def set_backend(self, backend: _BaseInputBackend) -> None:
        with self._lock:
            self._backend = backend

    @property
    def available(self) -> bool:
        return bool(getattr(self._backend, "available", False))

    @property
    def armed(self) -> bool:
        with self._lock:
            return self._armed

    @property
    def is_dragging(self) -> bool:
        with self._lock:
            return self._dragging

    def arm(self) -> None:
        with self._lock:
            self._armed = True
            self._last_move = None
        log.info("[remote] controller armed (backend=%s)", self._backend.name)

    def disarm(self) -> None:
        with self._lock:
            was_armed = self._armed
            self._armed = False
            self._dragging = False
        if was_armed:
            log.info("[remote] controller disarmed")

    def shutdown(self) -> None:
        self.disarm()
        try:
            self._backend.close()
        except Exception:
            log.exception("[remote] backend close failed")

    def dispatch(self, msg: Dict[str, Any]) -> bool:
        """Run one remote-* gesture message; False when dropped."""
        if not self.armed:
            return False
        msg_type = str(msg.get("type") or "")
        handler = self._handlers.get(msg_type)
        if handler is None:
            return False
        try:
            return bool(handler(msg))
        except Exception:
            log.exception("[remote] %s failed", msg_type)
            return False

    # Pointer

    def move(self, dx: Any, dy: Any) -> bool:
        """Relative move gated to one command per move interval; extra moves are dropped."""
        x, y = _finite(dx), _finite(dy)
        if x is None or y is None:
            return False
        now = float(self._clock())
        with self._lock:
            if self._last_move is not None and (now - self._last_move) < self.move_interval_s:
                return False
            self._last_move = now
        ix, iy = int(round(x)), int(round(y))
        if ix == 0 and iy == 0:
            return False
        return self._backend.move_rel(ix, iy)

    @staticmethod
    def _button(button: Any) -> Optional[str]:
        b = str(button or "left").strip().lower()
        if b not in _BUTTONS:
            log.info("[remote] dropping unknown button %r", button)
            return None
        return b

    def click(self, button: Any = "left") -> bool:
        b = self._button(button)
        return bool(b) and self._backend.click(b)

    def double_click(self, button: Any = "left") -> bool:
        b = self._button(button)
        return bool(b) and self._backend.double_click(b)

    def mouse_down(self, button: Any = "left") -> bool:
        b = self._button(button)
        if not b:
            return False
        ok = self._backend.mouse_down(b)
        if ok:
            with self._lock:
                self._dragging = True
        return ok

    def mouse_up(self, button: Any = "left") -> bool:
        b = self._button(button)
        if not b:
            return False
        with self._lock:
            self._dragging = False
        return self._backend.mouse_up(b)

    def scroll(self, dx: Any, dy: Any) -> bool:
        x = _finite(dx) or 0.0
        y = _finite(dy) or 0.0
        if x == 0 and y == 0:
            return False
        return self._backend.scroll(x, y)

    # Keyboard

    def type_text(self, text: Any) -> bool:
        clean = sanitize_typed_text(text)
        if not clean:
            return False
        return self._backend.write_text(clean)

    def _translate(self, keys: Sequence[Any]) -> Optional[List[str]]:
        out: List[str] = []
        for logical in keys:
            name = self._backend.key_name(str(logical or ""))
            if not name:
                log.info("[remote] dropping unknown key %r", logical)
                return None
            out.append(name)
        return out

    def chord(self, keys: Sequence[Any]) -> bool:
        """Send a chord given in browser key names; the last entry is the tapped key."""
        if not keys:
            return False
        names = self._translate(keys)
        if not names:
            return False
        *mods, key = names
        ordered: List[str] = []
        for mod in mods:
            if mod not in ordered:
                ordered.append(mod)
        return self._backend.key_combo(ordered, key)

    def key(self, key: Any, modifiers: Any = None) -> bool:
        mods = modifiers if isinstance(modifiers, (list, tuple)) else []
        return self.chord([*mods, key])

    def volume(self, action: Any) -> bool:
        keys = VOLUME_KEYS.get(str(action or ""))
        if not keys:
            log.info("[remote] dropping unknown volume action %r", action)
            return False
        return self.chord(keys)

    def media(self, action: Any) -> bool:
        keys = MEDIA_KEYS.get(str(action or ""))
        if not keys:
            log.info("[remote] dropping unknown media action %r", action)
            return False
        return self.chord(keys)

    def player(self, action: Any, value: Any = None) -> bool:
        name = str(action or "")
        if name == "seek":
            return self.chord(seek_chord(value))
        keys = PLAYER_KEYS.get(name)
        if not keys:
            log.info("[remote] dropping unknown player action %r", action)
            return False
        return self.chord(keys)
