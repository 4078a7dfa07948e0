"""Desktop overlay bridge.

The overlay window itself lives outside this process; this bridge keeps its
interaction state (active/passive, remote passthrough) and fans mode changes
out to listeners such as the chat hub.
"""

import threading
from typing import Any, Callable, Dict, List, Optional

from .logging_config import log


MODE_ACTIVE = "active"
MODE_PASSIVE = "passive"

ModeListener = Callable[[str], None]


class OverlayBridge:
    """Headless overlay state; a GUI front-end can subclass and override the hooks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._passive = False
        self._passthrough = False
        self._passthrough_before_remote: Optional[bool] = None
        self._listeners: List[ModeListener] = []
        self.last_settings: Dict[str, Any] = {}

    @property
    def mode(self) -> str:
        with self._lock:
            return MODE_PASSIVE if self._passive else MODE_ACTIVE

    @property
    def passthrough(self) -> bool:
        """Whether the window currently ignores pointer input."""
        with self._lock:
            return self._passthrough

    def add_mode_listener(self, listener: ModeListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_mode_listener(self, listener: ModeListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, mode: str) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(mode)
            except Exception:
                log.exception("Overlay mode listener failed")

    def toggle_mode(self) -> str:
        """Flip between active and passive and notify listeners."""
        with self._lock:
            self._passive = not self._passive
            if self._passthrough_before_remote is None:
                self._passthrough = self._passive
            else:
                self._passthrough_before_remote = self._passive
            mode = MODE_PASSIVE if self._passive else MODE_ACTIVE
        log.info("Overlay mode: %s", mode)
        self._notify(mode)
        return mode

    def enter_passive(self) -> str:
        if self.mode == MODE_ACTIVE:
            return self.toggle_mode()
        return MODE_PASSIVE

    def set_remote_control_mode(self, active: bool) -> None:
        """Force input passthrough while remote control runs, then restore the prior state."""
        with self._lock:
            if active:
                if self._passthrough_before_remote is None:
                    self._passthrough_before_remote = self._passthrough
                self._passthrough = True
            else:
                if self._passthrough_before_remote is not None:
                    self._passthrough = self._passthrough_before_remote
                self._passthrough_before_remote = None
            passthrough = self._passthrough
        log.debug("Overlay remote-control passthrough=%s", passthrough)

    def show_message(self, message: Dict[str, Any]) -> None:
        log.debug("Overlay message id=%s", message.get("id"))

    def delete_message(self, msg_id: int) -> None:
        log.debug("Overlay delete id=%s", msg_id)

    def update_settings(self, settings: Dict[str, Any]) -> None:
        self.last_settings = dict(settings)
