"""Remote input backend factory that selects platform-specific implementations."""

import sys
from typing import Optional

from .backends.base import _BaseInputBackend, _NullBackend, _session_kind
from .backends.dotool import _DotoolBackend
from .backends.native import _PyAutoGuiBackend
from .daemon import DotoolRunner
from ..logging_config import log


def _is_linux_platform() -> bool:
    return sys.platform.startswith("linux")


def _create_backend_for_session(kind: str, runner: Optional[DotoolRunner] = None) -> _BaseInputBackend:
    """Instantiate backend implementation that matches detected session kind."""
    if _is_linux_platform():
        return _DotoolBackend(runner)
    return _PyAutoGuiBackend()


def build_backend(runner: Optional[DotoolRunner] = None) -> _BaseInputBackend:
    """Build and configure the runtime input backend with safe fallbacks."""
    kind = _session_kind()
    backend = _create_backend_for_session(kind, runner)

    try:
        backend.configure()
    except Exception:
        log.exception("Input backend configure failed: %s", getattr(backend, "name", "unknown"))
        backend = _NullBackend()

    # X11 sessions without dotool can still be driven through pyautogui.
    if isinstance(backend, _DotoolBackend) and not backend.available and kind == "x11":
        fallback = _PyAutoGuiBackend()
        if fallback.available:
            fallback.configure()
            backend = fallback

    if not backend.available:
        log.warning("Remote input unavailable (backend=%s session=%s)", backend.name, kind)
        if not isinstance(backend, _DotoolBackend):
            backend = _NullBackend()
    log.info("Remote input backend: %s (session=%s)", backend.name, kind)
    return backend
