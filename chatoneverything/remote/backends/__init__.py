"""Platform-specific remote input backend implementations."""

from .base import _BaseInputBackend, _NullBackend, _session_kind
from .dotool import _DotoolBackend
from .native import _PyAutoGuiBackend

__all__ = [
    "_BaseInputBackend",
    "_NullBackend",
    "_session_kind",
    "_DotoolBackend",
    "_PyAutoGuiBackend",
]
