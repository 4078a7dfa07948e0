"""Remote desktop input: backends, dotool process management and the gesture controller."""

from .backend import build_backend
from .controller import RemoteController
from .daemon import DaemonUnreachable, DotoolRunner, ExecMode, ExecModeState

__all__ = [
    "build_backend",
    "RemoteController",
    "DaemonUnreachable",
    "DotoolRunner",
    "ExecMode",
    "ExecModeState",
]
