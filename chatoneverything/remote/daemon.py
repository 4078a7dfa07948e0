"""dotool process management: daemon lifecycle with a one-way fallback to direct mode."""

from __future__ import annotations

import enum
import os
import shutil
import subprocess
import threading
from typing import Callable, List, Optional

from .. import config
from ..logging_config import log


class ExecMode(str, enum.Enum):
    UNKNOWN = "unknown"
    DAEMON = "daemon"
    DIRECT = "direct"


class DaemonUnreachable(RuntimeError):
    """No dotoold instance answered the client."""


class ToolExecError(RuntimeError):
    """The input tool ran but reported a failure."""


class ExecModeState:
    """Execution mode state machine.

    UNKNOWN -> DAEMON when the daemon starts, UNKNOWN -> DIRECT when it cannot,
    DAEMON -> DIRECT when the daemon becomes unreachable. DIRECT is terminal.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._mode = ExecMode.UNKNOWN

    @property
    def mode(self) -> ExecMode:
        with self._lock:
            return self._mode

    def daemon_started(self) -> bool:
        with self._lock:
            if self._mode is ExecMode.UNKNOWN:
                self._mode = ExecMode.DAEMON
                return True
            return False

    def daemon_failed(self) -> bool:
        with self._lock:
            if self._mode is ExecMode.UNKNOWN:
                self._mode = ExecMode.DIRECT
                return True
            return False

    def daemon_unreachable(self) -> bool:
        with self._lock:
            if self._mode is ExecMode.DAEMON:
                self._mode = ExecMode.DIRECT
                return True
            return False


class DotoolRunner:
    """Locate dotool binaries, keep dotoold alive and pipe command lines to it."""

    def __init__(
        self,
        tool_dir: Optional[str] = None,
        *,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        which: Callable[[str], Optional[str]] = shutil.which,
        timeout_s: Optional[float] = None,
    ) -> None:
        self.tool_dir = tool_dir if tool_dir is not None else config.TOOL_DIR
        self._run = run
        self._popen = popen
        self._which = which
        self.timeout_s = float(timeout_s if timeout_s is not None else config.TOOL_EXEC_TIMEOUT_S)
        self.state = ExecModeState()
        self.available = False
        self.dotool_path: Optional[str] = None
        self._daemon: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    @property
    def mode(self) -> ExecMode:
        return self.state.mode

    def tool_path(self, name: str) -> Optional[str]:
        """Prefer the bundled binary, then the system PATH."""
        if self.tool_dir:
            bundled = os.path.join(self.tool_dir, name)
            if os.path.isfile(bundled) and os.access(bundled, os.X_OK):
                return bundled
        return self._which(name)

    def detect(self) -> bool:
        """Check that dotool runs and start the daemon; safe to call again."""
        path = self.tool_path("dotool")
        if not path:
            log.warning("[remote] dotool not found (tool_dir=%s)", self.tool_dir or "-")
            self.available = False
            return False
        try:
            proc = self._run(
                [path, "--version"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.timeout_s,
                check=False,
            )
            ok = int(proc.returncode) == 0
        except (OSError, subprocess.SubprocessError) as error:
            log.warning("[remote] dotool probe failed: %s", error)
            ok = False
        self.available = ok
        self.dotool_path = path if ok else None
        if ok:
            log.info("[remote] using dotool from %s", path)
            self.start_daemon()
        return ok

    def start_daemon(self) -> bool:
        """Spawn a detached dotoold; failure switches to direct mode."""
        with self._lock:
            if self._daemon is not None and self._daemon.poll() is None:
                return True
            if self.state.mode is ExecMode.DIRECT:
                return False
            path = self.tool_path("dotoold")
            if not path:
                log.warning("[remote] dotoold not available, using dotool directly")
                self.state.daemon_failed()
                return False
            try:
                self._daemon = self._popen(
                    [path],
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as error:
                log.warning("[remote] dotoold failed to start (%s), using dotool directly", error)
                self._daemon = None
                self.state.daemon_failed()
                return False
            self.state.daemon_started()
            log.info("[remote] started dotoold daemon pid=%s", getattr(self._daemon, "pid", "?"))
            return True

    def stop_daemon(self) -> None:
        with self._lock:
            proc = self._daemon
            self._daemon = None
        if proc is None:
            return
        try:
            proc.terminate()
            log.info("[remote] stopped dotoold daemon")
        except OSError:
            pass

    def daemon_alive(self) -> bool:
        with self._lock:
            proc = self._daemon
        return proc is not None and proc.poll() is None

    def _feed(self, argv: List[str], line: str) -> int:
        proc = self._run(
            argv,
            input=line,
            text=True,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=self.timeout_s,
            check=False,
        )
        return int(proc.returncode)

    def _run_client(self, line: str) -> None:
        client = self.tool_path("dotoolc")
        if not client or not self.daemon_alive():
            raise DaemonUnreachable("dotoold is not running")
        rc = self._feed([client], line)
        if rc != 0:
            if not self.daemon_alive():
                raise DaemonUnreachable(f"dotoolc exited with {rc}")
            raise ToolExecError(f"dotoolc exited with {rc}")

    def _run_direct(self, line: str) -> None:
        if not self.dotool_path:
            raise ToolExecError("dotool unavailable")
        rc = self._feed([self.dotool_path], line)
        if rc != 0:
            raise ToolExecError(f"dotool exited with {rc}")

    def execute(self, command: str) -> bool:
        """Send one command line; returns False when the command was dropped."""
        if not self.available:
            return False
        line = str(command).rstrip("\n") + "\n"
        try:
            if self.state.mode is ExecMode.DAEMON:
                try:
                    self._run_client(line)
                    return True
                except DaemonUnreachable as error:
                    if self.state.daemon_unreachable():
                        log.warning("[remote] daemon unreachable (%s); switching to direct mode", error)
            self._run_direct(line)
            return True
        except (OSError, subprocess.SubprocessError, ToolExecError) as error:
            log.warning("[remote] dotool command failed: %s", error)
            return False
