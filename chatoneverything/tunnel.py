"""Cloudflare quick tunnels for reaching the host from outside the LAN."""

import queue
import re
import shutil
import subprocess
import threading
import time
from typing import Callable, List, Optional, Tuple

from . import config
from .logging_config import log


TUNNEL_URL_RE = re.compile(r"https://[a-z0-9-]+\.trycloudflare\.com")


class TunnelError(RuntimeError):
    """cloudflared did not publish a URL in time."""


def find_tunnel_url(text: str) -> Optional[str]:
    match = TUNNEL_URL_RE.search(str(text or ""))
    return match.group(0) if match else None


def to_ws_url(http_url: str) -> str:
    return re.sub(r"^https://", "wss://", str(http_url))


def _pump(stream, lines: "queue.Queue[Optional[str]]") -> None:
    # Keeps draining after the URL is found so cloudflared never blocks on a full pipe.
    try:
        for line in iter(stream.readline, ""):
            lines.put(line)
    except (OSError, ValueError):
        pass
    finally:
        lines.put(None)


class QuickTunnel:
    """One `cloudflared tunnel --url` child process."""

    def __init__(self, port: int, *, binary: Optional[str] = None, popen: Callable[..., subprocess.Popen] = subprocess.Popen) -> None:
        self.port = int(port)
        self.binary = binary or config.CLOUDFLARED_BIN
        self._popen = popen
        self.proc: Optional[subprocess.Popen] = None
        self.url: Optional[str] = None

    def start(self, timeout_s: Optional[float] = None) -> str:
        timeout_s = float(timeout_s or config.TUNNEL_URL_TIMEOUT_S)
        exe = shutil.which(self.binary) or self.binary
        try:
            self.proc = self._popen(
                [exe, "tunnel", "--url", f"http://localhost:{self.port}"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as error:
            raise TunnelError(f"cloudflared failed to start: {error}") from error

        lines: "queue.Queue[Optional[str]]" = queue.Queue()
        threading.Thread(target=_pump, args=(self.proc.stdout, lines), daemon=True).start()
        deadline = time.monotonic() + timeout_s
        while True:
            left = deadline - time.monotonic()
            if left <= 0:
                break
            try:
                line = lines.get(timeout=left)
            except queue.Empty:
                break
            if line is None:
                break
            url = find_tunnel_url(line)
            if url:
                self.url = url
                return url
        self.stop()
        raise TunnelError(f"no tunnel URL for port {self.port} within {timeout_s:.0f}s")

    def stop(self) -> None:
        proc, self.proc = self.proc, None
        if proc is None:
            return
        try:
            proc.kill()
        except OSError:
            pass


class TunnelManager:
    """Owns the WebSocket and HTTP tunnels for the session."""

    def __init__(self, ws_port: int, http_port: int, *, tunnel_factory: Callable[[int], QuickTunnel] = QuickTunnel) -> None:
        self.ws_port = int(ws_port)
        self.http_port = int(http_port)
        self._factory = tunnel_factory
        self._lock = threading.Lock()
        self._tunnels: List[QuickTunnel] = []
        self._starting = False

    @property
    def running(self) -> bool:
        with self._lock:
            return bool(self._tunnels)

    def start(self) -> Optional[Tuple[str, str]]:
        """Blocking; returns (ws_url, http_url) or None when tunnelling is unavailable."""
        with self._lock:
            if self._starting or self._tunnels:
                return None
            self._starting = True
        started: List[QuickTunnel] = []
        try:
            ws = self._factory(self.ws_port)
            ws_url = to_ws_url(ws.start())
            started.append(ws)
            http = self._factory(self.http_port)
            http_url = http.start()
            started.append(http)
        except TunnelError as error:
            log.warning("Tunnel creation failed, using local network only: %s", error)
            for tunnel in started:
                tunnel.stop()
            return None
        finally:
            with self._lock:
                self._starting = False
        with self._lock:
            self._tunnels = started
        log.info("Cloudflare WebSocket: %s", ws_url)
        log.info("Cloudflare Mobile: %s", http_url)
        return ws_url, http_url

    def stop(self) -> None:
        with self._lock:
            tunnels, self._tunnels = self._tunnels, []
        for tunnel in tunnels:
            tunnel.stop()
