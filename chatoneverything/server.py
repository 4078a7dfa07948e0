import asyncio
import contextlib
import signal
import sys
import time
from contextlib import asynccontextmanager
from typing import List
from urllib.parse import parse_qsl, urlencode, urlsplit

import uvicorn
from fastapi import FastAPI, Request

from . import config
from . import context as ctx
from .api import pages_router
from .logging_config import log
from .remote.backend import build_backend
from .remote.backends.dotool import _DotoolBackend
from .remote.setup import (
    PERMISSION_NEED_RELOGIN,
    PERMISSION_NEED_SETUP,
    check_permission,
)
from .ws.chat import router as ws_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Bind the hub to the serving loop."""
    ctx.running_loop = asyncio.get_running_loop()
    ctx.hub.bind_loop(ctx.running_loop)
    yield


ws_app = FastAPI(title=f"ChatOnEverything WS {config.VERSION}", lifespan=lifespan)
ws_app.include_router(ws_router)

http_app = FastAPI(title=f"ChatOnEverything {config.VERSION}")


def _sanitize_url_for_log(url: str) -> str:
    """Redact the session code before HTTP access logging."""
    try:
        p = urlsplit(str(url or ""))
        qs = parse_qsl(p.query, keep_blank_values=True)
        out = [(k, "***" if str(k).lower() == "s" else v) for k, v in qs]
        q = urlencode(out, doseq=True)
        return p.path + (f"?{q}" if q else "")
    except ValueError:
        return str(url or "")


@http_app.middleware("http")
async def http_log_middleware(request: Request, call_next):
    """Log HTTP request latency with the session code redacted."""
    started = time.perf_counter()
    method = str(request.method or "")
    target = _sanitize_url_for_log(str(request.url or ""))
    try:
        response = await call_next(request)
    except Exception:
        log.exception("HTTP %s %s -> 500", method, target)
        raise

    dt_ms = (time.perf_counter() - started) * 1000.0
    status = int(getattr(response, "status_code", 0) or 0)
    if config.VERBOSE_HTTP_LOG or status >= 400 or dt_ms >= 1000.0:
        log.info("HTTP %s %s -> %s in %.1fms", method, target, status, dt_ms)
    return response


http_app.include_router(pages_router)


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to `run()` so two can share a loop."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def _uvicorn_config(app: FastAPI, port: int) -> uvicorn.Config:
    log_level = "debug" if config.DEBUG else "info"
    access_log = config.DEBUG
    if not config.LOG_ENABLED:
        log_level = "critical"
        access_log = False
    return uvicorn.Config(app, host=config.HOST, port=int(port), log_level=log_level, access_log=access_log)


def _prepare_remote_input() -> None:
    """Detect the input backend and report missing uinput access."""
    backend = build_backend()
    ctx.controller.set_backend(backend)
    if isinstance(backend, _DotoolBackend) and backend.available:
        state = check_permission(backend.runner)
        if state == PERMISSION_NEED_SETUP:
            log.warning("[remote] uinput access missing; run `chatoneverything --setup-input` once")
        elif state == PERMISSION_NEED_RELOGIN:
            log.warning("[remote] uinput rule installed but inactive; log out and back in")


def _print_banner() -> None:
    info = ctx.hub.session_info()
    print(f"Session: {info['code']}")
    print(f"AdminPW: {info['adminPassword']}")
    print(f"Mobile: {info['localMobileUrl']}")
    print(f"Admin: {info['localAdminUrl']}")
    print(f"Socket: {info['localWsUrl']}")


async def serve() -> None:
    """Run the WebSocket and HTTP listeners on one event loop until signalled."""
    loop = asyncio.get_running_loop()
    ctx.running_loop = loop
    ctx.hub.bind_loop(loop)
    ctx.event_log.open_chat_session(ctx.session.session_code)
    await asyncio.to_thread(_prepare_remote_input)

    servers: List[_Server] = [
        _Server(_uvicorn_config(ws_app, ctx.session.ws_port)),
        _Server(_uvicorn_config(http_app, ctx.session.http_port)),
    ]

    def _stop(*_args) -> None:
        for server in servers:
            server.should_exit = True

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, _stop)

    _print_banner()
    if config.CLOUDFLARED_ENABLED:
        ctx.hub.request_tunnels()
    try:
        await asyncio.gather(*(server.serve() for server in servers))
    finally:
        await ctx.hub.shutdown()
        await asyncio.to_thread(ctx.tunnels.stop)
        log.info("Server stopped")


def run() -> None:
    """Console entry point."""
    if "--setup-input" in sys.argv[1:]:
        from .remote.setup import install_udev_rule

        ok = install_udev_rule()
        print("uinput rule installed; log out and back in." if ok else "uinput rule install failed.")
        sys.exit(0 if ok else 1)
    log.info("ChatOnEverything %s starting (ws=%s http=%s)", config.VERSION, ctx.session.ws_port, ctx.session.http_port)
    asyncio.run(serve())
