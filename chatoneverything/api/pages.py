"""Session-gated app pages, static assets and the feedback endpoint."""

import html
import json
import os
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, Response
from pydantic import BaseModel, Field, ValidationError, field_validator

from .. import config
from .. import context as ctx
from ..logging_config import log
from ..messages import truncate_to_max_words, utc_now_iso
from ..net import is_tunnel_request, resolve_client_ip


router = APIRouter()

_CONTENT_TYPES = {"css": "text/css", "js": "application/javascript"}

_JOIN_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Join Chat</title>
<link rel="stylesheet" href="/css/style.css">
</head>
<body class="join-page">
<main>
<h1>Join Chat</h1>
<form method="get" action="{action}">
<label for="s">Session code</label>
<input id="s" name="s" maxlength="6" autocomplete="off" autocapitalize="characters" required>
<button type="submit">Join</button>
</form>
</main>
</body>
</html>
"""

_NOT_FOUND_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Session Not Found</title>
<link rel="stylesheet" href="/css/style.css">
</head>
<body class="join-page">
<main>
<h1>Session Not Found</h1>
<p>The session code is not valid. Check the code shown on the host screen.</p>
<a href="{action}">Try again</a>
</main>
</body>
</html>
"""

# Local requests always overwrite the cached endpoint; tunneled ones only replace LAN-looking values.
_BOOTSTRAP_SCRIPT = """<script>
(function() {
    var defaultWsUrl = %(ws)s;
    var isLocalRequest = %(local)s;
    var existing = localStorage.getItem('livechat_server') || '';
    var lanLike = !existing || existing.indexOf('10.') === 0 || existing.indexOf('192.168.') === 0 ||
        existing.indexOf('172.') === 0 || existing.indexOf('localhost') !== -1 ||
        existing === window.location.hostname + ':' + %(port)s;
    if (isLocalRequest || lanLike) {
        localStorage.setItem('livechat_server', defaultWsUrl);
        window.__defaultWsUrl = defaultWsUrl;
    }
})();
</script>"""


def _ws_host_for_request(request: Request) -> tuple[str, bool]:
    """Return (ws host, is_local) for the endpoint a page should connect to."""
    session = ctx.hub.session
    if is_tunnel_request(request.headers) and session.ws_tunnel_url:
        host = session.ws_tunnel_url.split("://", 1)[-1].rstrip("/")
        return host, False
    return f"{session.local_ip()}:{session.ws_port}", True


def inject_ws_config(page: str, ws_host: str, is_local: bool, ws_port: int) -> str:
    meta = f'<meta name="default-ws-url" content="{html.escape(ws_host, quote=True)}">'
    script = _BOOTSTRAP_SCRIPT % {
        "ws": json.dumps(ws_host),
        "local": "true" if is_local else "false",
        "port": json.dumps(str(ws_port)),
    }
    return page.replace("<head>", "<head>" + meta + script, 1)


def _serve_app_page(request: Request, page_name: str, action: str) -> Response:
    provided = request.query_params.get("s")
    if not provided:
        return HTMLResponse(_JOIN_PAGE.format(action=action))
    if not ctx.hub.session.matches_code(provided):
        return HTMLResponse(_NOT_FOUND_PAGE.format(action=action), status_code=403)
    path = os.path.join(config.STATIC_DIR, "mobile", page_name)
    try:
        with open(path, "r", encoding="utf-8") as f:
            page = f.read()
    except OSError:
        log.warning("App page missing: %s", path)
        return Response("Not found", status_code=404, media_type="text/plain")
    ws_host, is_local = _ws_host_for_request(request)
    return HTMLResponse(inject_ws_config(page, ws_host, is_local, ctx.hub.session.ws_port))


@router.get("/")
@router.get("/index.html")
def mobile_page(request: Request):
    return _serve_app_page(request, "index.html", "/")


@router.get("/admin")
@router.get("/admin.html")
def admin_page(request: Request):
    return _serve_app_page(request, "admin.html", "/admin")


def _static_asset(kind: str, filename: str) -> Response:
    name = os.path.basename(str(filename or "").replace("\\", "/"))
    if not name or name in (".", ".."):
        return Response("Not found", status_code=404, media_type="text/plain")
    path = os.path.join(config.STATIC_DIR, kind, name)
    if not os.path.isfile(path):
        return Response("Not found", status_code=404, media_type="text/plain")
    return FileResponse(path, media_type=_CONTENT_TYPES[kind])


@router.get("/css/{filename:path}")
def css_asset(filename: str):
    return _static_asset("css", filename)


@router.get("/js/{filename:path}")
def js_asset(filename: str):
    return _static_asset("js", filename)


class FeedbackSubmission(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: Any = ""

    @field_validator("rating", mode="before")
    @classmethod
    def _reject_bool(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("rating must be a number")
        return value


def _error(status: int, code: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": code}, status_code=status)


async def _read_limited(request: Request, limit: int) -> Optional[bytes]:
    """Read the request body, giving up once it exceeds `limit` bytes."""
    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


@router.api_route("/feedback", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
async def feedback(request: Request):
    """Record one rating per client IP per feedback cycle."""
    if request.method != "POST":
        return _error(405, "method_not_allowed")
    hub = ctx.hub
    if not hub.session.settings.enableFeedbackForm:
        return _error(403, "feedback_disabled")
    peer = getattr(getattr(request, "client", None), "host", None)
    ip = resolve_client_ip(request.headers, peer)
    if not ip:
        return _error(400, "ip_unknown")
    if hub.moderation.has_submitted_feedback(ip):
        return _error(409, "already_submitted")

    body = await _read_limited(request, config.FEEDBACK_MAX_BYTES)
    if body is None:
        return _error(413, "payload_too_large")
    try:
        payload = json.loads(body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        return _error(400, "invalid_json")
    if not isinstance(payload, dict):
        payload = {}
    try:
        submission = FeedbackSubmission.model_validate(payload)
    except ValidationError:
        return _error(400, "invalid_rating")

    comment = truncate_to_max_words(submission.comment or "", config.FEEDBACK_COMMENT_WORDS)
    claimed, cycle_id = hub.moderation.claim_feedback(ip)
    if not claimed:
        return _error(409, "already_submitted")
    hub.event_log.write_feedback(
        {
            "type": "feedback",
            "sessionCode": hub.session.session_code,
            "feedbackCycleId": cycle_id,
            "at": utc_now_iso(),
            "ip": ip,
            "rating": submission.rating,
            "comment": comment,
        }
    )
    log.info("Feedback received: cycle=%s rating=%s", cycle_id, submission.rating)
    return {"ok": True}
