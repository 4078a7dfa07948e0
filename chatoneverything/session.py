"""Session identity, live chat settings and URL resolution."""

from __future__ import annotations

import secrets
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from . import config


SESSION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ADMIN_PASSWORD_ALPHABET = "abcdefghjkmnpqrstuvwxyz23456789"


def generate_session_code(length: int = 6) -> str:
    """Return a human-typeable session code without ambiguous glyphs."""
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(length))


def generate_admin_password(length: int = 8) -> str:
    """Return a lowercase admin password without ambiguous glyphs."""
    return "".join(secrets.choice(ADMIN_PASSWORD_ALPHABET) for _ in range(length))


def _as_bool(value: Any) -> Optional[bool]:
    """Convert JSON-ish values to bool; None means the value is not usable."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("1", "true", "yes", "on"):
            return True
        if s in ("0", "false", "no", "off", ""):
            return False
    return None


def _as_int(value: Any, lo: int, hi: int) -> Optional[int]:
    """Parse an int inside [lo, hi]; None when malformed or out of range."""
    if isinstance(value, bool):
        return None
    try:
        n = int(value)
    except (TypeError, ValueError):
        return None
    if isinstance(value, float) and value != n:
        return None
    if n < lo or n > hi:
        return None
    return n


def _as_text(value: Any, lo: int, hi: int) -> Optional[str]:
    if not isinstance(value, str):
        return None
    if len(value) < lo or len(value) > hi:
        return None
    return value


@dataclass
class ChatSettings:
    maxMessages: int = 10
    fontSize: int = 16
    showJoinCode: bool = False
    showMobileLink: bool = False
    disableChatHistory: bool = True
    hideIp: bool = False
    customEmoji: str = "⭐"
    emojiDirectSend: bool = True
    slowModeEnabled: bool = False
    slowModeSeconds: int = 3
    enableFeedbackForm: bool = False
    feedbackCycleId: int = 0
    enableCeeAgent: bool = False
    ceeApiProvider: str = "openai"
    ceeSystemPrompt: str = ""
    remoteEnabled: bool = False
    ceeApiKey: str = field(default="", repr=False)

    def public(self) -> Dict[str, Any]:
        """Settings snapshot safe to send to clients (API key replaced by a flag)."""
        data = asdict(self)
        data.pop("ceeApiKey", None)
        data["ceeApiKeySet"] = bool(self.ceeApiKey)
        return data


# key -> parser returning the normalized value or None when rejected.
_SETTING_PARSERS: Dict[str, Callable[[Any], Any]] = {
    "maxMessages": lambda v: _as_int(v, 1, 50),
    "fontSize": lambda v: _as_int(v, 10, 48),
    "showJoinCode": _as_bool,
    "showMobileLink": _as_bool,
    "disableChatHistory": _as_bool,
    "hideIp": _as_bool,
    "customEmoji": lambda v: _as_text(v, 1, 8),
    "emojiDirectSend": _as_bool,
    "slowModeEnabled": _as_bool,
    "slowModeSeconds": lambda v: _as_int(v, 1, 60),
    "enableFeedbackForm": _as_bool,
    "enableCeeAgent": _as_bool,
    "ceeApiProvider": lambda v: v if v in ("openai", "gemini") else None,
    "ceeSystemPrompt": lambda v: _as_text(v, 0, 2000),
    "ceeApiKey": lambda v: _as_text(v, 0, 512),
}


def apply_settings_patch(settings: ChatSettings, patch: Dict[str, Any]) -> List[str]:
    """Apply the keys present in `patch`; return names of settings that changed.

    Unknown keys, read-only keys and invalid values are ignored.
    """
    changed: List[str] = []
    if not isinstance(patch, dict):
        return changed
    for key, parse in _SETTING_PARSERS.items():
        if key not in patch:
            continue
        value = parse(patch.get(key))
        if value is None:
            continue
        if getattr(settings, key) != value:
            setattr(settings, key, value)
            changed.append(key)
    return changed


def resolve_urls(
    session_code: str,
    *,
    hide_ip: bool,
    ws_tunnel_url: Optional[str],
    http_tunnel_url: Optional[str],
    local_ip: str,
    ws_port: int,
) -> Dict[str, str]:
    """Return the participant, admin and socket URLs for the current state."""
    if hide_ip and ws_tunnel_url and http_tunnel_url:
        base = str(http_tunnel_url).rstrip("/")
        return {
            "mobileUrl": f"{base}?s={session_code}",
            "adminUrl": f"{base}/admin?s={session_code}",
            "wsUrl": str(ws_tunnel_url),
        }
    http_port = int(ws_port) + 1
    return {
        "mobileUrl": f"http://{local_ip}:{http_port}?s={session_code}",
        "adminUrl": f"http://{local_ip}:{http_port}/admin?s={session_code}",
        "wsUrl": f"ws://{local_ip}:{int(ws_port)}",
    }


class Session:
    """Process-lifetime session aggregate shared by the hub and the HTTP surface."""

    def __init__(
        self,
        session_code: Optional[str] = None,
        admin_password: Optional[str] = None,
        *,
        ws_port: Optional[int] = None,
        local_ip_fn: Optional[Callable[[], str]] = None,
    ) -> None:
        self.session_code = (session_code or generate_session_code()).upper()
        self.admin_password = admin_password or generate_admin_password()
        self.ws_port = int(ws_port if ws_port is not None else config.PORT)
        self.settings = ChatSettings(slowModeSeconds=max(1, min(60, int(config.SLOW_MODE_S))))
        self.ws_tunnel_url: Optional[str] = None
        self.http_tunnel_url: Optional[str] = None
        self._local_ip_fn = local_ip_fn
        self._lock = threading.RLock()

    @property
    def http_port(self) -> int:
        return self.ws_port + 1

    def local_ip(self) -> str:
        if self._local_ip_fn is not None:
            return self._local_ip_fn()
        from .net import get_local_ip

        return get_local_ip()

    def matches_code(self, provided: Any) -> bool:
        """Compare a participant-provided code, trimmed and case-insensitive."""
        if not isinstance(provided, str):
            return False
        return secrets.compare_digest(provided.strip().upper(), self.session_code)

    def matches_password(self, provided: Any) -> bool:
        if not isinstance(provided, str):
            return False
        return secrets.compare_digest(provided, self.admin_password)

    def set_tunnel_urls(self, ws_url: Optional[str], http_url: Optional[str]) -> None:
        with self._lock:
            self.ws_tunnel_url = ws_url or None
            self.http_tunnel_url = http_url or None

    def has_tunnels(self) -> bool:
        with self._lock:
            return bool(self.ws_tunnel_url and self.http_tunnel_url)

    def urls(self) -> Dict[str, str]:
        """Resolve URLs from the current settings and tunnel state, uncached."""
        with self._lock:
            return resolve_urls(
                self.session_code,
                hide_ip=bool(self.settings.hideIp),
                ws_tunnel_url=self.ws_tunnel_url,
                http_tunnel_url=self.http_tunnel_url,
                local_ip=self.local_ip(),
                ws_port=self.ws_port,
            )

    def local_urls(self) -> Dict[str, str]:
        return resolve_urls(
            self.session_code,
            hide_ip=False,
            ws_tunnel_url=None,
            http_tunnel_url=None,
            local_ip=self.local_ip(),
            ws_port=self.ws_port,
        )

    def info(self) -> Dict[str, Any]:
        """Host-facing summary: credentials plus resolved and LAN-only URLs."""
        urls = self.urls()
        local = self.local_urls()
        return {
            "code": self.session_code,
            "adminPassword": self.admin_password,
            "wsUrl": urls["wsUrl"],
            "mobileUrl": urls["mobileUrl"],
            "adminUrl": urls["adminUrl"],
            "localWsUrl": local["wsUrl"],
            "localMobileUrl": local["mobileUrl"],
            "localAdminUrl": local["adminUrl"],
        }
