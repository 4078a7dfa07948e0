import os
import sys
from typing import List


VERSION = "v1.0.0"


def _is_packaged_runtime() -> bool:
    """Return True when running from a frozen executable (PyInstaller/Nuitka)."""
    if bool(getattr(sys, "frozen", False)):
        return True
    if "__compiled__" in globals():
        return True
    return False


def _env_bool(name: str, default: bool) -> bool:
    """Read bool env var supporting common truthy/falsy forms."""
    raw = os.environ.get(name, None)
    if raw is None:
        return bool(default)
    value = str(raw).strip().lower()
    if value in {"1", "true", "yes", "on", "y", "t"}:
        return True
    if value in {"0", "false", "no", "off", "n", "f"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    """Read integer env var with fallback for malformed values."""
    raw = os.environ.get(name, None)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return int(default)


def _env_float(name: str, default: float) -> float:
    """Read float env var with fallback for malformed values."""
    raw = os.environ.get(name, None)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except (TypeError, ValueError):
        return float(default)


def _csv_list(raw: str) -> List[str]:
    """Parse a comma-separated string into normalized non-empty values."""
    out: List[str] = []
    for x in str(raw or "").split(","):
        s = str(x or "").strip()
        if s and s not in out:
            out.append(s)
    return out


HOST = os.environ.get("CHATONEVERYTHING_HOST", "0.0.0.0")
PORT = _env_int("CHATONEVERYTHING_PORT", 8765)

DEBUG = _env_bool("CHATONEVERYTHING_DEBUG", False)
CONSOLE_LOG = _env_bool("CHATONEVERYTHING_CONSOLE", False)
LOG_ENABLED = _env_bool("CHATONEVERYTHING_LOG", False) or CONSOLE_LOG
VERBOSE_HTTP_LOG = _env_bool("CHATONEVERYTHING_VERBOSE_HTTP_LOG", False)

JOIN_TIMEOUT_S = _env_float("CHATONEVERYTHING_JOIN_TIMEOUT_S", 10.0)
AUTH_CLOSE_DELAY_S = _env_float("CHATONEVERYTHING_AUTH_CLOSE_DELAY_S", 0.25)
TRUSTED_PROXY_HEADER = str(os.environ.get("CHATONEVERYTHING_TRUSTED_PROXY_HEADER", "cf-connecting-ip") or "").strip().lower()
TRUST_FORWARDED_FOR = _env_bool("CHATONEVERYTHING_TRUST_FORWARDED_FOR", True)
TUNNEL_HOST_SUFFIXES = _csv_list(os.environ.get("CHATONEVERYTHING_TUNNEL_HOSTS", "trycloudflare.com"))

REMOTE_ENABLED = _env_bool("CHATONEVERYTHING_REMOTE", False)
CLOUDFLARED_ENABLED = _env_bool("CHATONEVERYTHING_CLOUDFLARED", False)
CLOUDFLARED_BIN = str(os.environ.get("CHATONEVERYTHING_CLOUDFLARED_BIN", "cloudflared") or "cloudflared")

SLOW_MODE_S = _env_int("CHATONEVERYTHING_SLOW_MODE_S", 3)

# Policy constants.
MAX_MESSAGE_WORDS = 50
MAX_USER_CHARS = 40
CHAT_HISTORY_SIZE = 50
AUTO_BLOCK_DELETIONS = 2
FEEDBACK_MAX_BYTES = 20_000
FEEDBACK_COMMENT_WORDS = 150
MOUSE_MOVE_INTERVAL_S = 0.016
DOUBLE_CLICK_GAP_S = 0.05
SCROLL_DIVISOR = 3
SCROLL_MAX_STEPS = 10
TOOL_EXEC_TIMEOUT_S = 2.0
PRIVILEGE_INSTALL_TIMEOUT_S = 60.0
TUNNEL_URL_TIMEOUT_S = 15.0
AGENT_HTTP_TIMEOUT_S = 30.0
SCREENSHOT_TIMEOUT_S = 5.0
UDEV_RULE_PATH = "/etc/udev/rules.d/99-chatoneverything.rules"

RUNTIME_PACKAGED = _is_packaged_runtime()

if RUNTIME_PACKAGED:
    BASE_DIR = os.path.dirname(sys.executable)
else:
    BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
STATIC_DIR = str(os.environ.get("CHATONEVERYTHING_STATIC_DIR", "") or "").strip() or os.path.join(PACKAGE_DIR, "static")
TOOL_DIR = str(os.environ.get("CHATONEVERYTHING_TOOL_DIR", "") or "").strip() or os.path.join(BASE_DIR, "bin")
LOG_DIR = str(os.environ.get("CHATONEVERYTHING_LOG_DIR", "") or "").strip()
DATA_DIR = os.path.abspath(str(os.environ.get("CHATONEVERYTHING_DATA_DIR", BASE_DIR) or BASE_DIR))
LOG_FILE = os.path.join(DATA_DIR, "chatoneverything.log")

SESSION_CODE = str(os.environ.get("CHATONEVERYTHING_SESSION_CODE", "") or "").strip().upper()[:6]
ADMIN_PASSWORD = str(os.environ.get("CHATONEVERYTHING_ADMIN_PASSWORD", "") or "").strip()


def http_port() -> int:
    """Return the HTTP port, which always sits next to the WebSocket port."""
    return int(PORT) + 1


def user_data_dir() -> str:
    """Return the per-user application data directory for the current platform."""
    home = os.path.expanduser("~")
    if os.name == "nt":
        root = os.environ.get("APPDATA") or os.path.join(home, "AppData", "Roaming")
    elif sys.platform == "darwin":
        root = os.path.join(home, "Library", "Application Support")
    else:
        root = os.environ.get("XDG_DATA_HOME") or os.path.join(home, ".local", "share")
    return os.path.join(root, "chatoneverything")


def reload_from_env() -> None:
    """Reload runtime configuration from environment variables."""
    global HOST, PORT, DEBUG, CONSOLE_LOG, LOG_ENABLED, VERBOSE_HTTP_LOG
    global JOIN_TIMEOUT_S, AUTH_CLOSE_DELAY_S, TRUSTED_PROXY_HEADER, TRUST_FORWARDED_FOR
    global TUNNEL_HOST_SUFFIXES, REMOTE_ENABLED, CLOUDFLARED_ENABLED, CLOUDFLARED_BIN
    global SLOW_MODE_S, LOG_DIR, SESSION_CODE, ADMIN_PASSWORD

    HOST = os.environ.get("CHATONEVERYTHING_HOST", HOST)
    PORT = _env_int("CHATONEVERYTHING_PORT", PORT)

    DEBUG = _env_bool("CHATONEVERYTHING_DEBUG", False)
    CONSOLE_LOG = _env_bool("CHATONEVERYTHING_CONSOLE", False)
    LOG_ENABLED = _env_bool("CHATONEVERYTHING_LOG", False) or CONSOLE_LOG
    VERBOSE_HTTP_LOG = _env_bool("CHATONEVERYTHING_VERBOSE_HTTP_LOG", False)

    JOIN_TIMEOUT_S = _env_float("CHATONEVERYTHING_JOIN_TIMEOUT_S", JOIN_TIMEOUT_S)
    AUTH_CLOSE_DELAY_S = _env_float("CHATONEVERYTHING_AUTH_CLOSE_DELAY_S", AUTH_CLOSE_DELAY_S)
    TRUSTED_PROXY_HEADER = str(
        os.environ.get("CHATONEVERYTHING_TRUSTED_PROXY_HEADER", TRUSTED_PROXY_HEADER) or ""
    ).strip().lower()
    TRUST_FORWARDED_FOR = _env_bool("CHATONEVERYTHING_TRUST_FORWARDED_FOR", TRUST_FORWARDED_FOR)
    TUNNEL_HOST_SUFFIXES = _csv_list(
        os.environ.get("CHATONEVERYTHING_TUNNEL_HOSTS", ",".join(TUNNEL_HOST_SUFFIXES))
    )

    REMOTE_ENABLED = _env_bool("CHATONEVERYTHING_REMOTE", REMOTE_ENABLED)
    CLOUDFLARED_ENABLED = _env_bool("CHATONEVERYTHING_CLOUDFLARED", CLOUDFLARED_ENABLED)
    CLOUDFLARED_BIN = str(os.environ.get("CHATONEVERYTHING_CLOUDFLARED_BIN", CLOUDFLARED_BIN) or "cloudflared")

    SLOW_MODE_S = _env_int("CHATONEVERYTHING_SLOW_MODE_S", SLOW_MODE_S)
    LOG_DIR = str(os.environ.get("CHATONEVERYTHING_LOG_DIR", LOG_DIR) or "").strip()

    code = str(os.environ.get("CHATONEVERYTHING_SESSION_CODE", "") or "").strip().upper()
    if code:
        SESSION_CODE = code[:6]
    pw = str(os.environ.get("CHATONEVERYTHING_ADMIN_PASSWORD", "") or "").strip()
    if pw:
        ADMIN_PASSWORD = pw
