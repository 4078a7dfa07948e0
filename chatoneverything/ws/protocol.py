"""Helpers for the chat WebSocket protocol."""

import json
from typing import Any, Dict, Optional


CLOSE_POLICY_VIOLATION = 1008

ROLE_UNAUTHENTICATED = "unauthenticated"
ROLE_PARTICIPANT = "participant"
ROLE_ADMIN = "admin"

ADMIN_TYPES = frozenset(
    {
        "admin-settings",
        "admin-delete-msg",
        "admin-block-ip",
        "admin-unblock-ip",
        "admin-toggle-mode",
        "remote-control-start",
        "remote-control-end",
    }
)


def parse_frame(raw: Any) -> Optional[Dict[str, Any]]:
    """Decode one text frame into a message dict; None for malformed frames."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(raw, str):
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        return None
    return data


def is_remote_gesture(msg_type: str) -> bool:
    return str(msg_type or "").startswith("remote-") and msg_type not in ADMIN_TYPES


def error_frame(code: str) -> Dict[str, Any]:
    return {"type": "error", "code": str(code)}


def message_frame(entry: Dict[str, Any], *, include_ip: bool = False) -> Dict[str, Any]:
    """Broadcast form of a chat message; only admins see the origin IP."""
    payload = {
        "type": "message",
        "id": entry["id"],
        "user": entry["user"],
        "text": entry["text"],
        "timestamp": entry["timestamp"],
    }
    if include_ip:
        payload["ip"] = entry.get("ip")
    return payload
