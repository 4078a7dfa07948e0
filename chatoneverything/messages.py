from __future__ import annotations

import re
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from . import config


_WS_RE = re.compile(r"\s+")


def normalize_whitespace(text: Any) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return _WS_RE.sub(" ", str(text or "")).strip()


def truncate_to_max_words(text: Any, max_words: int) -> str:
    """Normalize whitespace and keep at most `max_words` words."""
    normalized = normalize_whitespace(text)
    if not normalized:
        return ""
    words = normalized.split(" ")
    if len(words) <= max_words:
        return normalized
    return " ".join(words[:max_words])


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ChatMessage:
    id: int
    user: str
    text: str
    ip: Optional[str]
    timestamp: str
    deleted: bool = False

    def public(self) -> Dict[str, Any]:
        return {"id": self.id, "user": self.user, "text": self.text, "timestamp": self.timestamp}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user": self.user,
            "text": self.text,
            "ip": self.ip,
            "timestamp": self.timestamp,
            "deleted": self.deleted,
        }


class MessageStore:
    """Message index keyed by id plus a bounded history ring used as agent context."""

    def __init__(self, history_size: Optional[int] = None) -> None:
        self._lock = threading.Lock()
        self._next_id = 1
        self._index: Dict[int, ChatMessage] = {}
        self._history: deque[ChatMessage] = deque(maxlen=int(history_size or config.CHAT_HISTORY_SIZE))

    def append(self, user: str, text: str, ip: Optional[str]) -> ChatMessage:
        """Assign the next id and record the message."""
        with self._lock:
            entry = ChatMessage(id=self._next_id, user=user, text=text, ip=ip, timestamp=utc_now_iso())
            self._next_id += 1
            self._index[entry.id] = entry
            self._history.append(entry)
            return entry

    def get(self, msg_id: Any) -> Optional[ChatMessage]:
        try:
            key = int(msg_id)
        except (TypeError, ValueError):
            return None
        with self._lock:
            return self._index.get(key)

    def mark_deleted(self, msg_id: Any) -> Optional[ChatMessage]:
        """Flag a message deleted in place; None when missing or already deleted."""
        entry = self.get(msg_id)
        if entry is None:
            return None
        with self._lock:
            if entry.deleted:
                return None
            entry.deleted = True
            return entry

    def history(self) -> List[Dict[str, Any]]:
        """Snapshot of the history ring, oldest first, without deleted entries."""
        with self._lock:
            return [{"user": m.user, "text": m.text} for m in self._history if not m.deleted]

    @property
    def last_id(self) -> int:
        with self._lock:
            return self._next_id - 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)
