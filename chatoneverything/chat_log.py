"""Append-only JSONL event logs for chat sessions and feedback cycles."""

from __future__ import annotations

import json
import os
import threading
from typing import IO, Any, Dict, List, Optional

from . import config
from .logging_config import log
from .messages import utc_now_iso


def _file_stamp() -> str:
    return utc_now_iso().replace(":", "-").replace(".", "-")


def log_dir_candidates() -> List[str]:
    """Preferred log directories: explicit override, CWD, install dir, user data dir."""
    out: List[str] = []
    if config.LOG_DIR:
        out.append(config.LOG_DIR)
    try:
        out.append(os.path.join(os.getcwd(), "chat-logs"))
    except OSError:
        pass
    out.append(os.path.join(config.BASE_DIR, "chat-logs"))
    out.append(os.path.join(config.user_data_dir(), "chat-logs"))
    return out


def pick_log_dir() -> str:
    """Return the first candidate directory that can be created and written."""
    candidates = log_dir_candidates()
    for path in candidates:
        try:
            os.makedirs(path, exist_ok=True)
        except OSError:
            continue
        if os.access(path, os.W_OK):
            return path
    return candidates[-1]


class EventLog:
    """Thread-safe JSONL writer; write failures are logged and never raised."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._dir: Optional[str] = None
        self._chat: Optional[IO[str]] = None
        self._feedback: Optional[IO[str]] = None
        self.chat_path: Optional[str] = None
        self.feedback_path: Optional[str] = None

    def _ensure_dir(self) -> str:
        if self._dir is None:
            self._dir = pick_log_dir()
        return self._dir

    def _open(self, filename: str) -> Optional[IO[str]]:
        path = os.path.join(self._ensure_dir(), filename)
        try:
            return open(path, "a", encoding="utf-8")
        except OSError:
            log.exception("Failed to open event log %s", path)
            return None

    @staticmethod
    def _write(stream: Optional[IO[str]], event: Dict[str, Any]) -> None:
        if stream is None:
            return
        try:
            stream.write(json.dumps(event, ensure_ascii=False) + "\n")
            stream.flush()
        except (OSError, TypeError, ValueError):
            log.exception("Failed to write event log entry type=%s", event.get("type"))

    def open_chat_session(self, session_code: str) -> Optional[str]:
        """Start the chat log for this process and write the session-start marker."""
        filename = f"chat-session-{session_code}-{_file_stamp()}.jsonl"
        with self._lock:
            if self._chat is not None:
                self._chat.close()
            self._chat = self._open(filename)
            self.chat_path = os.path.join(self._ensure_dir(), filename) if self._chat else None
            self._write(
                self._chat,
                {"type": "session-start", "sessionCode": session_code, "startedAt": utc_now_iso()},
            )
        log.info("Chat logging: %s", self.chat_path or "disabled")
        return self.chat_path

    def open_feedback_cycle(self, session_code: str, cycle_id: int) -> Optional[str]:
        """Start a feedback file for the given cycle."""
        filename = f"feedback-session-{session_code}-cycle-{int(cycle_id)}-{_file_stamp()}.jsonl"
        with self._lock:
            if self._feedback is not None:
                self._feedback.close()
            self._feedback = self._open(filename)
            self.feedback_path = os.path.join(self._ensure_dir(), filename) if self._feedback else None
            self._write(
                self._feedback,
                {"type": "feedback-cycle-start", "sessionCode": session_code, "cycle": int(cycle_id)},
            )
        return self.feedback_path

    def write_chat(self, event: Dict[str, Any]) -> None:
        with self._lock:
            self._write(self._chat, event)

    def write_feedback(self, event: Dict[str, Any]) -> None:
        with self._lock:
            self._write(self._feedback, event)

    def close(self) -> None:
        with self._lock:
            for stream in (self._chat, self._feedback):
                if stream is None:
                    continue
                try:
                    stream.close()
                except OSError:
                    pass
            self._chat = None
            self._feedback = None
