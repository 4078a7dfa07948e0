import math
import threading
import time
from typing import Dict, List, Optional, Set, Tuple

from . import config


class ModerationStore:
    """In-memory per-IP moderation state shared by the socket hub and HTTP surface."""

    def __init__(self, auto_block_threshold: Optional[int] = None) -> None:
        self._lock = threading.Lock()
        self._blocked: Set[str] = set()
        self._deletions_by_ip: Dict[str, int] = {}
        self._last_message_ts: Dict[str, float] = {}
        self._feedback_cycle_id = 0
        self._feedback_submitted: Set[str] = set()
        self._auto_block_threshold = int(auto_block_threshold or config.AUTO_BLOCK_DELETIONS)

    # Blocking

    def is_blocked(self, ip: str) -> bool:
        with self._lock:
            return bool(ip) and ip in self._blocked

    def block(self, ip: str) -> bool:
        """Block an IP; False when empty or already blocked."""
        ip = str(ip or "").strip()
        if not ip:
            return False
        with self._lock:
            if ip in self._blocked:
                return False
            self._blocked.add(ip)
            return True

    def unblock(self, ip: str) -> bool:
        """Unblock an IP and forgive its deletion count; False when not blocked."""
        ip = str(ip or "").strip()
        with self._lock:
            if ip not in self._blocked:
                return False
            self._blocked.discard(ip)
            self._deletions_by_ip.pop(ip, None)
            return True

    def blocked_ips(self) -> List[str]:
        with self._lock:
            return sorted(self._blocked)

    def deletion_count(self, ip: str) -> int:
        with self._lock:
            return int(self._deletions_by_ip.get(ip, 0))

    def record_deletion(self, ip: Optional[str]) -> bool:
        """Count an admin deletion against `ip`; True when it triggered an auto-block."""
        ip = str(ip or "").strip()
        if not ip:
            return False
        with self._lock:
            count = int(self._deletions_by_ip.get(ip, 0)) + 1
            self._deletions_by_ip[ip] = count
            if count >= self._auto_block_threshold and ip not in self._blocked:
                self._blocked.add(ip)
                return True
            return False

    # Slow mode

    def slow_mode_remaining(self, ip: str, cooldown_s: float, now: Optional[float] = None) -> int:
        """Return whole seconds left before `ip` may post again (0 when allowed)."""
        now = float(time.monotonic() if now is None else now)
        with self._lock:
            last = self._last_message_ts.get(ip)
        if last is None:
            return 0
        left = float(cooldown_s) - (now - float(last))
        if left <= 0:
            return 0
        return max(1, int(math.ceil(left)))

    def mark_message(self, ip: Optional[str], now: Optional[float] = None) -> None:
        if not ip:
            return
        now = float(time.monotonic() if now is None else now)
        with self._lock:
            self._last_message_ts[ip] = now

    # Feedback cycles

    @property
    def feedback_cycle_id(self) -> int:
        with self._lock:
            return int(self._feedback_cycle_id)

    def start_feedback_cycle(self) -> int:
        """Open a new feedback collection cycle and return its id."""
        with self._lock:
            self._feedback_cycle_id += 1
            self._feedback_submitted.clear()
            return int(self._feedback_cycle_id)

    def has_submitted_feedback(self, ip: str) -> bool:
        with self._lock:
            return ip in self._feedback_submitted

    def claim_feedback(self, ip: str) -> Tuple[bool, int]:
        """Reserve the single feedback slot for `ip`; returns (claimed, cycle_id)."""
        with self._lock:
            if ip in self._feedback_submitted:
                return False, int(self._feedback_cycle_id)
            self._feedback_submitted.add(ip)
            return True, int(self._feedback_cycle_id)
