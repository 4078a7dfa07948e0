"""Chat session hub: connection lifecycle, moderation enforcement and broadcast fan-out.

All hub state is owned by the asyncio loop running the WebSocket server. Blocking
collaborators (input tool, agent HTTP, tunnels) are called through
`asyncio.to_thread` so the loop never stalls.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from . import config
from .agent import CEE_ERROR_TEXT, CEE_USER, CeeAgent, extract_question
from .chat_log import EventLog
from .logging_config import log
from .messages import MessageStore, normalize_whitespace, truncate_to_max_words, utc_now_iso
from .moderation import ModerationStore
from .net import resolve_client_ip
from .overlay import OverlayBridge
from .remote.controller import RemoteController
from .session import Session, apply_settings_patch
from .ws.protocol import (
    CLOSE_POLICY_VIOLATION,
    ROLE_ADMIN,
    ROLE_PARTICIPANT,
    ROLE_UNAUTHENTICATED,
    error_frame,
    is_remote_gesture,
    message_frame,
    parse_frame,
)


_AGENT_SETTING_KEYS = ("enableCeeAgent", "ceeApiProvider", "ceeApiKey", "ceeSystemPrompt")

TunnelRequester = Callable[[], Optional[Tuple[str, str]]]


class Connection:
    """One chat socket and its per-connection protocol state."""

    _ids = itertools.count(1)

    def __init__(self, websocket: Any, client_ip: str) -> None:
        self.id = next(self._ids)
        self.websocket = websocket
        self.client_ip = client_ip
        self.role = ROLE_UNAUTHENTICATED
        self.remote_armed = False
        self.closed = False
        self.join_deadline: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()

    @property
    def validated(self) -> bool:
        return self.role != ROLE_UNAUTHENTICATED

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def cancel_deadline(self) -> None:
        task, self.join_deadline = self.join_deadline, None
        if task is not None and not task.done():
            task.cancel()

    async def send(self, payload: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        async with self._send_lock:
            try:
                await self.websocket.send_json(payload)
                return True
            except Exception as error:
                log.debug("WS send failed conn=%s type=%s: %s", self.id, payload.get("type"), error)
                return False

    async def close(self, code: int = CLOSE_POLICY_VIOLATION, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as error:
            log.debug("WS close failed conn=%s: %s", self.id, error)


class ChatHub:
    def __init__(
        self,
        session: Session,
        *,
        moderation: Optional[ModerationStore] = None,
        messages: Optional[MessageStore] = None,
        event_log: Optional[EventLog] = None,
        overlay: Optional[OverlayBridge] = None,
        controller: Optional[RemoteController] = None,
        agent: Optional[CeeAgent] = None,
        backend_factory: Optional[Callable[[], Any]] = None,
        tunnel_requester: Optional[TunnelRequester] = None,
        remote_enabled: Optional[bool] = None,
        join_timeout_s: Optional[float] = None,
        close_delay_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.moderation = moderation or ModerationStore()
        self.messages = messages or MessageStore()
        self.event_log = event_log or EventLog()
        self.overlay = overlay or OverlayBridge()
        self.controller = controller or RemoteController()
        self.agent = agent or CeeAgent()
        self.backend_factory = backend_factory
        self.tunnel_requester = tunnel_requester
        self.remote_enabled = bool(config.REMOTE_ENABLED if remote_enabled is None else remote_enabled)
        self.join_timeout_s = float(config.JOIN_TIMEOUT_S if join_timeout_s is None else join_timeout_s)
        self.close_delay_s = float(config.AUTH_CLOSE_DELAY_S if close_delay_s is None else close_delay_s)
        self._clock = clock
        self._connections: List[Connection] = []
        self._admins: Set[Connection] = set()
        self._remote_owner: Optional[Connection] = None
        self._tasks: Set[asyncio.Task] = set()
        self._tunnel_pending = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._admin_handlers: Dict[str, Callable[[Connection, Dict[str, Any]], Awaitable[None]]] = {
            "admin-settings": self._on_admin_settings,
            "admin-delete-msg": self._on_admin_delete,
            "admin-block-ip": self._on_admin_block,
            "admin-unblock-ip": self._on_admin_unblock,
            "admin-toggle-mode": self._on_admin_toggle_mode,
            "remote-control-start": self._on_remote_start,
            "remote-control-end": self._on_remote_end,
        }
        self.session.settings.remoteEnabled = self.remote_enabled
        self.overlay.add_mode_listener(self._on_overlay_mode)
        self.agent.update_settings(self._agent_settings())

    # Snapshots

    def settings_snapshot(self) -> Dict[str, Any]:
        data = self.session.settings.public()
        data["remoteEnabled"] = bool(self.remote_enabled)
        data["feedbackCycleId"] = self.moderation.feedback_cycle_id
        return data

    def _agent_settings(self) -> Dict[str, Any]:
        return {key: getattr(self.session.settings, key) for key in _AGENT_SETTING_KEYS}

    def session_info(self) -> Dict[str, Any]:
        info = self.session.info()
        info.update(
            {
                "remoteEnabled": bool(self.remote_enabled),
                "remoteActive": self.controller.armed,
                "mode": self.overlay.mode,
                "connections": len(self._connections),
                "admins": len(self._admins),
            }
        )
        return info

    @property
    def connections(self) -> List[Connection]:
        return list(self._connections)

    # Task plumbing

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _on_overlay_mode(self, mode: str) -> None:
        # Overlay callbacks may fire from a GUI thread.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        payload = {"type": "mode-state", "mode": mode}
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._spawn(self.broadcast_admins(payload))
        else:
            asyncio.run_coroutine_threadsafe(self.broadcast_admins(payload), loop)

    # Broadcast

    async def broadcast(self, payload: Dict[str, Any]) -> None:
        """Send to every validated socket in connection order."""
        for conn in list(self._connections):
            if conn.validated:
                await conn.send(payload)

    async def broadcast_admins(self, payload: Dict[str, Any]) -> None:
        for conn in list(self._connections):
            if conn in self._admins:
                await conn.send(payload)

    async def broadcast_settings(self) -> None:
        urls = self.session.urls()
        await self.broadcast(
            {
                "type": "settings-sync",
                "settings": self.settings_snapshot(),
                "mobileUrl": urls["mobileUrl"],
                "wsUrl": urls["wsUrl"],
            }
        )

    async def _broadcast_message(self, entry: Dict[str, Any]) -> None:
        public = message_frame(entry)
        private = message_frame(entry, include_ip=True)
        for conn in list(self._connections):
            if conn.validated:
                await conn.send(private if conn.is_admin else public)

    # Connection lifecycle

    async def connect(self, websocket: Any) -> Connection:
        """Register an accepted socket and start its join deadline."""
        self.bind_loop()
        peer = getattr(getattr(websocket, "client", None), "host", None)
        conn = Connection(websocket, resolve_client_ip(websocket.headers, peer))
        self._connections.append(conn)
        conn.join_deadline = self._spawn(self._join_deadline(conn))
        log.info("WS connected: conn=%s ip=%s", conn.id, conn.client_ip or "-")
        return conn

    async def _join_deadline(self, conn: Connection) -> None:
        await asyncio.sleep(self.join_timeout_s)
        if not conn.validated and not conn.closed:
            log.info("WS join timeout: conn=%s ip=%s", conn.id, conn.client_ip or "-")
            await conn.close(CLOSE_POLICY_VIOLATION, "Timeout")

    async def disconnect(self, conn: Connection) -> None:
        conn.closed = True
        conn.cancel_deadline()
        if conn in self._connections:
            self._connections.remove(conn)
        self._admins.discard(conn)
        if conn.remote_armed or self._remote_owner is conn:
            await self._disarm_remote("admin disconnected")
        log.info("WS disconnected: conn=%s ip=%s role=%s", conn.id, conn.client_ip or "-", conn.role)

    async def _reject_and_close(self, conn: Connection, payload: Dict[str, Any]) -> None:
        await conn.send(payload)
        await asyncio.sleep(self.close_delay_s)
        await conn.close(CLOSE_POLICY_VIOLATION, "Authentication failed")

    # Dispatch

    async def handle_frame(self, conn: Connection, raw: Any) -> None:
        """Handle one inbound frame; protocol errors never close the socket."""
        msg = parse_frame(raw)
        if msg is None:
            log.info("WS malformed frame: conn=%s", conn.id)
            return
        msg_type = msg["type"]
        if msg_type == "ping":
            return
        try:
            if msg_type == "join":
                await self._on_join(conn, msg)
            elif msg_type == "admin-auth":
                await self._on_admin_auth(conn, msg)
            elif not conn.validated:
                await conn.send(error_frame("not_validated"))
            elif msg_type == "message":
                await self._on_message(conn, msg)
            elif not conn.is_admin:
                log.debug("WS ignored %s from non-admin conn=%s", msg_type, conn.id)
            elif msg_type in self._admin_handlers:
                await self._admin_handlers[msg_type](conn, msg)
            elif is_remote_gesture(msg_type):
                await self._on_remote_gesture(conn, msg)
            else:
                log.info("WS unknown event: conn=%s type=%s", conn.id, msg_type)
        except Exception:
            log.exception("WS handler failed: conn=%s type=%s", conn.id, msg_type)

    # Admission

    async def _on_join(self, conn: Connection, msg: Dict[str, Any]) -> None:
        if conn.validated:
            await conn.send(error_frame("already_validated"))
            return
        if not self.session.matches_code(msg.get("sessionCode")):
            log.info("WS join rejected: conn=%s ip=%s", conn.id, conn.client_ip or "-")
            await self._reject_and_close(
                conn, {"type": "join-result", "success": False, "error": "invalid_session"}
            )
            return
        conn.cancel_deadline()
        conn.role = ROLE_PARTICIPANT
        urls = self.session.urls()
        settings = self.settings_snapshot()
        await conn.send(
            {
                "type": "join-result",
                "success": True,
                "code": self.session.session_code,
                "settings": settings,
                "mobileUrl": urls["mobileUrl"],
                "wsUrl": urls["wsUrl"],
            }
        )
        await conn.send(
            {"type": "settings-sync", "settings": settings, "mobileUrl": urls["mobileUrl"], "wsUrl": urls["wsUrl"]}
        )
        log.info("WS joined: conn=%s ip=%s", conn.id, conn.client_ip or "-")

    async def _on_admin_auth(self, conn: Connection, msg: Dict[str, Any]) -> None:
        if conn.validated:
            await conn.send(error_frame("already_validated"))
            return
        if not self.session.matches_password(msg.get("password")):
            log.warning("WS admin auth failed: conn=%s ip=%s", conn.id, conn.client_ip or "-")
            await self._reject_and_close(conn, {"type": "admin-auth-result", "success": False})
            return
        conn.cancel_deadline()
        conn.role = ROLE_ADMIN
        self._admins.add(conn)
        urls = self.session.urls()
        await conn.send(
            {
                "type": "admin-auth-result",
                "success": True,
                "settings": self.settings_snapshot(),
                "blockedIps": self.moderation.blocked_ips(),
                "mobileUrl": urls["mobileUrl"],
                "adminUrl": urls["adminUrl"],
                "wsUrl": urls["wsUrl"],
            }
        )
        await conn.send({"type": "mode-state", "mode": self.overlay.mode})
        await conn.send({"type": "remote-enabled-status", "enabled": bool(self.remote_enabled)})
        log.info("WS admin authenticated: conn=%s ip=%s", conn.id, conn.client_ip or "-")

    # Ingestion

    async def _on_message(self, conn: Connection, msg: Dict[str, Any]) -> None:
        user = normalize_whitespace(msg.get("user"))[: config.MAX_USER_CHARS].strip()
        raw_text = msg.get("text")
        if not user or not isinstance(raw_text, str):
            return
        ip = conn.client_ip
        if self.moderation.is_blocked(ip):
            await conn.send({"type": "blocked"})
            log.info("Message rejected from blocked ip=%s", ip)
            return
        settings = self.session.settings
        if settings.slowModeEnabled and not conn.is_admin:
            remaining = self.moderation.slow_mode_remaining(ip, settings.slowModeSeconds, now=self._clock())
            if remaining > 0:
                await conn.send({"type": "slow-mode", "remainingSeconds": remaining})
                return
        text = truncate_to_max_words(raw_text, config.MAX_MESSAGE_WORDS)
        if not text:
            return
        await self.publish(user, text, ip)

        question = extract_question(text)
        if question and self.agent.is_configured():
            self._spawn(self._answer_cee(user, question))

    async def publish(self, user: str, text: str, ip: Optional[str], *, cee: bool = False) -> Dict[str, Any]:
        """Assign an id, audit, broadcast and mirror a message to the overlay."""
        entry = self.messages.append(user, text, ip)
        if ip:
            self.moderation.mark_message(ip, now=self._clock())
        record = entry.to_dict()
        record.pop("deleted", None)
        event: Dict[str, Any] = {"type": "message", "sessionCode": self.session.session_code, **record}
        if cee:
            event["ceeResponse"] = True
        self.event_log.write_chat(event)
        public = entry.to_dict()
        await self._broadcast_message(public)
        try:
            self.overlay.show_message(entry.public())
        except Exception:
            log.exception("Overlay show_message failed id=%s", entry.id)
        return public

    async def _answer_cee(self, user: str, question: str) -> None:
        history = self.messages.history()
        try:
            reply = await asyncio.to_thread(self.agent.process_request, user, question, history)
        except Exception:
            log.exception("Cee request failed for %s", user)
            reply = CEE_ERROR_TEXT
        text = truncate_to_max_words(reply, config.MAX_MESSAGE_WORDS) or CEE_ERROR_TEXT
        await self.publish(CEE_USER, text, None, cee=True)

    # Admin operations

    async def _on_admin_settings(self, conn: Connection, msg: Dict[str, Any]) -> None:
        patch = {k: v for k, v in msg.items() if k != "type"}
        changed = apply_settings_patch(self.session.settings, patch)
        settings = self.session.settings
        if "enableFeedbackForm" in changed and settings.enableFeedbackForm:
            cycle_id = self.moderation.start_feedback_cycle()
            self.event_log.open_feedback_cycle(self.session.session_code, cycle_id)
            log.info("Feedback cycle %s started", cycle_id)
        if any(key in changed for key in _AGENT_SETTING_KEYS):
            self.agent.update_settings(self._agent_settings())
        if "hideIp" in changed and settings.hideIp and not self.session.has_tunnels():
            self.request_tunnels()
        if changed:
            log.info("Settings updated by conn=%s: %s", conn.id, ", ".join(sorted(changed)))
            self.event_log.write_chat(
                {
                    "type": "settings-update",
                    "sessionCode": self.session.session_code,
                    "changed": sorted(k for k in changed if k != "ceeApiKey"),
                    "at": utc_now_iso(),
                }
            )
        snapshot = self.settings_snapshot()
        await self.broadcast_settings()
        try:
            self.overlay.update_settings(snapshot)
        except Exception:
            log.exception("Overlay update_settings failed")

    async def _on_admin_delete(self, conn: Connection, msg: Dict[str, Any]) -> None:
        entry = self.messages.mark_deleted(msg.get("msgId"))
        if entry is None:
            log.info("Delete ignored for msgId=%r", msg.get("msgId"))
            return
        await self.broadcast({"type": "message-deleted", "msgId": entry.id})
        try:
            self.overlay.delete_message(entry.id)
        except Exception:
            log.exception("Overlay delete_message failed id=%s", entry.id)
        self.event_log.write_chat(
            {
                "type": "message-deleted",
                "sessionCode": self.session.session_code,
                "msgId": entry.id,
                "user": entry.user,
                "text": entry.text,
                "ip": entry.ip,
                "deletedAt": utc_now_iso(),
            }
        )
        if entry.ip and self.moderation.record_deletion(entry.ip):
            count = self.moderation.deletion_count(entry.ip)
            log.warning("Auto-blocked ip=%s after %s deletions", entry.ip, count)
            self.event_log.write_chat(
                {
                    "type": "auto-block",
                    "sessionCode": self.session.session_code,
                    "ip": entry.ip,
                    "deletions": count,
                    "at": utc_now_iso(),
                }
            )
            await self._broadcast_blocked_ips()

    async def _broadcast_blocked_ips(self) -> None:
        await self.broadcast_admins({"type": "blocked-ips-update", "blockedIps": self.moderation.blocked_ips()})

    async def _on_admin_block(self, conn: Connection, msg: Dict[str, Any]) -> None:
        ip = str(msg.get("ip") or "").strip()
        ok = self.moderation.block(ip)
        await conn.send({"type": "admin-block-ip-result", "success": ok, "ip": ip})
        if not ok:
            return
        log.info("Blocked ip=%s", ip)
        self.event_log.write_chat(
            {
                "type": "ip-blocked",
                "sessionCode": self.session.session_code,
                "ip": ip,
                "reason": str(msg.get("reason") or ""),
                "at": utc_now_iso(),
            }
        )
        await self._broadcast_blocked_ips()

    async def _on_admin_unblock(self, conn: Connection, msg: Dict[str, Any]) -> None:
        ip = str(msg.get("ip") or "").strip()
        ok = self.moderation.unblock(ip)
        await conn.send({"type": "admin-unblock-ip-result", "success": ok, "ip": ip})
        if not ok:
            return
        log.info("Unblocked ip=%s", ip)
        self.event_log.write_chat(
            {"type": "ip-unblocked", "sessionCode": self.session.session_code, "ip": ip, "at": utc_now_iso()}
        )
        await self._broadcast_blocked_ips()

    async def _on_admin_toggle_mode(self, conn: Connection, msg: Dict[str, Any]) -> None:
        # The overlay listener broadcasts the resulting mode-state.
        self.overlay.toggle_mode()

    # Remote control

    async def _on_remote_start(self, conn: Connection, msg: Dict[str, Any]) -> None:
        if not self.remote_enabled:
            log.info("Remote control start refused (disabled): conn=%s", conn.id)
            await conn.send({"type": "remote-control-state", "active": False})
            return
        previous = self._remote_owner
        if previous is not None and previous is not conn:
            previous.remote_armed = False
        conn.remote_armed = True
        self._remote_owner = conn
        self.controller.arm()
        self.overlay.set_remote_control_mode(True)
        await self.broadcast_admins({"type": "remote-control-state", "active": True})

    async def _on_remote_end(self, conn: Connection, msg: Dict[str, Any]) -> None:
        await self._disarm_remote("admin request")

    async def _disarm_remote(self, reason: str) -> None:
        owner, self._remote_owner = self._remote_owner, None
        if owner is not None:
            owner.remote_armed = False
        if not self.controller.armed and owner is None:
            return
        self.controller.disarm()
        self.overlay.set_remote_control_mode(False)
        log.info("Remote control disarmed (%s)", reason)
        await self.broadcast_admins({"type": "remote-control-state", "active": False})

    async def _on_remote_gesture(self, conn: Connection, msg: Dict[str, Any]) -> None:
        if not (self.remote_enabled and self.controller.armed):
            return
        # Awaited so gestures from one socket apply in arrival order.
        await asyncio.to_thread(self.controller.dispatch, msg)

    # Host-side operations

    async def set_remote_enabled(self, enabled: bool) -> None:
        enabled = bool(enabled)
        if enabled and not self.controller.available and self.backend_factory is not None:
            try:
                backend = await asyncio.to_thread(self.backend_factory)
                self.controller.set_backend(backend)
            except Exception:
                log.exception("Remote input re-detection failed")
        self.remote_enabled = enabled
        self.session.settings.remoteEnabled = enabled
        if not enabled:
            await self._disarm_remote("remote disabled")
        log.info("Remote control %s", "enabled" if enabled else "disabled")
        await self.broadcast_admins({"type": "remote-enabled-status", "enabled": enabled})

    async def set_tunnel_urls(self, ws_url: Optional[str], http_url: Optional[str]) -> None:
        self.session.set_tunnel_urls(ws_url, http_url)
        await self.broadcast_settings()

    def request_tunnels(self) -> Optional[asyncio.Task]:
        """Start tunnel provisioning in the background; no-op when already pending."""
        if self.tunnel_requester is None or self._tunnel_pending:
            return None
        self._tunnel_pending = True
        log.info("Hide IP enabled, attempting to create tunnels")
        return self._spawn(self._provision_tunnels())

    async def _provision_tunnels(self) -> None:
        try:
            result = await asyncio.to_thread(self.tunnel_requester)
        except Exception:
            log.exception("Tunnel provisioning failed")
            result = None
        finally:
            self._tunnel_pending = False
        if result:
            await self.set_tunnel_urls(*result)

    async def shutdown(self) -> None:
        for conn in list(self._connections):
            conn.cancel_deadline()
        for task in list(self._tasks):
            task.cancel()
        self.controller.shutdown()
        self.event_log.close()
