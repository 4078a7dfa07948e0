import asyncio
import unittest

from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from chatoneverything import config
from chatoneverything import context as ctx
from chatoneverything.hub import ChatHub
from chatoneverything.remote.backends.base import _BaseInputBackend
from chatoneverything.remote.controller import RemoteController
from chatoneverything.session import Session
from chatoneverything.ws.chat import router as ws_router


PARTICIPANT_IP = "10.0.0.5"
ADMIN_IP = "10.0.0.9"


class _FakeInputBackend(_BaseInputBackend):
    name = "fake"
    available = True

    def __init__(self):
        """Initialize _FakeInputBackend state and collaborator references."""
        self.calls = []

    def click(self, button: str = "left") -> bool:
        self.calls.append(("click", button))
        return True

    def move_rel(self, dx: int, dy: int) -> bool:
        self.calls.append(("move", dx, dy))
        return True


class _RecordingEventLog:
    def __init__(self):
        self.chat = []
        self.feedback = []
        self.cycles = []
        self.closed = False

    def open_chat_session(self, session_code):
        return None

    def open_feedback_cycle(self, session_code, cycle_id):
        self.cycles.append(cycle_id)
        return None

    def write_chat(self, event):
        self.chat.append(dict(event))

    def write_feedback(self, event):
        self.feedback.append(dict(event))

    def close(self):
        self.closed = True


class _FakeAgent:
    def __init__(self, reply="It is a terminal.", error=None):
        self.reply = reply
        self.error = error
        self.requests = []

    def update_settings(self, settings):
        return None

    def is_configured(self):
        return True

    def process_request(self, user, question, history):
        self.requests.append((user, question, list(history)))
        if self.error is not None:
            raise self.error
        return self.reply


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class WsBehaviorTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        """Prepare shared fixtures for the test class."""
        cls._old_hub = ctx.hub
        cls._old_trusted_header = config.TRUSTED_PROXY_HEADER
        cls._old_trust_xff = config.TRUST_FORWARDED_FOR
        config.TRUSTED_PROXY_HEADER = "cf-connecting-ip"
        config.TRUST_FORWARDED_FOR = True

        app = FastAPI()
        app.include_router(ws_router)
        cls.app = app

    @classmethod
    def tearDownClass(cls):
        """Clean up shared fixtures for the test class."""
        ctx.hub = cls._old_hub
        config.TRUSTED_PROXY_HEADER = cls._old_trusted_header
        config.TRUST_FORWARDED_FOR = cls._old_trust_xff

    def setUp(self):
        """Prepare test preconditions for each test case."""
        self._make_hub()

    def _make_hub(self, *, remote_enabled=False, agent=None, tunnel_requester=None, join_timeout_s=30.0):
        self.clock = _Clock()
        self.backend = _FakeInputBackend()
        self.events = _RecordingEventLog()
        self.session = Session("ABC234", "adminpw", ws_port=8765, local_ip_fn=lambda: "192.168.1.5")
        kwargs = {}
        if agent is not None:
            kwargs["agent"] = agent
        self.hub = ChatHub(
            self.session,
            event_log=self.events,
            controller=RemoteController(self.backend, move_interval_s=0.0),
            tunnel_requester=tunnel_requester,
            remote_enabled=remote_enabled,
            join_timeout_s=join_timeout_s,
            close_delay_s=0.0,
            clock=self.clock,
            **kwargs,
        )
        ctx.hub = self.hub
        return self.hub

    @staticmethod
    def _connect(client, ip):
        return client.websocket_connect("/", headers={"x-forwarded-for": ip})

    @staticmethod
    def _join(ws, code="ABC234"):
        ws.send_json({"type": "join", "sessionCode": code})
        result = ws.receive_json()
        sync = ws.receive_json()
        return result, sync

    @staticmethod
    def _auth(ws, password="adminpw"):
        ws.send_json({"type": "admin-auth", "password": password})
        result = ws.receive_json()
        mode = ws.receive_json()
        remote = ws.receive_json()
        return result, mode, remote

    def test_join_success_then_repeat_join_is_rejected(self):
        """Validate scenario: valid join gets result and settings; a second join errors."""
        with TestClient(self.app) as client:
            with self._connect(client, PARTICIPANT_IP) as ws:
                result, sync = self._join(ws, code=" abc234 ")
                self.assertTrue(result["success"])
                self.assertEqual(result["code"], "ABC234")
                self.assertEqual(result["mobileUrl"], "http://192.168.1.5:8766?s=ABC234")
                self.assertEqual(result["wsUrl"], "ws://192.168.1.5:8765")
                self.assertNotIn("ceeApiKey", result["settings"])
                self.assertEqual(sync["type"], "settings-sync")

                ws.send_json({"type": "join", "sessionCode": "ABC234"})
                self.assertEqual(ws.receive_json(), {"type": "error", "code": "already_validated"})

    def test_invalid_session_code_closes_socket(self):
        """Validate scenario: wrong session code is answered and then closed with 1008."""
        with TestClient(self.app) as client:
            with self._connect(client, PARTICIPANT_IP) as ws:
                ws.send_json({"type": "join", "sessionCode": "ZZZZZZ"})
                self.assertEqual(
                    ws.receive_json(), {"type": "join-result", "success": False, "error": "invalid_session"}
                )
                with self.assertRaises(WebSocketDisconnect) as closed:
                    ws.receive_json()
                self.assertEqual(closed.exception.code, 1008)

    def test_wrong_admin_password_closes_socket(self):
        """Validate scenario: wrong admin password is answered and then closed with 1008."""
        with TestClient(self.app) as client:
            with self._connect(client, ADMIN_IP) as ws:
                ws.send_json({"type": "admin-auth", "password": "nope"})
                self.assertEqual(ws.receive_json(), {"type": "admin-auth-result", "success": False})
                with self.assertRaises(WebSocketDisconnect) as closed:
                    ws.receive_json()
                self.assertEqual(closed.exception.code, 1008)

    def test_join_timeout_closes_idle_socket(self):
        """Validate scenario: sockets that never join are closed after the deadline."""
        self._make_hub(join_timeout_s=0.05)
        with TestClient(self.app) as client:
            with self._connect(client, PARTICIPANT_IP) as ws:
                with self.assertRaises(WebSocketDisconnect) as closed:
                    ws.receive_json()
                self.assertEqual(closed.exception.code, 1008)

    def test_unvalidated_socket_gets_error_and_stays_open(self):
        """Validate scenario: messages before join are refused without closing the socket."""
        with TestClient(self.app) as client:
            with self._connect(client, PARTICIPANT_IP) as ws:
                ws.send_text("not json")
                ws.send_json({"type": "ping"})
                ws.send_json({"type": "message", "user": "ann", "text": "hi"})
                self.assertEqual(ws.receive_json(), {"type": "error", "code": "not_validated"})
                result, _sync = self._join(ws)
                self.assertTrue(result["success"])

    def test_admin_auth_sends_state_frames(self):
        """Validate scenario: admin auth returns settings, mode and remote status."""
        with TestClient(self.app) as client:
            with self._connect(client, ADMIN_IP) as admin:
                result, mode, remote = self._auth(admin)
                self.assertTrue(result["success"])
                self.assertEqual(result["blockedIps"], [])
                self.assertEqual(result["adminUrl"], "http://192.168.1.5:8766/admin?s=ABC234")
                self.assertEqual(mode, {"type": "mode-state", "mode": "active"})
                self.assertEqual(remote, {"type": "remote-enabled-status", "enabled": False})

    def test_message_broadcast_shows_ip_only_to_admins(self):
        """Validate scenario: broadcast messages carry the origin ip for admins only."""
        with TestClient(self.app) as client:
            with self._connect(client, ADMIN_IP) as admin, self._connect(client, PARTICIPANT_IP) as ws:
                self._auth(admin)
                self._join(ws)
                long_text = " ".join(f"w{i}" for i in range(60))
                ws.send_json({"type": "message", "user": "  Ann   Lee ", "text": long_text})

                public = ws.receive_json()
                private = admin.receive_json()
                self.assertEqual(public["type"], "message")
                self.assertEqual(public["user"], "Ann Lee")
                self.assertEqual(public["id"], 1)
                self.assertEqual(len(public["text"].split(" ")), config.MAX_MESSAGE_WORDS)
                self.assertNotIn("ip", public)
                self.assertEqual(private["ip"], PARTICIPANT_IP)
                self.assertEqual(private["id"], public["id"])

        audit = [e for e in self.events.chat if e["type"] == "message"]
        self.assertEqual(audit[0]["ip"], PARTICIPANT_IP)
        self.assertEqual(audit[0]["sessionCode"], "ABC234")

    def test_binary_frame_is_handled_like_text(self):
        """Validate scenario: a binary JSON frame keeps the validated socket open and is dispatched."""
        with TestClient(self.app) as client:
            with self._connect(client, PARTICIPANT_IP) as ws:
                self._join(ws)
                ws.send_bytes(b'{"type":"ping"}')
                ws.send_bytes(b"\xff\xfe")
                ws.send_bytes(b'{"type":"message","user":"ann","text":"from bytes"}')
                first = ws.receive_json()
                self.assertEqual(first["type"], "message")
                self.assertEqual(first["text"], "from bytes")

                ws.send_json({"type": "message", "user": "ann", "text": "from text"})
                second = ws.receive_json()
                self.assertEqual(second["text"], "from text")
                self.assertEqual(len(self.hub.connections), 1)

    def test_blank_message_is_not_stored_or_broadcast(self):
        """Validate scenario: a message with zero words is dropped and consumes no id."""
        with TestClient(self.app) as client:
            with self._connect(client, PARTICIPANT_IP) as ws:
                self._join(ws)
                ws.send_json({"type": "message", "user": "ann", "text": "   \n\t "})
                ws.send_json({"type": "message", "user": "ann", "text": "real words"})
                received = ws.receive_json()
                self.assertEqual(received["type"], "message")
                self.assertEqual(received["id"], 1)
                self.assertEqual(received["text"], "real words")

        audit = [e for e in self.events.chat if e["type"] == "message"]
        self.assertEqual(len(audit), 1)

    def test_slow_mode_limits_participants_not_admins(self):
        """Validate scenario: slow mode rejects fast repeats from participants only."""
        with TestClient(self.app) as client:
            with self._connect(client, ADMIN_IP) as admin, self._connect(client, PARTICIPANT_IP) as ws:
                self._auth(admin)
                self._join(ws)
                admin.send_json({"type": "admin-settings", "slowModeEnabled": True, "slowModeSeconds": 5})
                self.assertTrue(admin.receive_json()["settings"]["slowModeEnabled"])
                self.assertEqual(ws.receive_json()["type"], "settings-sync")

                ws.send_json({"type": "message", "user": "ann", "text": "one"})
                ws.receive_json()
                admin.receive_json()
                ws.send_json({"type": "message", "user": "ann", "text": "two"})
                self.assertEqual(ws.receive_json(), {"type": "slow-mode", "remainingSeconds": 5})

                admin.send_json({"type": "message", "user": "host", "text": "a"})
                admin.send_json({"type": "message", "user": "host", "text": "b"})
                self.assertEqual(admin.receive_json()["text"], "a")
                self.assertEqual(admin.receive_json()["text"], "b")
                self.assertEqual(ws.receive_json()["text"], "a")
                self.assertEqual(ws.receive_json()["text"], "b")

                self.clock.now += 5
                ws.send_json({"type": "message", "user": "ann", "text": "three"})
                self.assertEqual(ws.receive_json()["text"], "three")

    def test_two_deletions_auto_block_sender(self):
        """Validate scenario: second admin deletion blocks the sender automatically."""
        with TestClient(self.app) as client:
            with self._connect(client, ADMIN_IP) as admin, self._connect(client, PARTICIPANT_IP) as ws:
                self._auth(admin)
                self._join(ws)
                for text in ("spam1", "spam2"):
                    ws.send_json({"type": "message", "user": "troll", "text": text})
                    ws.receive_json()
                    admin.receive_json()

                admin.send_json({"type": "admin-delete-msg", "msgId": 1})
                self.assertEqual(ws.receive_json(), {"type": "message-deleted", "msgId": 1})
                self.assertEqual(admin.receive_json(), {"type": "message-deleted", "msgId": 1})

                admin.send_json({"type": "admin-delete-msg", "msgId": 1})
                admin.send_json({"type": "admin-delete-msg", "msgId": 2})
                self.assertEqual(ws.receive_json(), {"type": "message-deleted", "msgId": 2})
                self.assertEqual(admin.receive_json(), {"type": "message-deleted", "msgId": 2})
                self.assertEqual(
                    admin.receive_json(), {"type": "blocked-ips-update", "blockedIps": [PARTICIPANT_IP]}
                )

                ws.send_json({"type": "message", "user": "troll", "text": "again"})
                self.assertEqual(ws.receive_json(), {"type": "blocked"})

        kinds = [e["type"] for e in self.events.chat]
        self.assertEqual(kinds.count("message-deleted"), 2)
        self.assertIn("auto-block", kinds)

    def test_block_and_unblock_ip(self):
        """Validate scenario: manual block and unblock reply and update admins."""
        with TestClient(self.app) as client:
            with self._connect(client, ADMIN_IP) as admin:
                self._auth(admin)
                admin.send_json({"type": "admin-block-ip", "ip": PARTICIPANT_IP, "reason": "spam"})
                self.assertEqual(
                    admin.receive_json(), {"type": "admin-block-ip-result", "success": True, "ip": PARTICIPANT_IP}
                )
                self.assertEqual(
                    admin.receive_json(), {"type": "blocked-ips-update", "blockedIps": [PARTICIPANT_IP]}
                )
                admin.send_json({"type": "admin-block-ip", "ip": PARTICIPANT_IP})
                self.assertFalse(admin.receive_json()["success"])
                admin.send_json({"type": "admin-unblock-ip", "ip": PARTICIPANT_IP})
                self.assertTrue(admin.receive_json()["success"])
                self.assertEqual(admin.receive_json(), {"type": "blocked-ips-update", "blockedIps": []})

        blocked = [e for e in self.events.chat if e["type"] == "ip-blocked"]
        self.assertEqual(blocked[0]["reason"], "spam")

    def test_participant_admin_frames_are_ignored(self):
        """Validate scenario: admin-only frames from participants change nothing."""
        with TestClient(self.app) as client:
            with self._connect(client, PARTICIPANT_IP) as ws:
                self._join(ws)
                ws.send_json({"type": "admin-block-ip", "ip": "10.0.0.77"})
                ws.send_json({"type": "admin-settings", "maxMessages": 30})
                ws.send_json({"type": "message", "user": "ann", "text": "still here"})
                self.assertEqual(ws.receive_json()["text"], "still here")
        self.assertEqual(self.hub.moderation.blocked_ips(), [])
        self.assertEqual(self.session.settings.maxMessages, 10)

    def test_settings_broadcast_hides_api_key_and_starts_feedback_cycle(self):
        """Validate scenario: settings sync hides the api key and enabling feedback opens a cycle."""
        with TestClient(self.app) as client:
            with self._connect(client, ADMIN_IP) as admin, self._connect(client, PARTICIPANT_IP) as ws:
                self._auth(admin)
                self._join(ws)
                admin.send_json(
                    {"type": "admin-settings", "maxMessages": 20, "ceeApiKey": "sk-secret", "enableFeedbackForm": True}
                )
                sync = ws.receive_json()
                admin.receive_json()
                self.assertEqual(sync["settings"]["maxMessages"], 20)
                self.assertNotIn("ceeApiKey", sync["settings"])
                self.assertTrue(sync["settings"]["ceeApiKeySet"])
                self.assertEqual(sync["settings"]["feedbackCycleId"], 1)

        self.assertEqual(self.events.cycles, [1])
        update = [e for e in self.events.chat if e["type"] == "settings-update"][0]
        self.assertNotIn("ceeApiKey", update["changed"])

    def test_hide_ip_provisions_tunnels_and_resyncs(self):
        """Validate scenario: hiding the ip starts tunnels and re-broadcasts tunnel urls."""
        calls = []

        def requester():
            calls.append(1)
            return "wss://ws-t.trycloudflare.com", "https://web-t.trycloudflare.com"

        self._make_hub(tunnel_requester=requester)
        with TestClient(self.app) as client:
            with self._connect(client, ADMIN_IP) as admin:
                self._auth(admin)
                admin.send_json({"type": "admin-settings", "hideIp": True})
                first = admin.receive_json()
                second = admin.receive_json()
                self.assertEqual(first["type"], "settings-sync")
                self.assertEqual(second["wsUrl"], "wss://ws-t.trycloudflare.com")
                self.assertEqual(second["mobileUrl"], "https://web-t.trycloudflare.com?s=ABC234")
        self.assertEqual(calls, [1])

    def test_toggle_mode_notifies_admins(self):
        """Validate scenario: overlay mode toggle is pushed to admins."""
        with TestClient(self.app) as client:
            with self._connect(client, ADMIN_IP) as admin:
                self._auth(admin)
                admin.send_json({"type": "admin-toggle-mode"})
                self.assertEqual(admin.receive_json(), {"type": "mode-state", "mode": "passive"})

    def test_cee_mention_ignored_when_agent_disabled(self):
        """Validate scenario: @cee mentions get no reply while the agent is disabled."""
        with TestClient(self.app) as client:
            with self._connect(client, PARTICIPANT_IP) as ws:
                self._join(ws)
                ws.send_json({"type": "message", "user": "ann", "text": "@cee what is this?"})
                ws.send_json({"type": "message", "user": "bob", "text": "next"})
                self.assertEqual(ws.receive_json()["user"], "ann")
                self.assertEqual(ws.receive_json()["text"], "next")

    def test_cee_reply_is_published(self):
        """Validate scenario: a configured agent answers @cee mentions as Cee."""
        agent = _FakeAgent()
        self._make_hub(agent=agent)
        with TestClient(self.app) as client:
            with self._connect(client, PARTICIPANT_IP) as ws:
                self._join(ws)
                ws.send_json({"type": "message", "user": "ann", "text": "hey @cee what is this?"})
                self.assertEqual(ws.receive_json()["user"], "ann")
                reply = ws.receive_json()
                self.assertEqual(reply["user"], "Cee")
                self.assertEqual(reply["text"], "It is a terminal.")
        self.assertEqual(agent.requests[0][1], "what is this?")
        cee_events = [e for e in self.events.chat if e.get("ceeResponse")]
        self.assertEqual(cee_events[0]["user"], "Cee")

    def test_cee_failure_publishes_error_text(self):
        """Validate scenario: agent failures publish the fixed apology."""
        self._make_hub(agent=_FakeAgent(error=RuntimeError("quota")))
        with TestClient(self.app) as client:
            with self._connect(client, PARTICIPANT_IP) as ws:
                self._join(ws)
                ws.send_json({"type": "message", "user": "ann", "text": "@cee help"})
                ws.receive_json()
                self.assertEqual(ws.receive_json()["text"], "Sorry, I encountered an error.")

    def test_remote_start_refused_while_disabled(self):
        """Validate scenario: remote control cannot start while disabled."""
        with TestClient(self.app) as client:
            with self._connect(client, ADMIN_IP) as admin:
                self._auth(admin)
                admin.send_json({"type": "remote-control-start"})
                self.assertEqual(admin.receive_json(), {"type": "remote-control-state", "active": False})
                admin.send_json({"type": "remote-mouse-click", "button": "left"})
                admin.send_json({"type": "admin-unblock-ip", "ip": "10.9.9.9"})
                self.assertFalse(admin.receive_json()["success"])
        self.assertEqual(self.backend.calls, [])

    def test_remote_gestures_forwarded_while_armed(self):
        """Validate scenario: gestures reach the backend only between start and end."""
        self._make_hub(remote_enabled=True)
        with TestClient(self.app) as client:
            with self._connect(client, ADMIN_IP) as admin, self._connect(client, PARTICIPANT_IP) as ws:
                self._auth(admin)
                self._join(ws)
                ws.send_json({"type": "remote-mouse-click", "button": "left"})

                admin.send_json({"type": "remote-control-start"})
                self.assertEqual(admin.receive_json(), {"type": "remote-control-state", "active": True})
                self.assertTrue(self.hub.overlay.passthrough)
                admin.send_json({"type": "remote-mouse-move", "deltaX": 4, "deltaY": -2})
                admin.send_json({"type": "remote-mouse-click", "button": "right"})
                admin.send_json({"type": "remote-control-end"})
                self.assertEqual(admin.receive_json(), {"type": "remote-control-state", "active": False})

                admin.send_json({"type": "remote-mouse-click", "button": "left"})
                admin.send_json({"type": "admin-unblock-ip", "ip": "10.9.9.9"})
                self.assertFalse(admin.receive_json()["success"])

        self.assertEqual(self.backend.calls, [("move", 4, -2), ("click", "right")])
        self.assertFalse(self.hub.overlay.passthrough)

    def test_owner_disconnect_disarms_remote(self):
        """Validate scenario: the arming admin disconnecting disarms remote control."""
        self._make_hub(remote_enabled=True)
        with TestClient(self.app) as client:
            with self._connect(client, ADMIN_IP) as watcher:
                self._auth(watcher)
                with self._connect(client, ADMIN_IP) as owner:
                    self._auth(owner)
                    owner.send_json({"type": "remote-control-start"})
                    owner.receive_json()
                    watcher.receive_json()
                    self.assertTrue(self.hub.controller.armed)
                self.assertEqual(watcher.receive_json(), {"type": "remote-control-state", "active": False})
                self.assertFalse(self.hub.controller.armed)

    def test_shutdown_closes_event_log(self):
        """Validate scenario: hub shutdown releases the controller and event log."""
        asyncio.run(self.hub.shutdown())
        self.assertTrue(self.events.closed)


if __name__ == "__main__":
    unittest.main()
