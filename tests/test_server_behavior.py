import asyncio
import logging
import sys
import unittest
from unittest.mock import patch

from chatoneverything import config, logging_config, server
from chatoneverything import context as ctx
from chatoneverything.hub import ChatHub
from chatoneverything.remote.backends.base import _BaseInputBackend, _NullBackend
from chatoneverything.remote.controller import RemoteController
from chatoneverything.session import Session


class _AvailableBackend(_BaseInputBackend):
    name = "ready"
    available = True


class ServerBehaviorTests(unittest.TestCase):
    def test_sanitize_url_redacts_session_code(self):
        """Validate scenario: http access logs never include the session code."""
        out = server._sanitize_url_for_log("http://192.168.1.5:8766/admin?s=ABC234&x=1")
        self.assertEqual(out, "/admin?s=%2A%2A%2A&x=1")
        self.assertEqual(server._sanitize_url_for_log("http://h/css/style.css"), "/css/style.css")

    def test_uvicorn_config_is_quiet_when_logging_disabled(self):
        """Validate scenario: uvicorn log level drops to critical when logging is off."""
        old = config.LOG_ENABLED
        try:
            config.LOG_ENABLED = False
            cfg = server._uvicorn_config(server.http_app, 9001)
        finally:
            config.LOG_ENABLED = old
        self.assertEqual(cfg.port, 9001)
        self.assertFalse(cfg.access_log)

    def test_setup_input_flag_installs_rule_and_exits(self):
        """Validate scenario: --setup-input installs the uinput rule instead of serving."""
        with (
            patch.object(sys, "argv", ["chatoneverything", "--setup-input"]),
            patch("chatoneverything.remote.setup.install_udev_rule", return_value=True) as install,
            patch.object(server.asyncio, "run") as run,
        ):
            with self.assertRaises(SystemExit) as exited:
                server.run()
        self.assertEqual(exited.exception.code, 0)
        install.assert_called_once_with()
        run.assert_not_called()

    def test_prepare_remote_input_installs_backend(self):
        """Validate scenario: detected backend is handed to the shared controller."""
        old_backend = ctx.controller.backend
        backend = _AvailableBackend()
        try:
            with patch.object(server, "build_backend", return_value=backend):
                server._prepare_remote_input()
            self.assertIs(ctx.controller.backend, backend)
        finally:
            ctx.controller.set_backend(old_backend)

    def test_logging_disabled_uses_null_handler(self):
        """Validate scenario: disabled logging installs only a null handler."""
        old = config.LOG_ENABLED
        try:
            config.LOG_ENABLED = False
            logger = logging_config.reload_logging()
            self.assertTrue(all(isinstance(h, logging.NullHandler) for h in logger.handlers))
            self.assertFalse(logger.propagate)
        finally:
            config.LOG_ENABLED = old
            logging_config.reload_logging()


class HubHostOperationsBehaviorTests(unittest.TestCase):
    def _hub(self, factory=None):
        session = Session("ABC234", "adminpw", ws_port=8765, local_ip_fn=lambda: "192.168.1.5")
        return ChatHub(
            session,
            controller=RemoteController(_NullBackend()),
            backend_factory=factory,
            remote_enabled=False,
            close_delay_s=0.0,
        )

    def test_enabling_remote_redetects_backend(self):
        """Validate scenario: enabling remote control retries backend detection."""
        calls = []

        def factory():
            calls.append(1)
            return _AvailableBackend()

        hub = self._hub(factory)
        asyncio.run(hub.set_remote_enabled(True))
        self.assertEqual(calls, [1])
        self.assertTrue(hub.controller.available)
        self.assertTrue(hub.settings_snapshot()["remoteEnabled"])
        self.assertTrue(hub.session_info()["remoteEnabled"])

    def test_disabling_remote_disarms_controller(self):
        """Validate scenario: disabling remote control disarms an armed controller."""
        hub = self._hub()
        asyncio.run(hub.set_remote_enabled(True))
        hub.controller.arm()
        asyncio.run(hub.set_remote_enabled(False))
        self.assertFalse(hub.controller.armed)
        self.assertFalse(hub.remote_enabled)

    def test_tunnel_request_is_single_flight(self):
        """Validate scenario: tunnel provisioning runs once while pending."""
        calls = []

        def requester():
            calls.append(1)
            return "wss://ws-t.trycloudflare.com", "https://web-t.trycloudflare.com"

        session = Session("ABC234", "adminpw", ws_port=8765, local_ip_fn=lambda: "192.168.1.5")
        hub = ChatHub(session, tunnel_requester=requester, close_delay_s=0.0)

        async def scenario():
            first = hub.request_tunnels()
            second = hub.request_tunnels()
            await first
            return second

        self.assertIsNone(asyncio.run(scenario()))
        self.assertEqual(calls, [1])
        self.assertTrue(session.has_tunnels())


if __name__ == "__main__":
    unittest.main()
