"""Process-wide runtime context shared by the WebSocket and HTTP surfaces."""

from __future__ import annotations

import asyncio
from typing import Optional

from . import config
from .agent import CeeAgent
from .chat_log import EventLog
from .hub import ChatHub
from .messages import MessageStore
from .moderation import ModerationStore
from .overlay import OverlayBridge
from .remote.backend import build_backend
from .remote.controller import RemoteController
from .session import Session
from .tunnel import TunnelManager


session = Session(config.SESSION_CODE or None, config.ADMIN_PASSWORD or None)
moderation = ModerationStore()
messages = MessageStore()
event_log = EventLog()
overlay = OverlayBridge()
controller = RemoteController()
agent = CeeAgent()
tunnels = TunnelManager(session.ws_port, session.http_port)

hub = ChatHub(
    session,
    moderation=moderation,
    messages=messages,
    event_log=event_log,
    overlay=overlay,
    controller=controller,
    agent=agent,
    backend_factory=build_backend,
    tunnel_requester=tunnels.start,
)

running_loop: Optional[asyncio.AbstractEventLoop] = None
