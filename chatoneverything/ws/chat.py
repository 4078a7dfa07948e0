from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .. import context as ctx
from ..logging_config import log


router = APIRouter()


@router.websocket("/")
async def websocket_chat(websocket: WebSocket):
    """Serve one chat socket; admission and dispatch live in the hub."""
    hub = ctx.hub
    await websocket.accept()
    conn = await hub.connect(websocket)
    try:
        while not conn.closed:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                log.debug("WS disconnect event: conn=%s code=%s", conn.id, message.get("code"))
                break
            # Binary frames carry the same JSON as text frames.
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            await hub.handle_frame(conn, raw)
    except WebSocketDisconnect as e:
        log.debug("WS disconnect event: conn=%s code=%s", conn.id, getattr(e, "code", None))
    except Exception:
        log.exception("WS error: conn=%s", conn.id)
    finally:
        await hub.disconnect(conn)
