"""
WebSocket hub — one bidirectional channel per console or player device.

URL: /ws

Connection flow:
  1. Accept → allocate a connection id (the channel is unbound until it
     sends CREATE_GAME or JOIN_GAME / REJOIN_GAME)
  2. Message loop: every text frame goes to the MessageRouter
  3. On close or error: drop the channel and let the router clean up
     whatever it was bound to (host abandonment timer, player buzz, ...)

Game state never depends on which socket a message arrived on beyond
the binding the router keeps for it.
"""
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    context = ws.app.state.context
    message_router = ws.app.state.message_router

    await ws.accept()
    conn_id = context.connections.register(ws)
    logger.info("Connection %s opened (%d open)", conn_id, context.connections.count())

    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            # Binary frames are decoded as UTF-8 JSON like text frames
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            await message_router.handle_raw(conn_id, raw)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Connection %s failed", conn_id)
    finally:
        await message_router.handle_disconnect(conn_id)
        logger.info("Connection %s closed (%d open)", conn_id, context.connections.count())
