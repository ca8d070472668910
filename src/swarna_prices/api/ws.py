"""WebSocket endpoint for live price updates."""

from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket

logger = logging.getLogger(__name__)

ws_router = APIRouter()


@ws_router.websocket("/ws/prices")
async def price_stream(websocket: WebSocket) -> None:
    """Client frames: subscribe / unsubscribe / ping. Server frames: priceUpdate / pong / error."""
    broadcaster = websocket.app.state.app_state.broadcaster
    await websocket.accept()
    sub = await broadcaster.connect(websocket)
    if sub is None:
        return
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            text = message.get("text")
            if text is None:
                logger.warning("Client %s sent a binary frame; ignored", sub.id)
                continue
            await broadcaster.handle_message(sub, text)
    except RuntimeError as e:
        # receiving on a socket the server already closed (idle reap)
        logger.debug("WebSocket %s receive ended: %s", sub.id, e)
    finally:
        await broadcaster.disconnect(sub)
