"""Event WebSocket — relays host-key requests and server state changes to the UI."""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from agent_manager.services.events import broadcaster

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/events")
async def events_ws(ws: WebSocket):
    """Server sends: {"type": "...", "payload": {...}, "timestamp": <ms>}

    Client messages are ignored; reading only serves to notice the disconnect.
    """
    await ws.accept()
    queue = broadcaster.subscribe()
    logger.info("Events WS connected (%d subscriber(s))", broadcaster.subscriber_count)

    receiver = asyncio.create_task(ws.receive_text())
    try:
        while True:
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                await ws.send_json(getter.result())
            else:
                getter.cancel()
            if receiver in done:
                receiver.result()  # raises WebSocketDisconnect once the client is gone
                receiver = asyncio.create_task(ws.receive_text())
    except WebSocketDisconnect:
        logger.info("Events WS disconnected")
    finally:
        receiver.cancel()
        broadcaster.unsubscribe(queue)
