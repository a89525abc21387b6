"""WebSocket endpoint — real-time chat delivery to frontend clients.

Learn: Each client connects to /ws/messages (optionally ?author=NAME to
only see one author). The handler:
1. Asks the shared engine for its own async iterator on MESSAGE_SEND
2. Forwards every message to the WebSocket client
3. Cancels the iterator when the client goes away, which releases the
   Redis subscription once the last client on the channel is gone

This is a long-lived connection — one per browser tab.
"""

import asyncio
import json
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from chatrelay.api.messages import MESSAGE_SEND
from chatrelay.realtime.filters import with_filter
from chatrelay.realtime.pubsub import RedisPubSub, get_pubsub

logger = structlog.get_logger()
router = APIRouter()


def _by_author(payload: Any, args: dict, context: Any, info: Any) -> bool:
    return payload["sendMessage"]["author"] == args["author"]


def message_stream(pubsub: RedisPubSub, author: Optional[str] = None):
    """Iterator over published chat messages, optionally one author only."""
    if author is None:
        return pubsub.async_iterator(MESSAGE_SEND)
    resolver = with_filter(lambda: pubsub.async_iterator(MESSAGE_SEND), _by_author)
    return resolver(None, {"author": author})


@router.websocket("/ws/messages")
async def messages_websocket(
    websocket: WebSocket,
    author: Optional[str] = None,
    pubsub: RedisPubSub = Depends(get_pubsub),
):
    """WebSocket endpoint for real-time chat messages.

    Learn: Two concurrent tasks run:
    1. Message forwarder — pulls from the iterator, sends to WebSocket
    2. Client listener — reads from WebSocket (ping/pong keepalive)

    When either side finishes, the other is cancelled.
    """
    await websocket.accept()
    stream = message_stream(pubsub, author)
    logger.info("ws.connected", author_filter=author)

    async def message_forwarder():
        """Forward each message's sendMessage body to the client."""
        async for payload in stream:
            try:
                message = payload["sendMessage"]
            except (KeyError, TypeError):
                logger.warning("ws.malformed_payload", payload=repr(payload)[:200])
                continue
            await websocket.send_text(json.dumps(message))

    async def client_listener():
        """Handle incoming WebSocket messages."""
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if isinstance(msg, dict) and msg.get("type") == "ping":
                    await websocket.send_text(json.dumps({"type": "pong"}))
        except WebSocketDisconnect:
            pass

    forward_task = asyncio.create_task(message_forwarder())
    client_task = asyncio.create_task(client_listener())

    try:
        done, pending = await asyncio.wait(
            [forward_task, client_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        for task in done:
            if task.exception() is not None:
                logger.warning("ws.task_failed", error=str(task.exception()))
    finally:
        await stream.cancel()
        logger.info("ws.disconnected", author_filter=author)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
