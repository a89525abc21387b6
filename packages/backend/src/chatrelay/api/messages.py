"""Chat message endpoints.

Learn: Sending a message is just a publish. Nothing is stored; whoever has
a WebSocket open on /ws/messages at that moment gets it, everyone else
doesn't (Redis pub/sub is at-most-once). GET /messages only returns the
seed greeting so a fresh client has something to render.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException
from redis.exceptions import RedisError

from chatrelay.realtime.pubsub import RedisPubSub, get_pubsub
from chatrelay.schemas.message import MessageRead, MessageSend, SendResult

logger = structlog.get_logger()
router = APIRouter()

MESSAGE_SEND = "MESSAGE_SEND"

WELCOME_MESSAGES = [
    MessageRead(content="welcome to test subscriptions messenger", author="system"),
]


@router.get("/messages", response_model=list[MessageRead])
async def list_messages():
    return WELCOME_MESSAGES


@router.post("/messages", response_model=SendResult)
async def send_message(body: MessageSend, pubsub: RedisPubSub = Depends(get_pubsub)):
    """Broadcast a chat message to every connected subscriber."""
    try:
        receivers = await pubsub.publish(MESSAGE_SEND, {"sendMessage": body.model_dump()})
    except RedisError as e:
        logger.warning("messages.publish_failed", error=str(e))
        raise HTTPException(status_code=503, detail="Message broker unavailable")

    logger.info("messages.sent", author=body.author, receivers=receivers)
    return SendResult(sent=True)
