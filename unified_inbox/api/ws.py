"""
WebSocket endpoint pushing newly ingested messages to dashboard sessions.
"""
import asyncio
from typing import List, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from unified_inbox.core.logging import get_logger
from unified_inbox.ingestion.fanout import Subscription, SubscriptionClosed, item_payload
from unified_inbox.schemas.message import Platform

logger = get_logger(__name__)

router = APIRouter(tags=["Realtime"])

SEND_RETRY_DELAYS = (0.05, 0.2, 1.0)


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    """Send queued items in order; a failed send puts the item back at the head."""
    while True:
        item = await subscription.receive()
        for attempt, delay in enumerate((0.0,) + SEND_RETRY_DELAYS):
            if delay:
                await asyncio.sleep(delay)
            try:
                await websocket.send_json(item_payload(item))
                break
            except WebSocketDisconnect:
                subscription.requeue(item)
                raise
            except (RuntimeError, OSError) as exc:
                logger.warning(
                    "Transient send failure, retrying",
                    extra={"extra_data": {"subscription_id": subscription.id, "attempt": attempt, "error": str(exc)}},
                )
        else:
            # Connection is unusable; keep the item for at-least-once and stop
            subscription.requeue(item)
            return


async def _listen(websocket: WebSocket) -> None:
    """Consume client frames until the client goes away."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws")
async def subscribe(
    websocket: WebSocket,
    platform: Optional[List[Platform]] = Query(default=None),
    conversation_id: Optional[List[str]] = Query(default=None),
):
    """
    Stream messages for the given platforms and/or conversations.

    Frames are `{"type": "message", "message": {...}}` or
    `{"type": "gap", "conversations": [{"conversation_id", "after_sequence_number"}]}`;
    after a gap, re-fetch `/conversations/{id}/messages?after=N`.
    Messages can arrive more than once; de-duplicate on `message.id`.
    """
    hub = websocket.app.state.hub
    subscription = hub.subscribe(conversation_ids=conversation_id, platforms=platform)
    await websocket.accept()

    pump = asyncio.create_task(_pump(websocket, subscription))
    listen = asyncio.create_task(_listen(websocket))
    try:
        done, _ = await asyncio.wait({pump, listen}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, (WebSocketDisconnect, SubscriptionClosed)):
                logger.error(
                    "WebSocket session failed",
                    extra={"extra_data": {"subscription_id": subscription.id, "error": repr(exc)}},
                )
    finally:
        pump.cancel()
        listen.cancel()
        await asyncio.gather(pump, listen, return_exceptions=True)
        hub.unsubscribe(subscription)
