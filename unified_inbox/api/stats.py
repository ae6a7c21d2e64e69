"""
Stats endpoint for analytics.
"""
from typing import Annotated

from fastapi import APIRouter, Depends

from unified_inbox.core.dependencies import get_store
from unified_inbox.core.logging import get_logger
from unified_inbox.schemas.message import PlatformCount, SenderCount, StatsResponse
from unified_inbox.storage.base import MessageStore

logger = get_logger(__name__)

router = APIRouter(tags=["Analytics"])


@router.get(
    "/stats",
    response_model=StatsResponse,
    summary="Get message statistics",
    description="Returns lightweight analytics about stored messages."
)
async def get_stats(
    store: Annotated[MessageStore, Depends(get_store)],
) -> StatsResponse:
    """
    Get message statistics including:

    - Total message and conversation counts
    - Message and conversation counts per platform
    - Top 10 senders by message count
    - First and last message timestamps
    """
    stats = await store.stats()

    logger.debug(
        "Generated stats",
        extra={
            "extra_data": {
                "total_messages": stats.total_messages,
                "senders_count": stats.senders_count,
            }
        }
    )

    return StatsResponse(
        total_messages=stats.total_messages,
        total_conversations=stats.total_conversations,
        senders_count=stats.senders_count,
        platforms=[
            PlatformCount(platform=platform, messages=messages, conversations=conversations)
            for platform, messages, conversations in stats.platforms
        ],
        messages_per_sender=[
            SenderCount(platform=platform, sender_id=sender_id, count=count)
            for platform, sender_id, count in stats.top_senders
        ],
        first_message_ts=stats.first_message_ts,
        last_message_ts=stats.last_message_ts,
    )
