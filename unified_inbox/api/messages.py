"""
Messages endpoint for querying stored messages across platforms.
"""
from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from unified_inbox.core.dependencies import get_store
from unified_inbox.core.logging import get_logger
from unified_inbox.schemas.message import ErrorResponse, MessagesListResponse, Platform, UnifiedMessage
from unified_inbox.storage.base import MessageQuery, MessageStore

logger = get_logger(__name__)

router = APIRouter(tags=["Messages"])


@router.get(
    "/messages",
    response_model=MessagesListResponse,
    summary="List messages",
    description="Retrieve stored messages with pagination and filtering."
)
async def list_messages(
    store: Annotated[MessageStore, Depends(get_store)],
    limit: Annotated[int, Query(ge=1, le=100, description="Number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    platform: Annotated[Optional[Platform], Query(description="Filter by platform")] = None,
    conversation_id: Annotated[Optional[str], Query(description="Filter by conversation")] = None,
    sender_id: Annotated[Optional[str], Query(description="Filter by sender")] = None,
    since: Annotated[Optional[datetime], Query(description="Filter messages since timestamp (ISO-8601)")] = None,
    q: Annotated[Optional[str], Query(description="Case-insensitive text search")] = None,
) -> MessagesListResponse:
    """
    List messages with pagination and optional filters.

    - **platform**: Only messages from this platform
    - **conversation_id**: Only messages in this conversation
    - **sender_id**: Exact platform-scoped sender id
    - **since**: Messages with occurred_at >= given timestamp
    - **q**: Case-insensitive substring search in body and subject

    Ordered by occurred_at, then conversation and sequence number.
    """
    data, total = await store.list_messages(MessageQuery(
        platform=platform,
        conversation_id=conversation_id,
        sender_id=sender_id,
        since=since,
        q=q,
        limit=limit,
        offset=offset,
    ))

    logger.debug(
        "Listed messages",
        extra={
            "extra_data": {
                "total": total,
                "returned": len(data),
                "limit": limit,
                "offset": offset,
            }
        }
    )

    return MessagesListResponse(data=data, total=total, limit=limit, offset=offset)


@router.get(
    "/messages/{message_id}",
    response_model=UnifiedMessage,
    responses={404: {"model": ErrorResponse}},
    summary="Get message",
)
async def get_message(
    message_id: str,
    store: Annotated[MessageStore, Depends(get_store)],
) -> UnifiedMessage:
    message = await store.get_message(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="message not found")
    return message
