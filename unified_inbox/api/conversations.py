"""
Conversation listing and history endpoints.

The history endpoint is how subscribers recover after a gap marker.
"""
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from unified_inbox.core.config import Settings
from unified_inbox.core.dependencies import get_app_settings, get_store
from unified_inbox.core.logging import get_logger
from unified_inbox.schemas.message import (
    Conversation,
    ConversationsListResponse,
    ErrorResponse,
    HistoryResponse,
    Platform,
)
from unified_inbox.storage.base import MessageStore

logger = get_logger(__name__)

router = APIRouter(prefix="/conversations", tags=["Conversations"])


@router.get(
    "",
    response_model=ConversationsListResponse,
    summary="List conversations",
    description="Conversations ordered by most recent activity."
)
async def list_conversations(
    store: Annotated[MessageStore, Depends(get_store)],
    platform: Annotated[Optional[Platform], Query(description="Filter by platform")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ConversationsListResponse:
    data, total = await store.list_conversations(platform=platform, limit=limit, offset=offset)
    return ConversationsListResponse(data=data, total=total, limit=limit, offset=offset)


@router.get(
    "/{conversation_id}",
    response_model=Conversation,
    responses={404: {"model": ErrorResponse}},
    summary="Get conversation",
)
async def get_conversation(
    conversation_id: str,
    store: Annotated[MessageStore, Depends(get_store)],
) -> Conversation:
    conversation = await store.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="conversation not found")
    return conversation


@router.get(
    "/{conversation_id}/messages",
    response_model=HistoryResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Fetch conversation history",
    description="Messages with sequence_number greater than `after`, in sequence order."
)
async def fetch_recent_messages(
    conversation_id: str,
    store: Annotated[MessageStore, Depends(get_store)],
    settings: Annotated[Settings, Depends(get_app_settings)],
    after: Annotated[int, Query(ge=0, description="Last sequence number already seen")] = 0,
    limit: Annotated[int, Query(ge=1, description="Maximum number of messages")] = 50,
) -> HistoryResponse:
    conversation = await store.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="conversation not found")

    limit = min(limit, settings.history_max_limit)
    data = await store.fetch_recent_messages(conversation_id, after, limit)

    logger.debug(
        "Fetched conversation history",
        extra={"extra_data": {"conversation_id": conversation_id, "after": after, "returned": len(data)}},
    )

    return HistoryResponse(
        conversation_id=conversation_id,
        after_sequence_number=after,
        last_sequence_number=conversation.last_sequence_number,
        data=data,
    )
