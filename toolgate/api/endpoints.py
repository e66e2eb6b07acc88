"""API endpoints for the tool invocation service."""

from datetime import UTC, datetime

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from toolgate import __version__
from toolgate.errors import ConversationInconsistentError
from toolgate.models.conversation import ChatRequest, ConversationSnapshot, HealthResponse
from toolgate.services.conversation import get_conversation_service
from toolgate.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.post("/chat", tags=["Conversation"])
async def chat(request: ChatRequest) -> StreamingResponse:
    """Run one turn and stream its events as Server-Sent Events.

    The stream carries text deltas, tool state deltas, the persisted message
    list and a final finish event. A turn that stops on a call needing
    approval finishes with status tool-pending; send the decision back in
    `approvals` to continue.
    """
    conversation_service = get_conversation_service()
    try:
        conversation_id, stream = await conversation_service.stream_turn(request)
    except ConversationInconsistentError as e:
        logger.warning(f"Refusing turn: {e}")
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ValueError as e:
        logger.warning(f"Chat request validation error for conversation {request.conversation_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e

    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Conversation-Id": conversation_id,
        },
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationSnapshot, tags=["Conversation"])
async def get_conversation(conversation_id: str) -> ConversationSnapshot:
    """Return a conversation's persisted history."""
    snapshot = await get_conversation_service().get_conversation(conversation_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return snapshot


@router.delete("/conversations/{conversation_id}", status_code=204, tags=["Conversation"])
async def delete_conversation(conversation_id: str) -> None:
    """Delete a conversation's history."""
    if not await get_conversation_service().delete_conversation(conversation_id):
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")


@router.post("/conversations/{conversation_id}/acknowledge", response_model=ConversationSnapshot, tags=["Operations"])
async def acknowledge_conversation(conversation_id: str) -> ConversationSnapshot:
    """Clear a conversation's inconsistent flag after operator review."""
    conversation_service = get_conversation_service()
    if not conversation_service.acknowledge_inconsistency(conversation_id):
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    logger.info(f"Operator acknowledged conversation {conversation_id}")
    return await conversation_service.get_conversation(conversation_id)


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint, with the number of conversations waiting for an operator."""
    sessions = get_conversation_service().sessions
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
        active_conversations=sessions.get_session_count(),
        flagged_conversations=len(sessions.flagged_sessions()),
    )
