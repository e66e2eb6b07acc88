"""Request and response models for the HTTP surface."""

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from toolgate.models.messages import Message


class ChatRequest(BaseModel):
    """Request model for the chat endpoint."""

    conversation_id: str | None = None
    message: str | None = None
    approvals: dict[str, str] = Field(
        default_factory=dict,
        description="Decisions for pending tool calls, keyed by tool call id (YES or NO)",
        examples=[{"tool_abc123": "YES"}],
    )

    @model_validator(mode="after")
    def _has_message_or_approvals(self) -> "ChatRequest":
        if self.message is None and not self.approvals:
            raise ValueError("A chat request needs a message, approvals, or both")
        return self


class ConversationSnapshot(BaseModel):
    """Response model for reading a conversation."""

    conversation_id: str
    inconsistent: bool
    messages: list[Message]


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
    active_conversations: int = 0
    flagged_conversations: int = 0
