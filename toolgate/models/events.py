"""Outbound stream events sent to the client."""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from toolgate.models.messages import Message, ToolInvocationPart, ToolState

TurnStatus = Literal["done", "tool-pending", "step-budget-exhausted", "aborted"]


class TextDeltaEvent(BaseModel):
    """A chunk of generated assistant text."""

    type: Literal["text-delta"] = "text-delta"
    message_id: str
    delta: str


class ToolStateDeltaEvent(BaseModel):
    """A tool invocation changed state."""

    type: Literal["tool-state-delta"] = "tool-state-delta"
    tool_call_id: str
    tool_name: str
    state: ToolState
    input: dict[str, Any] | None = None
    output: Any = None

    @classmethod
    def from_part(cls, part: ToolInvocationPart) -> "ToolStateDeltaEvent":
        """Snapshot the current state of a tool invocation part."""
        return cls(
            tool_call_id=part.tool_call_id,
            tool_name=part.tool_name,
            state=part.state,
            input=part.input if part.state != "input-streaming" else None,
            output=part.output if part.is_resolved else None,
        )


class MessagesEvent(BaseModel):
    """The persisted message list at the end of a turn."""

    type: Literal["messages"] = "messages"
    conversation_id: str
    messages: list[Message]


class ErrorEvent(BaseModel):
    """A bounded, user-safe description of why a turn was aborted."""

    type: Literal["error"] = "error"
    message: str


class FinishEvent(BaseModel):
    """Always the last event of a turn."""

    type: Literal["finish"] = "finish"
    conversation_id: str
    status: TurnStatus
    steps: int = 0


StreamEvent = Annotated[
    TextDeltaEvent | ToolStateDeltaEvent | MessagesEvent | ErrorEvent | FinishEvent,
    Field(discriminator="type"),
]
