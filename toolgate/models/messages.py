"""Message and tool invocation data models."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from cuid2 import cuid_wrapper
from pydantic import BaseModel, Field, model_validator

cuid = cuid_wrapper()

ToolState = Literal["input-streaming", "input-available", "output-available"]

# Ordering used to enforce that tool state only advances
TOOL_STATE_ORDER: dict[str, int] = {
    "input-streaming": 0,
    "input-available": 1,
    "output-available": 2,
}


class Approval:
    """Literal values a client writes into a pending call's result slot."""

    YES = "Yes, confirmed."
    NO = "No, denied."


CANCELLATION_MARKER = "Error: User denied access to tool execution"
MISSING_EXECUTOR_MARKER = "Error: No execute function found on tool"


class DecisionValue(StrEnum):
    """Human verdict on a pending confirmed tool call."""

    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ApprovalDecision(BaseModel):
    """A decision bound to exactly one pending tool call."""

    tool_call_id: str
    value: DecisionValue


def parse_decision(tool_call_id: str, raw: str) -> ApprovalDecision:
    """Parse a client-supplied approval value.

    Accepts YES/NO, APPROVED/REJECTED and the literal Approval strings.

    Raises:
        ValueError: If the value is not a recognised decision
    """
    value = str(raw or "").strip()
    normalized = value.upper()
    if value == Approval.YES or normalized in ("YES", "APPROVED", "APPROVE"):
        return ApprovalDecision(tool_call_id=tool_call_id, value=DecisionValue.APPROVED)
    if value == Approval.NO or normalized in ("NO", "REJECTED", "REJECT", "DENIED"):
        return ApprovalDecision(tool_call_id=tool_call_id, value=DecisionValue.REJECTED)
    raise ValueError(f"Invalid approval value for {tool_call_id}: {raw!r}")


class TextPart(BaseModel):
    """Plain text content."""

    type: Literal["text"] = "text"
    text: str


class ToolInvocationPart(BaseModel):
    """A model-proposed tool call and, once resolved, its output."""

    type: Literal["tool-invocation"] = "tool-invocation"
    tool_call_id: str
    tool_name: str
    state: ToolState = "input-available"
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None

    @model_validator(mode="after")
    def _output_matches_state(self) -> "ToolInvocationPart":
        if self.state != "output-available" and self.output is not None:
            raise ValueError("output is only allowed once the tool call is output-available")
        return self

    @property
    def is_resolved(self) -> bool:
        """Whether the call has reached its terminal state."""
        return self.state == "output-available"

    def with_output(self, output: Any) -> "ToolInvocationPart":
        """Return a copy advanced to output-available with the given output."""
        return self.model_copy(update={"state": "output-available", "output": output})


Part = Annotated[TextPart | ToolInvocationPart, Field(discriminator="type")]


class Message(BaseModel):
    """A message in a conversation."""

    id: str = Field(default_factory=cuid)
    role: Literal["user", "assistant", "system"]
    parts: list[Part] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def user_text(cls, text: str) -> "Message":
        """Create a user message holding a single text part."""
        return cls(role="user", parts=[TextPart(text=text)])

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def tool_invocations(self) -> list[ToolInvocationPart]:
        """Tool invocation parts in document order."""
        return [part for part in self.parts if isinstance(part, ToolInvocationPart)]


def iter_tool_invocations(messages: list[Message]) -> list[tuple[int, int, ToolInvocationPart]]:
    """List every tool invocation with its (message index, part index) in document order."""
    found: list[tuple[int, int, ToolInvocationPart]] = []
    for message_index, message in enumerate(messages):
        for part_index, part in enumerate(message.parts):
            if isinstance(part, ToolInvocationPart):
                found.append((message_index, part_index, part))
    return found


def unresolved_tool_invocations(messages: list[Message]) -> list[ToolInvocationPart]:
    """Tool invocations that have not reached output-available."""
    return [part for _, _, part in iter_tool_invocations(messages) if not part.is_resolved]


def state_regressions(before: list[Message], after: list[Message]) -> list[str]:
    """Tool call ids whose state moved backwards between two versions of a history."""
    previous = {part.tool_call_id: part.state for _, _, part in iter_tool_invocations(before)}
    return [
        part.tool_call_id
        for _, _, part in iter_tool_invocations(after)
        if part.tool_call_id in previous and TOOL_STATE_ORDER[part.state] < TOOL_STATE_ORDER[previous[part.tool_call_id]]
    ]
