"""LLM-related data models and types (provider-agnostic)."""

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


# Content block types, mirroring the provider wire format
class TextBlock(BaseModel):
    """Text content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """Tool use content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any]


class ToolResultBlock(BaseModel):
    """Tool result content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


class LLMMessage(BaseModel):
    """A message for LLM conversation."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]


class LLMToolDefinition(BaseModel):
    """Model-facing tool definition. Executors are never part of it."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class LLMUsage:
    """Token usage reported by the provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "LLMUsage") -> None:
        """Accumulate another usage record into this one."""
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens


# Events produced while streaming one model step
@dataclass
class ModelTextDelta:
    """A chunk of generated text."""

    text: str


@dataclass
class ModelToolCallStarted:
    """The model began proposing a tool call; its input is still streaming."""

    tool_call_id: str
    tool_name: str


@dataclass
class ModelToolCall:
    """A fully formed tool call proposal."""

    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelStepFinished:
    """The model finished this step."""

    stop_reason: str | None = None
    usage: LLMUsage | None = None


ModelEvent = ModelTextDelta | ModelToolCallStarted | ModelToolCall | ModelStepFinished
