"""State definitions for the LangGraph step loop."""

from typing import Literal

from pydantic import BaseModel, Field

from toolgate.models.messages import Message

LoopStatus = Literal["generating", "done", "tool-pending", "step-budget-exhausted"]


class TurnState(BaseModel):
    """State passed through every node of the step loop.

    Collaborators (model, executor, channel) travel in the run config, not
    here, so the state stays plain data.
    """

    conversation_id: str
    messages: list[Message] = Field(default_factory=list)

    # Control flow
    step: int = 0
    step_budget: int = 10
    status: LoopStatus = "generating"
    pending_tool_call_id: str | None = None

    # Lifecycle problems found by the executor during this turn
    violations: list[str] = Field(default_factory=list)

    # Token usage tracking
    total_input_tokens: int = 0
    total_output_tokens: int = 0
