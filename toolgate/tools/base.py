"""Base types and definitions for tools."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from toolgate.errors import ToolValidationError, bounded_message
from toolgate.models.llm import LLMToolDefinition
from toolgate.models.messages import Message

if TYPE_CHECKING:
    from toolgate.services.calendar import CalendarService
    from toolgate.services.schedules import ScheduleService


@dataclass
class ToolServices:
    """Service handles available to tool executors."""

    schedules: "ScheduleService | None" = None
    calendar: "CalendarService | None" = None


@dataclass
class ToolContext:
    """Explicit per-call context handed to every executor.

    Executors never look up the current conversation from ambient state;
    everything they may touch arrives here.
    """

    conversation_id: str
    tool_call_id: str = ""
    messages: tuple[Message, ...] = ()
    services: ToolServices = field(default_factory=ToolServices)

    def for_call(self, tool_call_id: str, messages: list[Message]) -> "ToolContext":
        """Bind the context to a single tool call."""
        return ToolContext(
            conversation_id=self.conversation_id,
            tool_call_id=tool_call_id,
            messages=tuple(messages),
            services=self.services,
        )


ToolExecutor = Callable[[BaseModel, ToolContext], Awaitable[Any]]


@dataclass(frozen=True)
class _ToolDefinitionBase:
    name: str
    description: str
    input_schema_class: type[BaseModel]

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        return self.input_schema_class.model_json_schema()

    def parse_input(self, raw_input: dict[str, Any]) -> BaseModel:
        """Parse and validate tool input.

        Raises:
            ToolValidationError: If the input does not match the schema
        """
        try:
            return self.input_schema_class.model_validate(raw_input)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(loc) for loc in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()
            )
            raise ToolValidationError(self.name, bounded_message(problems)) from e

    def to_llm_tool(self) -> LLMToolDefinition:
        """Model-facing definition of this tool."""
        return LLMToolDefinition(name=self.name, description=self.description, input_schema=self.get_json_schema())


@dataclass(frozen=True)
class AutonomousTool(_ToolDefinitionBase):
    """A low-risk tool executed as soon as the model proposes it."""

    executor: ToolExecutor = field(kw_only=True)
    requires_approval: bool = field(default=False, init=False)


@dataclass(frozen=True)
class ConfirmedTool(_ToolDefinitionBase):
    """A tool that only runs after a human approves the specific call."""

    executor: ToolExecutor | None = field(default=None, kw_only=True)
    requires_approval: bool = field(default=True, init=False)


ToolDefinition = AutonomousTool | ConfirmedTool
