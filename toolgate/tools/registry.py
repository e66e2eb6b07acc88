"""Tools registry: static mapping of tool name to definition."""

from pydantic import BaseModel

from toolgate.errors import ToolRegistrationError
from toolgate.models.llm import LLMToolDefinition
from toolgate.tools.base import AutonomousTool, ConfirmedTool, ToolDefinition, ToolExecutor
from toolgate.tools.calendar_event import create_calendar_event_tool
from toolgate.tools.local_time import create_local_time_tool
from toolgate.tools.scheduling import (
    create_cancel_scheduled_task_tool,
    create_get_scheduled_tasks_tool,
    create_schedule_task_tool,
)
from toolgate.tools.weather import create_weather_tool
from toolgate.utils.logging import get_logger

logger = get_logger(__name__)


class ToolsRegistry:
    """Registry of the tools the model may propose."""

    def __init__(self, register_defaults: bool = True):
        """Initialize the registry, optionally with the built-in tools."""
        self._tools: dict[str, ToolDefinition] = {}
        if register_defaults:
            self._register_default_tools()

    def _register_default_tools(self) -> None:
        """Register the built-in tool set."""
        tools = [
            create_local_time_tool(),
            create_weather_tool(),
            create_schedule_task_tool(),
            create_get_scheduled_tasks_tool(),
            create_cancel_scheduled_task_tool(),
            create_calendar_event_tool(),
        ]

        for tool in tools:
            self.register_tool(tool)

    def register(
        self,
        name: str,
        input_schema_class: type[BaseModel],
        requires_approval: bool,
        executor: ToolExecutor | None = None,
        description: str = "",
    ) -> ToolDefinition:
        """Build and register a tool definition.

        Raises:
            ToolRegistrationError: On a name collision, or an autonomous tool without an executor
        """
        if requires_approval:
            tool: ToolDefinition = ConfirmedTool(
                name=name, description=description, input_schema_class=input_schema_class, executor=executor
            )
        else:
            if executor is None:
                raise ToolRegistrationError(f"Autonomous tool '{name}' must have an executor")
            tool = AutonomousTool(
                name=name, description=description, input_schema_class=input_schema_class, executor=executor
            )

        self.register_tool(tool)
        return tool

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a prebuilt tool definition.

        Raises:
            ToolRegistrationError: If a tool with the same name is already registered
        """
        if tool.name in self._tools:
            raise ToolRegistrationError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool {tool.name} (requires_approval={tool.requires_approval})")

    def lookup(self, name: str) -> ToolDefinition | None:
        """Find a tool by name. Returns None for unknown tools."""
        return self._tools.get(name)

    def model_tools(self) -> list[LLMToolDefinition]:
        """Tool definitions to advertise to the model."""
        return [tool.to_llm_tool() for tool in self._tools.values()]


_tools_registry: ToolsRegistry | None = None


def get_tools_registry() -> ToolsRegistry:
    """Get or create tools registry instance."""
    global _tools_registry

    if _tools_registry is None:
        _tools_registry = ToolsRegistry()

    return _tools_registry
