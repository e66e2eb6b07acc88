"""Tools the model can propose, and the registry that holds them."""

from toolgate.tools.base import AutonomousTool, ConfirmedTool, ToolContext, ToolDefinition, ToolServices
from toolgate.tools.registry import ToolsRegistry, get_tools_registry

__all__ = [
    "AutonomousTool",
    "ConfirmedTool",
    "ToolContext",
    "ToolDefinition",
    "ToolServices",
    "ToolsRegistry",
    "get_tools_registry",
]
