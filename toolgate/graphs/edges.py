"""Edge logic and routing for the step loop."""

from typing import Literal

from toolgate.graphs.state import TurnState
from toolgate.utils.logging import get_logger

logger = get_logger(__name__)


def route_generate_output(state: TurnState) -> Literal["resolve", "end"]:
    """Route from the generate node.

    A step that proposed tool calls goes to the executor; a step without
    calls finishes the turn.
    """
    logger.debug(f"Routing from generate node at step {state.step}, status {state.status}")

    if state.status == "done":
        return "end"
    return "resolve"


def route_resolve_output(state: TurnState) -> Literal["generate", "end"]:
    """Route from the resolve node.

    Stops on a pending approval or an exhausted step budget; otherwise the
    model gets another step with the new tool results.
    """
    if state.status in ("tool-pending", "step-budget-exhausted"):
        return "end"
    return "generate"
