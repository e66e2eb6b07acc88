"""Step loop graph: generate, resolve, repeat until done or paused."""

from dataclasses import dataclass, field

from langgraph.graph import END, StateGraph

from toolgate.core.executor import ApprovalGatedExecutor
from toolgate.core.stream import EventChannel
from toolgate.graphs.edges import route_generate_output, route_resolve_output
from toolgate.graphs.nodes import generate_node, resolve_node
from toolgate.graphs.state import TurnState
from toolgate.models.messages import Message
from toolgate.services.llm import LanguageModel
from toolgate.tools.base import ToolContext
from toolgate.utils.logging import get_logger

logger = get_logger(__name__)


def create_step_loop_graph():
    """Create the step loop graph.

    generate streams one model step; resolve advances the proposed calls.
    The loop ends when a step proposes no calls, a call needs approval, or
    the step budget runs out.

    Returns:
        Compiled LangGraph workflow
    """
    logger.info("Creating step loop graph")

    workflow = StateGraph(TurnState)

    workflow.add_node("generate", generate_node)
    workflow.add_node("resolve", resolve_node)

    workflow.set_entry_point("generate")

    workflow.add_conditional_edges(
        "generate",
        route_generate_output,
        {
            "resolve": "resolve",
            "end": END,
        },
    )

    workflow.add_conditional_edges(
        "resolve",
        route_resolve_output,
        {
            "generate": "generate",
            "end": END,
        },
    )

    # No checkpointer: the message store is the only persistence
    return workflow.compile()


@dataclass
class StepLoopResult:
    """Final state of one run of the step loop."""

    messages: list[Message]
    status: str
    steps: int
    pending_tool_call_id: str | None = None
    violations: list[str] = field(default_factory=list)
    total_input_tokens: int = 0
    total_output_tokens: int = 0


class StepLoopController:
    """Runs the step loop for one turn."""

    def __init__(self, model: LanguageModel, executor: ApprovalGatedExecutor, step_budget: int = 10):
        """Initialize the controller.

        Args:
            model: Language model to generate steps with
            executor: Executor that resolves proposed calls
            step_budget: Maximum model steps per turn
        """
        if step_budget < 1:
            raise ValueError("step_budget must be at least 1")
        self.model = model
        self.executor = executor
        self.step_budget = step_budget
        self.graph = create_step_loop_graph()

    async def run(self, messages: list[Message], context: ToolContext, channel: EventChannel) -> StepLoopResult:
        """Run the loop over a sanitized history.

        Raises:
            TransportError: If the model cannot be reached; nothing should be persisted
        """
        initial_state = TurnState(
            conversation_id=context.conversation_id,
            messages=messages,
            step_budget=self.step_budget,
        )

        config = {
            "configurable": {
                "model": self.model,
                "executor": self.executor,
                "channel": channel,
                "context": context,
            },
            # Two nodes per step, plus headroom
            "recursion_limit": self.step_budget * 2 + 5,
        }

        result = await self.graph.ainvoke(initial_state, config)

        status = "done" if result["status"] == "generating" else result["status"]
        logger.info(
            f"Step loop finished for conversation {context.conversation_id}: {status} after {result['step']} step(s), "
            f"tokens in/out {result['total_input_tokens']}/{result['total_output_tokens']}"
        )

        return StepLoopResult(
            messages=list(result["messages"]),
            status=status,
            steps=result["step"],
            pending_tool_call_id=result.get("pending_tool_call_id"),
            violations=list(result.get("violations", [])),
            total_input_tokens=result["total_input_tokens"],
            total_output_tokens=result["total_output_tokens"],
        )
