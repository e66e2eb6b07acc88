"""Node implementations for the step loop graph."""

from dataclasses import dataclass
from typing import Any

from langchain_core.runnables import RunnableConfig

from toolgate.core.executor import ApprovalGatedExecutor
from toolgate.core.stream import EventChannel
from toolgate.graphs.state import TurnState
from toolgate.models.events import TextDeltaEvent, ToolStateDeltaEvent
from toolgate.models.llm import ModelStepFinished, ModelTextDelta, ModelToolCall, ModelToolCallStarted
from toolgate.models.messages import Message, TextPart, ToolInvocationPart
from toolgate.services.llm import LanguageModel
from toolgate.tools.base import ConfirmedTool, ToolContext
from toolgate.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class LoopDependencies:
    """Collaborators the nodes need, carried in the run config."""

    model: LanguageModel
    executor: ApprovalGatedExecutor
    channel: EventChannel
    context: ToolContext


def get_loop_dependencies(config: RunnableConfig) -> LoopDependencies:
    """Pull the loop collaborators out of a run config."""
    configurable = config.get("configurable", {})
    return LoopDependencies(
        model=configurable["model"],
        executor=configurable["executor"],
        channel=configurable["channel"],
        context=configurable["context"],
    )


async def generate_node(state: TurnState, config: RunnableConfig) -> dict[str, Any]:
    """Stream one model step and record it as a single assistant message.

    Text chunks and tool call state changes are forwarded to the channel as
    they arrive. Once a call needing approval has been proposed, anything
    else the model produces in this step is discarded so that call stays the
    last part of the history.
    """
    deps = get_loop_dependencies(config)
    registry = deps.executor.registry
    step = state.step + 1
    logger.info(f"Generating step {step}/{state.step_budget} for conversation {state.conversation_id}")

    assistant = Message(role="assistant")
    pending: ToolInvocationPart | None = None
    proposed_calls = 0
    discarded: list[str] = []
    input_tokens = 0
    output_tokens = 0

    async for event in deps.model.stream_step(state.messages, registry.model_tools()):
        match event:
            case ModelTextDelta(text=text):
                if pending is not None:
                    discarded.append("text")
                    continue
                if assistant.parts and isinstance(assistant.parts[-1], TextPart):
                    assistant.parts[-1].text += text
                else:
                    assistant.parts.append(TextPart(text=text))
                await deps.channel.send(TextDeltaEvent(message_id=assistant.id, delta=text))

            case ModelToolCallStarted(tool_call_id=tool_call_id, tool_name=tool_name):
                if pending is not None:
                    continue
                await deps.channel.send(
                    ToolStateDeltaEvent(tool_call_id=tool_call_id, tool_name=tool_name, state="input-streaming")
                )

            case ModelToolCall(tool_call_id=tool_call_id, tool_name=tool_name, input=tool_input):
                if pending is not None:
                    discarded.append(tool_call_id)
                    continue
                part = ToolInvocationPart(tool_call_id=tool_call_id, tool_name=tool_name, input=tool_input)
                assistant.parts.append(part)
                proposed_calls += 1
                await deps.channel.send(ToolStateDeltaEvent.from_part(part))
                if isinstance(registry.lookup(tool_name), ConfirmedTool):
                    pending = part

            case ModelStepFinished(usage=usage):
                if usage is not None:
                    input_tokens += usage.input_tokens
                    output_tokens += usage.output_tokens

    if discarded:
        logger.warning(
            f"Discarded output after tool call {pending.tool_call_id} awaiting approval: {', '.join(discarded)}"
        )

    messages = list(state.messages)
    if assistant.parts:
        messages.append(assistant)

    logger.debug(f"Step {step} proposed {proposed_calls} tool call(s)")

    return {
        "messages": messages,
        "step": step,
        "status": "generating" if proposed_calls else "done",
        "total_input_tokens": state.total_input_tokens + input_tokens,
        "total_output_tokens": state.total_output_tokens + output_tokens,
    }


async def resolve_node(state: TurnState, config: RunnableConfig) -> dict[str, Any]:
    """Run the approval-gated executor over the history.

    Autonomous calls resolve here, in the same pass that proposed them.
    """
    deps = get_loop_dependencies(config)

    result = await deps.executor.resolve(state.messages, deps.context, on_delta=deps.channel.send)
    violations = [*state.violations, *(violation.detail for violation in result.violations)]

    if result.paused_call is not None:
        logger.info(
            f"Conversation {state.conversation_id} paused on tool call {result.paused_call.tool_call_id} "
            f"({result.paused_call.tool_name})"
        )
        status = "tool-pending"
        pending_tool_call_id = result.paused_call.tool_call_id
    elif state.step >= state.step_budget:
        logger.warning(f"Step budget of {state.step_budget} exhausted for conversation {state.conversation_id}")
        status = "step-budget-exhausted"
        pending_tool_call_id = None
    else:
        status = "generating"
        pending_tool_call_id = None

    return {
        "messages": result.messages,
        "status": status,
        "pending_tool_call_id": pending_tool_call_id,
        "violations": violations,
    }
