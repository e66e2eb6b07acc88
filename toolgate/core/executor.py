"""Approval-gated executor.

Walks the history in document order and advances every tool invocation that
can be advanced: autonomous calls run immediately, confirmed calls run (or are
cancelled) only when a matching human decision is present. The first
confirmed call without a decision pauses the pass.
"""

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from pydantic_core import PydanticSerializationError, to_jsonable_python

from toolgate.errors import InvariantViolation, ToolExecutionError, ToolValidationError
from toolgate.models.events import ToolStateDeltaEvent
from toolgate.models.messages import (
    CANCELLATION_MARKER,
    MISSING_EXECUTOR_MARKER,
    ApprovalDecision,
    DecisionValue,
    Message,
    ToolInvocationPart,
    iter_tool_invocations,
    unresolved_tool_invocations,
)
from toolgate.tools.base import AutonomousTool, ConfirmedTool, ToolContext, ToolDefinition
from toolgate.tools.registry import ToolsRegistry
from toolgate.utils.logging import get_logger

logger = get_logger(__name__)

DeltaCallback = Callable[[ToolStateDeltaEvent], Awaitable[None]]


@dataclass
class ResolutionResult:
    """Outcome of one executor pass."""

    messages: list[Message]
    deltas: list[ToolStateDeltaEvent] = field(default_factory=list)
    paused_call: ToolInvocationPart | None = None
    violations: list[InvariantViolation] = field(default_factory=list)
    executed_call_ids: list[str] = field(default_factory=list)

    @property
    def is_paused(self) -> bool:
        return self.paused_call is not None


EMPTY_RESULT_OUTPUT = "Done."


def _jsonable(result: Any) -> Any:
    if result is None:
        return EMPTY_RESULT_OUTPUT
    try:
        return to_jsonable_python(result)
    except PydanticSerializationError:
        return str(result)


class ApprovalGatedExecutor:
    """Resolves pending tool invocations against the registry and recorded decisions."""

    def __init__(self, registry: ToolsRegistry):
        """Initialize the executor with the tool registry it resolves against."""
        self.registry = registry

    async def resolve(
        self,
        messages: list[Message],
        context: ToolContext,
        decisions: Iterable[ApprovalDecision] = (),
        on_delta: DeltaCallback | None = None,
    ) -> ResolutionResult:
        """Advance every resolvable tool invocation in the history.

        Args:
            messages: Sanitized history; it is not modified
            context: Conversation-level context passed to executors
            decisions: Human decisions received with this request
            on_delta: Called with each state delta as soon as it happens

        Returns:
            Updated history, ordered deltas, and the paused call if any
        """
        history = [message.model_copy(deep=True) for message in messages]
        result = ResolutionResult(messages=history)
        invocations = iter_tool_invocations(history)

        decisions_by_id = self._index_decisions(decisions, invocations, context, result)
        single_call_only = self._check_outstanding(invocations, context, result)

        for message_index, part_index, part in invocations:
            if part.is_resolved or part.state == "input-streaming":
                continue

            tool = self.registry.lookup(part.tool_name)

            if isinstance(tool, ConfirmedTool):
                decision = decisions_by_id.get(part.tool_call_id)
                if decision is None:
                    logger.info(f"Tool call {part.tool_call_id} ({part.tool_name}) is awaiting approval")
                    result.paused_call = part
                    break
                if decision.value == DecisionValue.REJECTED:
                    logger.info(f"Tool call {part.tool_call_id} ({part.tool_name}) was rejected")
                    output = CANCELLATION_MARKER
                else:
                    logger.info(f"Tool call {part.tool_call_id} ({part.tool_name}) was approved")
                    output = await self._invoke(tool, part, context, history)
            elif isinstance(tool, AutonomousTool):
                output = await self._invoke(tool, part, context, history)
            else:
                logger.error(f"Unknown tool requested: {part.tool_name}")
                output = f"Error: Unknown tool {part.tool_name}"

            resolved = part.with_output(output)
            history[message_index].parts[part_index] = resolved
            result.executed_call_ids.append(resolved.tool_call_id)

            delta = ToolStateDeltaEvent.from_part(resolved)
            result.deltas.append(delta)
            if on_delta is not None:
                await on_delta(delta)

            if single_call_only:
                break

        return result

    async def _invoke(
        self, tool: ToolDefinition, part: ToolInvocationPart, context: ToolContext, history: list[Message]
    ) -> Any:
        """Run a tool's executor. Failures become the call's output, never an exception."""
        if tool.executor is None:
            return MISSING_EXECUTOR_MARKER

        logger.debug(f"Executing tool: {tool.name} with input: {part.input}")
        try:
            params = tool.parse_input(part.input)
            output = await tool.executor(params, context.for_call(part.tool_call_id, history))
        except ToolValidationError as e:
            logger.warning(f"Tool {tool.name} rejected its input: {e}")
            return f"Error: {e}"
        except ToolExecutionError as e:
            logger.warning(f"Tool {tool.name} failed: {e}")
            return f"Error: {e.user_message}"
        except Exception as e:
            logger.error(f"Tool {tool.name} raised unexpectedly: {e}", exc_info=True)
            return f"Error: {tool.name} failed unexpectedly ({type(e).__name__})"

        logger.debug(f"Tool {tool.name} succeeded: {str(output)[:100]}...")
        return _jsonable(output)

    def _index_decisions(
        self,
        decisions: Iterable[ApprovalDecision],
        invocations: list[tuple[int, int, ToolInvocationPart]],
        context: ToolContext,
        result: ResolutionResult,
    ) -> dict[str, ApprovalDecision]:
        """Bind decisions to pending calls, recording decisions that match nothing."""
        parts_by_id = {part.tool_call_id: part for _, _, part in invocations}
        bound: dict[str, ApprovalDecision] = {}

        for decision in decisions:
            part = parts_by_id.get(decision.tool_call_id)
            if part is None:
                violation = InvariantViolation(
                    context.conversation_id, f"decision references unknown tool call {decision.tool_call_id}"
                )
                logger.error(str(violation))
                result.violations.append(violation)
                continue
            if part.is_resolved:
                logger.warning(f"Ignoring decision for already resolved tool call {decision.tool_call_id}")
                continue
            if decision.tool_call_id in bound:
                logger.warning(f"Ignoring duplicate decision for tool call {decision.tool_call_id}")
                continue
            bound[decision.tool_call_id] = decision

        return bound

    def _check_outstanding(
        self,
        invocations: list[tuple[int, int, ToolInvocationPart]],
        context: ToolContext,
        result: ResolutionResult,
    ) -> bool:
        """Detect broken lifecycle invariants. Returns True if only the earliest call may be resolved."""
        seen: set[str] = set()
        for _, _, part in invocations:
            if part.tool_call_id in seen:
                violation = InvariantViolation(context.conversation_id, f"duplicate tool call id {part.tool_call_id}")
                logger.error(str(violation))
                result.violations.append(violation)
            seen.add(part.tool_call_id)

        awaiting = [
            part
            for part in unresolved_tool_invocations(result.messages)
            if isinstance(self.registry.lookup(part.tool_name), ConfirmedTool)
        ]
        if len(awaiting) <= 1:
            return False

        violation = InvariantViolation(
            context.conversation_id,
            f"{len(awaiting)} tool calls awaiting approval: {', '.join(p.tool_call_id for p in awaiting)}",
        )
        logger.error(str(violation))
        result.violations.append(violation)
        return True
