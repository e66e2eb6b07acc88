"""History sanitizer.

Drops tool invocations left unresolved by an interrupted turn so they are
never re-submitted to the model. Only the single outstanding approval
candidate survives: an input-available call that is the last meaningful part
of the last message.
"""

from toolgate.models.messages import Message, TextPart, ToolInvocationPart
from toolgate.utils.logging import get_logger

logger = get_logger(__name__)


def _is_meaningful(part: TextPart | ToolInvocationPart) -> bool:
    if isinstance(part, TextPart):
        return bool(part.text.strip())
    return True


def find_approval_candidate(messages: list[Message]) -> ToolInvocationPart | None:
    """Return the call that may legitimately be awaiting a decision, if any."""
    if not messages or messages[-1].role != "assistant":
        return None

    meaningful = [part for part in messages[-1].parts if _is_meaningful(part)]
    if not meaningful:
        return None

    last = meaningful[-1]
    if isinstance(last, ToolInvocationPart) and last.state == "input-available":
        return last
    return None


def sanitize_history(messages: list[Message], conversation_id: str | None = None) -> list[Message]:
    """Return a copy of the history that is safe to hand to the model or executor.

    Args:
        messages: Raw message list, oldest first
        conversation_id: Only used for log context

    Returns:
        New message list; the input is not modified
    """
    candidate = find_approval_candidate(messages)
    sanitized: list[Message] = []
    dropped_calls: list[str] = []

    for message in messages:
        kept_parts = []
        for part in message.parts:
            if isinstance(part, ToolInvocationPart) and not part.is_resolved and part is not candidate:
                dropped_calls.append(part.tool_call_id)
                continue
            kept_parts.append(part)

        if len(kept_parts) == len(message.parts):
            sanitized.append(message.model_copy(deep=True))
            continue

        if not any(_is_meaningful(part) for part in kept_parts):
            logger.debug(f"Removing message {message.id} left empty after sanitizing")
            continue

        sanitized.append(message.model_copy(update={"parts": [part.model_copy(deep=True) for part in kept_parts]}))

    if dropped_calls:
        logger.info(
            f"Sanitizer dropped {len(dropped_calls)} unresolved tool call(s) "
            f"in conversation {conversation_id}: {', '.join(dropped_calls)}"
        )

    return sanitized
