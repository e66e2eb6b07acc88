"""Error types for the tool invocation lifecycle.

Validation and execution errors are recovered locally and written into the
failing call's output. Transport errors abort the turn before anything is
persisted. Invariant violations flag the conversation for operator attention.
"""

MAX_ERROR_MESSAGE_CHARS = 300


def bounded_message(message: str, limit: int = MAX_ERROR_MESSAGE_CHARS) -> str:
    """Collapse whitespace and cap a message so it is safe to show to a user."""
    text = " ".join(str(message).split())
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


class ToolgateError(Exception):
    """Base error for all toolgate exceptions."""


class ToolRegistrationError(ToolgateError):
    """Raised at startup when a tool definition cannot be registered."""


class ToolValidationError(ToolgateError):
    """Raised when a tool's input fails its schema or domain validation."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        self.user_message = bounded_message(message)
        super().__init__(f"Invalid input for '{tool_name}': {self.user_message}")


class ToolExecutionError(ToolgateError):
    """Raised by executors to report a failure with a user-safe message."""

    def __init__(self, message: str) -> None:
        self.user_message = bounded_message(message)
        super().__init__(self.user_message)


class TransportError(ToolgateError):
    """Raised when the model or the message store cannot be reached."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)


class InvariantViolation(ToolgateError):
    """Raised or recorded when persisted tool-call state breaks a lifecycle invariant."""

    def __init__(self, conversation_id: str | None, detail: str) -> None:
        self.conversation_id = conversation_id
        self.detail = detail
        super().__init__(f"Invariant violated in conversation {conversation_id}: {detail}")


class ConversationInconsistentError(ToolgateError):
    """Raised when a turn is requested for a conversation flagged inconsistent."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} is flagged inconsistent and needs operator attention")
