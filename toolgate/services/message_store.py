"""Message store interface and in-memory implementation."""

from typing import Protocol

from toolgate.models.messages import Message
from toolgate.utils.logging import get_logger

logger = get_logger(__name__)


class MessageStore(Protocol):
    """Durable per-conversation message history.

    Implementations raise TransportError when the backing store cannot be
    reached.
    """

    async def load(self, conversation_id: str) -> list[Message]:
        """Load the full history, oldest first. Unknown conversations are empty."""
        ...

    async def replace(self, conversation_id: str, messages: list[Message]) -> None:
        """Atomically replace the whole history."""
        ...

    async def delete(self, conversation_id: str) -> bool:
        """Remove a conversation. Returns False if it did not exist."""
        ...


class InMemoryMessageStore:
    """In-memory message store.

    Histories are deep-copied in and out so callers never share mutable
    state with the store.
    """

    def __init__(self):
        self.conversations: dict[str, list[Message]] = {}

    async def load(self, conversation_id: str) -> list[Message]:
        return [message.model_copy(deep=True) for message in self.conversations.get(conversation_id, [])]

    async def replace(self, conversation_id: str, messages: list[Message]) -> None:
        self.conversations[conversation_id] = [message.model_copy(deep=True) for message in messages]
        logger.debug(f"Stored {len(messages)} messages for conversation {conversation_id}")

    async def delete(self, conversation_id: str) -> bool:
        if conversation_id in self.conversations:
            del self.conversations[conversation_id]
            return True
        return False


message_store = InMemoryMessageStore()
