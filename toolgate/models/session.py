"""Conversation session state."""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from toolgate.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ConversationSession:
    """Per-conversation bookkeeping that lives outside the message history.

    The lock serialises turns: one turn at a time per conversation.
    """

    conversation_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))
    inconsistent: bool = False
    inconsistency_details: list[str] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def as_dict(self) -> dict[str, Any]:
        """Return the session as a dictionary."""
        return {
            "conversation_id": self.conversation_id,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "inconsistent": self.inconsistent,
            "inconsistency_details": list(self.inconsistency_details),
        }

    def update_activity(self) -> None:
        """Update the last activity timestamp."""
        self.last_activity = datetime.now(UTC)

    @property
    def busy(self) -> bool:
        """Whether a turn is currently running."""
        return self.lock.locked()

    def flag_inconsistent(self, detail: str) -> None:
        """Mark the conversation as needing operator attention."""
        logger.error(f"Flagging conversation {self.conversation_id} inconsistent: {detail}")
        self.inconsistent = True
        self.inconsistency_details.append(detail)

    def clear_inconsistent(self) -> None:
        """Operator acknowledgement: allow turns again."""
        logger.info(f"Clearing inconsistent flag on conversation {self.conversation_id}")
        self.inconsistent = False
        self.inconsistency_details.clear()
        self.update_activity()
