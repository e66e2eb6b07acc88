"""Registry of conversation actors.

A conversation's session owns the lock that admits one turn at a time and
the inconsistent flag set when its persisted tool state breaks an invariant.
Sessions only hold that bookkeeping; the history itself lives in the message
store, so evicting an idle session loses nothing but its idle clock.
"""

from datetime import UTC, datetime, timedelta

from cuid2 import cuid_wrapper

from toolgate.config import AgentSettings, get_settings
from toolgate.models.session import ConversationSession
from toolgate.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()


class InMemorySessionManager:
    """In-memory registry of conversation sessions with idle eviction.

    Busy sessions (a turn holds the lock) and flagged sessions (waiting for
    an operator) are never evicted.
    """

    def __init__(self, idle_timeout: timedelta = timedelta(minutes=60)):
        self.sessions: dict[str, ConversationSession] = {}
        self.idle_timeout = idle_timeout

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "InMemorySessionManager":
        return cls(idle_timeout=timedelta(minutes=settings.session_timeout_minutes))

    def get_or_create_session(self, conversation_id: str | None = None) -> ConversationSession:
        """Return the actor for a conversation, starting one if needed.

        A missing id starts a new conversation with a generated cuid.
        """
        self.evict_idle()

        session = self.sessions.get(conversation_id) if conversation_id else None
        if session is None:
            session = ConversationSession(conversation_id=conversation_id or cuid())
            self.sessions[session.conversation_id] = session
            logger.debug(f"Started session for conversation {session.conversation_id}")
        session.update_activity()
        return session

    def get_session(self, conversation_id: str) -> ConversationSession | None:
        """Look up a session without touching its idle clock."""
        self.evict_idle()
        return self.sessions.get(conversation_id)

    def delete_session(self, conversation_id: str) -> bool:
        return self.sessions.pop(conversation_id, None) is not None

    def evict_idle(self, now: datetime | None = None) -> list[str]:
        """Drop sessions idle for longer than the timeout. Returns the evicted ids."""
        cutoff = (now or datetime.now(UTC)) - self.idle_timeout
        evicted = [
            conversation_id
            for conversation_id, session in self.sessions.items()
            if session.last_activity < cutoff and not session.busy and not session.inconsistent
        ]
        for conversation_id in evicted:
            del self.sessions[conversation_id]
        if evicted:
            logger.info(f"Evicted {len(evicted)} idle session(s)")
        return evicted

    def flagged_sessions(self) -> list[ConversationSession]:
        """Sessions waiting for operator acknowledgement."""
        return [session for session in self.sessions.values() if session.inconsistent]

    def get_session_count(self) -> int:
        self.evict_idle()
        return len(self.sessions)


_session_manager: InMemorySessionManager | None = None


def get_session_manager() -> InMemorySessionManager:
    """Get or create the process-wide session manager, configured from settings."""
    global _session_manager
    if _session_manager is None:
        _session_manager = InMemorySessionManager.from_settings(get_settings())
    return _session_manager
