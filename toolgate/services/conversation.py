"""Conversation service: runs one turn at a time per conversation."""

import asyncio
import contextlib
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from toolgate.config import AgentSettings, get_settings
from toolgate.core.executor import ApprovalGatedExecutor
from toolgate.core.sanitizer import sanitize_history
from toolgate.core.stream import EventChannel, StreamingEmitter
from toolgate.errors import ConversationInconsistentError, InvariantViolation, TransportError, bounded_message
from toolgate.graphs.conversation import StepLoopController
from toolgate.models.conversation import ChatRequest, ConversationSnapshot
from toolgate.models.events import ErrorEvent, FinishEvent, MessagesEvent, StreamEvent, TurnStatus
from toolgate.models.messages import ApprovalDecision, Message, parse_decision, state_regressions
from toolgate.models.session import ConversationSession
from toolgate.services.calendar import calendar_service
from toolgate.services.llm import LanguageModel, get_language_model
from toolgate.services.message_store import MessageStore, message_store
from toolgate.services.schedules import ScheduleService, schedule_service
from toolgate.services.session_manager import InMemorySessionManager, get_session_manager
from toolgate.tools.base import ToolContext, ToolServices
from toolgate.tools.registry import ToolsRegistry, get_tools_registry
from toolgate.utils.logging import conversation_logging, get_logger

logger = get_logger(__name__)

SCHEDULED_TASK_PREFIX = "Running scheduled task: "
UNEXPECTED_ERROR_MESSAGE = "I apologize, but I'm experiencing technical difficulties. Please try again."
NEEDS_ATTENTION_MESSAGE = "This conversation needs operator attention before it can continue."


class ConversationService:
    """Orchestrates turns: load, resolve decisions, run the step loop, persist.

    Each conversation behaves like an actor: its session lock admits one turn
    at a time, while distinct conversations proceed in parallel.
    """

    def __init__(
        self,
        model: LanguageModel | None = None,
        registry: ToolsRegistry | None = None,
        store: MessageStore | None = None,
        sessions: InMemorySessionManager | None = None,
        services: ToolServices | None = None,
        settings: AgentSettings | None = None,
    ):
        """Initialize conversation service.

        Args:
            model: Language model (defaults to the Anthropic-backed model, created on first use)
            registry: Tool registry (defaults to global instance)
            store: Message store (defaults to global in-memory store)
            sessions: Session manager (defaults to global instance)
            services: Services exposed to tool executors
            settings: Agent settings (defaults to environment)
        """
        self.settings = settings or get_settings()
        self._model = model
        self.registry = registry or get_tools_registry()
        self.store = store or message_store
        self.sessions = sessions or get_session_manager()
        self.services = services or ToolServices(schedules=schedule_service, calendar=calendar_service)
        self.executor = ApprovalGatedExecutor(self.registry)

        logger.info(f"ConversationService initialized with step budget {self.settings.step_budget}")

    @property
    def model(self) -> LanguageModel:
        if self._model is None:
            self._model = get_language_model(self.settings)
        return self._model

    async def stream_turn(self, request: ChatRequest) -> tuple[str, AsyncIterator[bytes]]:
        """Validate a request and return the SSE byte stream for its turn.

        Validation happens before anything is streamed so the caller can turn
        failures into HTTP errors. The turn itself starts when the stream is
        first iterated and is cancelled if the consumer goes away.

        Returns:
            Conversation ID and the SSE byte stream

        Raises:
            ValueError: If the message or an approval value is invalid
            ConversationInconsistentError: If the conversation is flagged inconsistent
        """
        session, decisions = self._prepare_turn(request)
        return session.conversation_id, self._stream(session, request.message, decisions)

    def _prepare_turn(self, request: ChatRequest) -> tuple[ConversationSession, list[ApprovalDecision]]:
        if request.message is not None:
            self._validate_message(request.message)
        decisions = [parse_decision(tool_call_id, value) for tool_call_id, value in request.approvals.items()]

        session = self.sessions.get_or_create_session(request.conversation_id)
        if session.inconsistent:
            raise ConversationInconsistentError(session.conversation_id)

        logger.info(
            f"Starting turn for conversation {session.conversation_id} "
            f"(message: {request.message is not None}, decisions: {len(decisions)})"
        )
        return session, decisions

    async def _stream(
        self, session: ConversationSession, message: str | None, decisions: list[ApprovalDecision]
    ) -> AsyncIterator[bytes]:
        channel = EventChannel()
        producer = asyncio.create_task(self._run_turn(session, message, decisions, channel))
        try:
            async for chunk in StreamingEmitter(channel).stream():
                yield chunk
            await producer
        finally:
            if not producer.done():
                logger.warning(f"Client went away, cancelling turn for conversation {session.conversation_id}")
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer

    async def run_turn(self, request: ChatRequest) -> list[StreamEvent]:
        """Run a turn to completion without a client and return its events.

        Raises:
            ValueError: If the message or an approval value is invalid
            ConversationInconsistentError: If the conversation is flagged inconsistent
        """
        session, decisions = self._prepare_turn(request)

        channel = EventChannel()
        await self._run_turn(session, request.message, decisions, channel)
        return [event async for event in channel]

    async def run_scheduled_task(self, conversation_id: str, description: str) -> TurnStatus:
        """Feed a due scheduled task back into its conversation as a user message.

        Returns:
            Final status of the resulting turn
        """
        logger.info(f"Running scheduled task for conversation {conversation_id}: {description}")
        events = await self.run_turn(
            ChatRequest(conversation_id=conversation_id, message=f"{SCHEDULED_TASK_PREFIX}{description}")
        )
        finish = next(event for event in reversed(events) if isinstance(event, FinishEvent))
        return finish.status

    async def _run_turn(
        self,
        session: ConversationSession,
        message: str | None,
        decisions: list[ApprovalDecision],
        channel: EventChannel,
    ) -> None:
        """Producer side of a turn. Always closes the channel."""
        conversation_id = session.conversation_id
        with conversation_logging(conversation_id):
            await self._produce(session, message, decisions, channel)

    async def _produce(
        self,
        session: ConversationSession,
        message: str | None,
        decisions: list[ApprovalDecision],
        channel: EventChannel,
    ) -> None:
        conversation_id = session.conversation_id
        try:
            async with session.lock:
                if session.inconsistent:
                    error = ConversationInconsistentError(conversation_id)
                    await channel.send(ErrorEvent(message=bounded_message(str(error))))
                    await channel.send(FinishEvent(conversation_id=conversation_id, status="aborted"))
                    return

                messages, status, steps = await self._execute_turn(session, message, decisions, channel)
                if status == "aborted":
                    await channel.send(FinishEvent(conversation_id=conversation_id, status="aborted", steps=steps))
                    return

                await self.store.replace(conversation_id, messages)
                session.update_activity()

                await channel.send(MessagesEvent(conversation_id=conversation_id, messages=messages))
                await channel.send(FinishEvent(conversation_id=conversation_id, status=status, steps=steps))

        except InvariantViolation as e:
            session.flag_inconsistent(e.detail)
            await channel.send(ErrorEvent(message=NEEDS_ATTENTION_MESSAGE))
            await channel.send(FinishEvent(conversation_id=conversation_id, status="aborted"))
        except TransportError as e:
            logger.error(f"Turn aborted for conversation {conversation_id}: {e}")
            await channel.send(ErrorEvent(message=bounded_message(str(e))))
            await channel.send(FinishEvent(conversation_id=conversation_id, status="aborted"))
        except asyncio.CancelledError:
            logger.info(f"Turn cancelled for conversation {conversation_id}; nothing persisted")
            raise
        except Exception as e:
            logger.error(f"Turn failed for conversation {conversation_id}: {e}", exc_info=True)
            await channel.send(ErrorEvent(message=UNEXPECTED_ERROR_MESSAGE))
            await channel.send(FinishEvent(conversation_id=conversation_id, status="aborted"))
        finally:
            channel.close()

    async def _execute_turn(
        self,
        session: ConversationSession,
        message: str | None,
        decisions: list[ApprovalDecision],
        channel: EventChannel,
    ) -> tuple[list[Message], TurnStatus, int]:
        """Compute the new history for a turn.

        Only tool calls resolved by the decision pass are persisted here, before
        the model runs. Everything else is left for the caller to commit.
        """
        conversation_id = session.conversation_id
        context = ToolContext(conversation_id=conversation_id, services=self.services)

        stored = await self.store.load(conversation_id)
        history = sanitize_history(stored, conversation_id)

        resolution = await self.executor.resolve(history, context, decisions, on_delta=channel.send)
        if resolution.violations:
            for violation in resolution.violations:
                session.flag_inconsistent(violation.detail)
            await channel.send(ErrorEvent(message=NEEDS_ATTENTION_MESSAGE))
            return resolution.messages, "aborted", 0

        history = resolution.messages
        if resolution.executed_call_ids:
            # Executed side effects are committed before the model is called again
            await self.store.replace(conversation_id, history)
            stored = list(history)
            logger.info(
                f"Committed {len(resolution.executed_call_ids)} resolved tool call(s) for conversation {conversation_id}"
            )

        if message is not None:
            history.append(Message.user_text(message))
            history = sanitize_history(history, conversation_id)
        elif resolution.is_paused:
            logger.info(f"Conversation {conversation_id} still awaiting a decision; not calling the model")
            return history, "tool-pending", 0

        loop = StepLoopController(self.model, self.executor, self.settings.step_budget)
        result = await loop.run(history, context, channel)

        for detail in result.violations:
            session.flag_inconsistent(detail)

        regressed = state_regressions(stored, result.messages)
        if regressed:
            raise InvariantViolation(conversation_id, f"tool call state moved backwards: {', '.join(regressed)}")

        return result.messages, result.status, result.steps

    async def get_conversation(self, conversation_id: str) -> ConversationSnapshot | None:
        """Read a conversation's persisted history.

        Returns:
            Snapshot, or None if the conversation is unknown
        """
        messages = await self.store.load(conversation_id)
        session = self.sessions.get_session(conversation_id)
        if not messages and session is None:
            return None
        return ConversationSnapshot(
            conversation_id=conversation_id,
            inconsistent=session.inconsistent if session else False,
            messages=messages,
        )

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Remove a conversation's history and session.

        Returns:
            True if anything was deleted
        """
        deleted_messages = await self.store.delete(conversation_id)
        deleted_session = self.sessions.delete_session(conversation_id)
        if deleted_messages or deleted_session:
            logger.info(f"Deleted conversation {conversation_id}")
            return True
        return False

    def acknowledge_inconsistency(self, conversation_id: str) -> bool:
        """Clear the inconsistent flag after operator review.

        Returns:
            False if the conversation has no session
        """
        session = self.sessions.get_session(conversation_id)
        if session is None:
            return False
        session.clear_inconsistent()
        return True

    def _validate_message(self, message: str) -> None:
        """Validate a user message before a turn starts.

        Raises:
            ValueError: If the message is empty or too long
        """
        if not message.strip():
            raise ValueError("Message cannot be empty.")
        if len(message) > self.settings.max_message_chars:
            raise ValueError(
                f"Your message is too long. Please keep messages under {self.settings.max_message_chars} characters."
            )


class ScheduledTaskRunner:
    """Background loop that fires due scheduled tasks into their conversations."""

    def __init__(
        self,
        conversations: ConversationService,
        schedules: ScheduleService | None = None,
        poll_seconds: float = 5.0,
    ):
        self.conversations = conversations
        self.schedules = schedules or schedule_service
        self.poll_seconds = poll_seconds
        self._task: asyncio.Task | None = None

    async def run_once(self, now: datetime | None = None) -> int:
        """Fire every task that is due. Returns how many fired successfully.

        A task is only completed once its turn has finished. Tasks whose turn
        is refused or aborted stay due and are retried on the next poll.
        """
        now = now or datetime.now(UTC)
        fired = 0
        for task in await self.schedules.due(now):
            try:
                status = await self.conversations.run_scheduled_task(task.conversation_id, task.description)
            except ConversationInconsistentError:
                logger.warning(f"Scheduled task {task.id} is waiting for operator attention on its conversation")
                continue
            except Exception as e:
                logger.error(f"Scheduled task {task.id} failed, will retry: {e}", exc_info=True)
                continue
            if status == "aborted":
                logger.warning(f"Scheduled task {task.id} was aborted, will retry")
                continue
            await self.schedules.complete(task.id, now)
            fired += 1
        return fired

    async def _loop(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.poll_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            logger.info(f"Starting scheduled task runner (poll every {self.poll_seconds}s)")
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Scheduled task runner stopped")


_conversation_service: ConversationService | None = None


def get_conversation_service() -> ConversationService:
    """Get or create conversation service instance."""
    global _conversation_service
    if _conversation_service is None:
        _conversation_service = ConversationService()
    return _conversation_service
