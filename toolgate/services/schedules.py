"""Scheduled task service interface and in-memory implementation."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Literal, Protocol

from croniter import croniter
from cuid2 import cuid_wrapper

from toolgate.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()

ScheduleType = Literal["scheduled", "delayed", "cron"]


@dataclass
class ScheduledTask:
    """A task the agent asked to run later."""

    id: str
    conversation_id: str
    type: ScheduleType
    description: str
    time: datetime | None = None
    cron: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def describe(self) -> str:
        """Human-readable one-line summary."""
        if self.type == "cron":
            when = f"cron '{self.cron}', next {self.time.isoformat()}" if self.time else f"cron '{self.cron}'"
        else:
            when = self.time.isoformat() if self.time else "unknown time"
        return f"{self.id}: {self.description} ({self.type}, {when})"


class ScheduleService(Protocol):
    """Interface for scheduling tasks on behalf of a conversation."""

    async def schedule(
        self,
        conversation_id: str,
        schedule_type: ScheduleType,
        description: str,
        *,
        time: datetime | None = None,
        cron: str | None = None,
    ) -> ScheduledTask:
        """Record a new scheduled task.

        Args:
            conversation_id: Conversation that owns the task
            schedule_type: scheduled, delayed or cron
            description: What should happen when the task fires
            time: Fire time for scheduled and delayed tasks
            cron: Cron expression for cron tasks

        Returns:
            The stored task
        """
        ...

    async def list_tasks(self, conversation_id: str) -> list[ScheduledTask]:
        """List every pending task for a conversation."""
        ...

    async def cancel(self, conversation_id: str, task_id: str) -> bool:
        """Cancel a task. Returns False if it does not exist."""
        ...

    async def due(self, now: datetime) -> list[ScheduledTask]:
        """Return tasks whose fire time has passed, oldest first. Nothing is removed."""
        ...

    async def complete(self, task_id: str, fired_at: datetime) -> None:
        """Mark a task as fired: one-shot tasks are removed, cron tasks are re-armed."""
        ...


class InMemoryScheduleService:
    """In-memory schedule service.

    Every task carries its next fire time. Cron tasks get theirs from the
    expression and are re-armed after each firing.
    """

    def __init__(self):
        self.tasks: dict[str, ScheduledTask] = {}

    async def schedule(
        self,
        conversation_id: str,
        schedule_type: ScheduleType,
        description: str,
        *,
        time: datetime | None = None,
        cron: str | None = None,
    ) -> ScheduledTask:
        if schedule_type == "cron":
            if not cron or not croniter.is_valid(cron):
                raise ValueError(f"Invalid cron expression: {cron!r}")
            time = next_cron_time(cron, datetime.now(UTC))
        if schedule_type != "cron" and time is None:
            raise ValueError(f"{schedule_type} schedules need a time")

        task = ScheduledTask(
            id=cuid(),
            conversation_id=conversation_id,
            type=schedule_type,
            description=description,
            time=time,
            cron=cron,
        )
        self.tasks[task.id] = task
        logger.info(f"Scheduled task {task.id} for conversation {conversation_id}")
        return task

    async def list_tasks(self, conversation_id: str) -> list[ScheduledTask]:
        return [task for task in self.tasks.values() if task.conversation_id == conversation_id]

    async def cancel(self, conversation_id: str, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.conversation_id != conversation_id:
            return False
        del self.tasks[task_id]
        return True

    async def due(self, now: datetime) -> list[ScheduledTask]:
        due = [task for task in self.tasks.values() if task.time and task.time <= now]
        return sorted(due, key=lambda task: task.time)

    async def complete(self, task_id: str, fired_at: datetime) -> None:
        task = self.tasks.get(task_id)
        if task is None:
            return
        if task.type == "cron":
            task.time = next_cron_time(task.cron, max(fired_at, task.time))
            logger.info(f"Re-armed cron task {task.id} for {task.time.isoformat()}")
        else:
            del self.tasks[task_id]


def next_cron_time(expression: str, after: datetime) -> datetime:
    """First fire time of a cron expression strictly after the given moment."""
    return croniter(expression, after).get_next(datetime)


def delayed_time(delay_in_seconds: int, now: datetime | None = None) -> datetime:
    """Fire time for a delayed task."""
    return (now or datetime.now(UTC)) + timedelta(seconds=delay_in_seconds)


schedule_service = InMemoryScheduleService()
