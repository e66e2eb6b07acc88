"""Task scheduling tools: schedule, list and cancel."""

from datetime import UTC, datetime
from typing import Annotated, Literal

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field

from toolgate.errors import ToolExecutionError, ToolValidationError
from toolgate.services.schedules import ScheduleService, delayed_time
from toolgate.tools.base import AutonomousTool, ToolContext


class ScheduledWhen(BaseModel):
    type: Literal["scheduled"] = "scheduled"
    date: datetime = Field(..., description="When to run the task (ISO 8601)")


class DelayedWhen(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["delayed"] = "delayed"
    delay_in_seconds: int = Field(..., alias="delayInSeconds", ge=1, description="Seconds from now")


class CronWhen(BaseModel):
    type: Literal["cron"] = "cron"
    cron: str = Field(..., min_length=1, description="Cron expression for repeating tasks")


class NoSchedule(BaseModel):
    type: Literal["no-schedule"] = "no-schedule"


When = Annotated[ScheduledWhen | DelayedWhen | CronWhen | NoSchedule, Field(discriminator="type")]


class ScheduleTaskInput(BaseModel):
    """Input schema for scheduling a task."""

    model_config = ConfigDict(populate_by_name=True)

    description: str = Field(..., min_length=1, max_length=500, description="What the task should do")
    when: When
    due_date: str | None = Field(
        default=None,
        alias="dueDate",
        description="Optional due date for the task (ISO 8601 format or natural language)",
    )


class EmptyInput(BaseModel):
    """Empty input schema for tools that don't require parameters."""


class CancelTaskInput(BaseModel):
    """Input schema for cancelling a scheduled task."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(..., alias="taskId", min_length=1, description="The ID of the task to cancel")


def _schedules(ctx: ToolContext) -> ScheduleService:
    if ctx.services.schedules is None:
        raise ToolExecutionError("Scheduling is not available in this conversation.")
    return ctx.services.schedules


async def schedule_task(params: ScheduleTaskInput, ctx: ToolContext) -> str:
    when = params.when
    if isinstance(when, NoSchedule):
        raise ToolValidationError("scheduleTask", "Not a valid schedule input")

    schedules = _schedules(ctx)
    task_description = f"{params.description} (Due: {params.due_date})" if params.due_date else params.description

    match when:
        case ScheduledWhen(date=date):
            if date.tzinfo is None:
                date = date.replace(tzinfo=UTC)
            task = await schedules.schedule(ctx.conversation_id, "scheduled", task_description, time=date)
            scheduled_for = date.isoformat()
        case DelayedWhen(delay_in_seconds=delay):
            task = await schedules.schedule(ctx.conversation_id, "delayed", task_description, time=delayed_time(delay))
            scheduled_for = str(delay)
        case CronWhen(cron=cron):
            if not croniter.is_valid(cron):
                raise ToolValidationError("scheduleTask", f"Invalid cron expression: {cron}")
            task = await schedules.schedule(ctx.conversation_id, "cron", task_description, cron=cron)
            scheduled_for = cron

    response = f'Task {task.id} scheduled for type "{when.type}": {scheduled_for}'
    return f"{response} with due date: {params.due_date}" if params.due_date else response


async def get_scheduled_tasks(params: EmptyInput, ctx: ToolContext) -> str:
    tasks = await _schedules(ctx).list_tasks(ctx.conversation_id)
    if not tasks:
        return "No scheduled tasks found."
    return "\n".join(task.describe() for task in tasks)


async def cancel_scheduled_task(params: CancelTaskInput, ctx: ToolContext) -> str:
    cancelled = await _schedules(ctx).cancel(ctx.conversation_id, params.task_id)
    if not cancelled:
        raise ToolExecutionError(f"Task {params.task_id} was not found.")
    return f"Task {params.task_id} has been successfully canceled."


def create_schedule_task_tool() -> AutonomousTool:
    return AutonomousTool(
        name="scheduleTask",
        description=(
            "Schedule a task to be executed at a later time. Can optionally include a due date for the task. "
            "Only for internal task reminders, not calendar events."
        ),
        input_schema_class=ScheduleTaskInput,
        executor=schedule_task,
    )


def create_get_scheduled_tasks_tool() -> AutonomousTool:
    return AutonomousTool(
        name="getScheduledTasks",
        description="List all tasks that have been scheduled",
        input_schema_class=EmptyInput,
        executor=get_scheduled_tasks,
    )


def create_cancel_scheduled_task_tool() -> AutonomousTool:
    return AutonomousTool(
        name="cancelScheduledTask",
        description="Cancel a scheduled task using its ID",
        input_schema_class=CancelTaskInput,
        executor=cancel_scheduled_task,
    )
