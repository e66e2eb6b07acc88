"""Calendar event creation tool (requires confirmation)."""

from pydantic import BaseModel, ConfigDict, Field

from toolgate.errors import ToolExecutionError
from toolgate.tools.base import ConfirmedTool, ToolContext


class CalendarEventInput(BaseModel):
    """Input schema for creating a calendar event."""

    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Event title (extract from the user's request, e.g. 'Code Review', 'Team Meeting')",
    )
    description: str | None = Field(default=None, description="Optional description or details for the event")
    start_time: str = Field(
        ...,
        alias="startTime",
        min_length=1,
        description="Start time in natural language ('tomorrow at 2pm') or ISO format",
    )
    end_time: str | None = Field(
        default=None,
        alias="endTime",
        description="End time in natural language or ISO format. Defaults to 1 hour after start",
    )
    location: str | None = Field(default=None, description="Optional location for the event")
    attendees: list[str] | None = Field(default=None, description="Optional list of email addresses to invite")


async def create_calendar_event(params: CalendarEventInput, ctx: ToolContext) -> str:
    calendar = ctx.services.calendar
    if calendar is None:
        raise ToolExecutionError("Calendar access is not configured.")

    event = await calendar.create_event(
        ctx.conversation_id,
        params.title,
        params.start_time,
        end_time=params.end_time,
        description=params.description,
        location=params.location,
        attendees=params.attendees,
    )
    return f"Calendar event '{event.title}' created for {event.start_time} (event id {event.id})."


def create_calendar_event_tool() -> ConfirmedTool:
    return ConfirmedTool(
        name="createCalendarEvent",
        description=(
            "Create an event in the user's calendar. Call this when the user wants to block time, "
            "schedule a meeting, or add something to their calendar. Requires user approval."
        ),
        input_schema_class=CalendarEventInput,
        executor=create_calendar_event,
    )
