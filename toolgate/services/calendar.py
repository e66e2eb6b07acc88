"""Calendar service interface and implementations."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from cuid2 import cuid_wrapper

cuid = cuid_wrapper()


@dataclass
class CalendarEvent:
    """Calendar event as requested by the user.

    Times are kept exactly as supplied; interpreting them is the calendar
    backend's job.
    """

    id: str
    conversation_id: str
    title: str
    start_time: str
    end_time: str | None = None
    description: str | None = None
    location: str | None = None
    attendees: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class CalendarService(Protocol):
    """Interface for calendar backends."""

    async def create_event(
        self,
        conversation_id: str,
        title: str,
        start_time: str,
        *,
        end_time: str | None = None,
        description: str | None = None,
        location: str | None = None,
        attendees: list[str] | None = None,
    ) -> CalendarEvent:
        """Create an event.

        Returns:
            The created event
        """
        ...


class InMemoryCalendarService:
    """In-memory calendar that records created events."""

    def __init__(self):
        self.events: list[CalendarEvent] = []

    async def create_event(
        self,
        conversation_id: str,
        title: str,
        start_time: str,
        *,
        end_time: str | None = None,
        description: str | None = None,
        location: str | None = None,
        attendees: list[str] | None = None,
    ) -> CalendarEvent:
        event = CalendarEvent(
            id=cuid(),
            conversation_id=conversation_id,
            title=title,
            start_time=start_time,
            end_time=end_time,
            description=description,
            location=location,
            attendees=list(attendees or []),
        )
        self.events.append(event)
        return event


calendar_service = InMemoryCalendarService()
