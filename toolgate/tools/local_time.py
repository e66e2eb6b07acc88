"""Local time tool."""

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from toolgate.errors import ToolExecutionError
from toolgate.tools.base import AutonomousTool, ToolContext


class LocalTimeInput(BaseModel):
    """Input schema for the local time tool."""

    location: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="IANA time zone name for the location, e.g. Europe/London",
        examples=["Europe/London", "America/New_York"],
    )


async def get_local_time(params: LocalTimeInput, ctx: ToolContext) -> str:
    try:
        zone = ZoneInfo(params.location.strip())
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ToolExecutionError(f"Unknown location '{params.location}'. Use an IANA time zone name.") from e

    now = datetime.now(zone)
    return f"The local time in {params.location} is {now.strftime('%I:%M %p')} ({now.strftime('%A, %B %d, %Y')})."


def create_local_time_tool() -> AutonomousTool:
    return AutonomousTool(
        name="getLocalTime",
        description="Get the local time for a specified location. Runs without user confirmation.",
        input_schema_class=LocalTimeInput,
        executor=get_local_time,
    )
