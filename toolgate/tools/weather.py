"""Weather information tool (requires confirmation)."""

from pydantic import BaseModel, Field

from toolgate.tools.base import ConfirmedTool, ToolContext


class WeatherInput(BaseModel):
    """Input schema for the weather tool."""

    city: str = Field(..., min_length=1, max_length=100, description="City to report the weather for")


async def get_weather_information(params: WeatherInput, ctx: ToolContext) -> str:
    return f"The weather in {params.city} is sunny"


def create_weather_tool() -> ConfirmedTool:
    return ConfirmedTool(
        name="getWeatherInformation",
        description="Show the weather in a given city to the user. Requires user approval.",
        input_schema_class=WeatherInput,
        executor=get_weather_information,
    )
