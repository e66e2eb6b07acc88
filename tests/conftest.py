"""Shared fixtures and fakes for the test suite."""

import itertools
from collections.abc import AsyncIterator, Callable

import pytest
from pydantic import BaseModel

from toolgate.config import AgentSettings
from toolgate.errors import TransportError
from toolgate.models.llm import (
    LLMToolDefinition,
    ModelEvent,
    ModelStepFinished,
    ModelTextDelta,
    ModelToolCall,
    ModelToolCallStarted,
)
from toolgate.models.messages import Message, TextPart, ToolInvocationPart
from toolgate.services.calendar import InMemoryCalendarService
from toolgate.services.message_store import InMemoryMessageStore
from toolgate.services.schedules import InMemoryScheduleService
from toolgate.services.session_manager import InMemorySessionManager
from toolgate.tools.base import ToolContext, ToolServices
from toolgate.tools.registry import ToolsRegistry


def text_step(text: str) -> list[ModelEvent]:
    """A model step that only answers with text."""
    return [ModelTextDelta(text=text), ModelStepFinished(stop_reason="end_turn")]


def tool_step(*calls: tuple[str, str, dict], text: str | None = None) -> list[ModelEvent]:
    """A model step proposing the given (tool_call_id, tool_name, input) calls."""
    events: list[ModelEvent] = []
    if text:
        events.append(ModelTextDelta(text=text))
    for tool_call_id, tool_name, tool_input in calls:
        events.append(ModelToolCallStarted(tool_call_id=tool_call_id, tool_name=tool_name))
    for tool_call_id, tool_name, tool_input in calls:
        events.append(ModelToolCall(tool_call_id=tool_call_id, tool_name=tool_name, input=tool_input))
    events.append(ModelStepFinished(stop_reason="tool_use"))
    return events


class ScriptedLanguageModel:
    """LanguageModel fake that plays back prepared steps and records what it was shown."""

    def __init__(
        self,
        steps: list[list[ModelEvent]] | None = None,
        step_factory: Callable[[int], list[ModelEvent]] | None = None,
    ):
        self.steps = list(steps or [])
        self.step_factory = step_factory
        self.calls: list[list[Message]] = []
        self.tools_seen: list[list[str]] = []

    async def stream_step(self, messages: list[Message], tools: list[LLMToolDefinition]) -> AsyncIterator[ModelEvent]:
        self.calls.append([message.model_copy(deep=True) for message in messages])
        self.tools_seen.append([tool.name for tool in tools])
        if self.step_factory is not None:
            events = self.step_factory(len(self.calls))
        elif self.steps:
            events = self.steps.pop(0)
        else:
            events = text_step("Done.")
        for event in events:
            yield event


class FailingLanguageModel:
    """LanguageModel fake whose transport fails, optionally after some text."""

    def __init__(self, partial_text: str | None = None):
        self.partial_text = partial_text
        self.calls = 0

    async def stream_step(self, messages: list[Message], tools: list[LLMToolDefinition]) -> AsyncIterator[ModelEvent]:
        self.calls += 1
        if self.partial_text:
            yield ModelTextDelta(text=self.partial_text)
        raise TransportError("The language model is unavailable")


def always_autonomous_step_factory() -> Callable[[int], list[ModelEvent]]:
    """Step factory for a model that calls getLocalTime forever."""
    counter = itertools.count(1)

    def factory(_step: int) -> list[ModelEvent]:
        return tool_step((f"call_time_{next(counter)}", "getLocalTime", {"location": "UTC"}))

    return factory


def assistant_with_call(
    tool_call_id: str,
    tool_name: str,
    tool_input: dict | None = None,
    text: str | None = None,
    state: str = "input-available",
) -> Message:
    """An assistant message ending in an unresolved tool call."""
    parts: list = []
    if text:
        parts.append(TextPart(text=text))
    parts.append(ToolInvocationPart(tool_call_id=tool_call_id, tool_name=tool_name, input=tool_input or {}, state=state))
    return Message(role="assistant", parts=parts)


class RecordingInput(BaseModel):
    value: str = ""


@pytest.fixture
def schedules() -> InMemoryScheduleService:
    return InMemoryScheduleService()


@pytest.fixture
def calendar() -> InMemoryCalendarService:
    return InMemoryCalendarService()


@pytest.fixture
def tool_services(schedules, calendar) -> ToolServices:
    return ToolServices(schedules=schedules, calendar=calendar)


@pytest.fixture
def context(tool_services) -> ToolContext:
    return ToolContext(conversation_id="conv_test", services=tool_services)


@pytest.fixture
def registry() -> ToolsRegistry:
    return ToolsRegistry()


@pytest.fixture
def store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def sessions() -> InMemorySessionManager:
    return InMemorySessionManager()


@pytest.fixture
def settings() -> AgentSettings:
    return AgentSettings(step_budget=10)
