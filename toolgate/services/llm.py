"""Language model interface and the Anthropic-backed implementation."""

import json
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Protocol

from toolgate.clients.anthropic import AnthropicClient, AnthropicConfig, get_anthropic_client
from toolgate.config import AgentSettings
from toolgate.models.llm import (
    ContentBlock,
    LLMMessage,
    LLMToolDefinition,
    ModelEvent,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from toolgate.models.messages import Message, TextPart, ToolInvocationPart
from toolgate.utils.logging import get_logger

logger = get_logger(__name__)

BASE_SYSTEM_PROMPT = """You are a helpful assistant that performs actions by calling tools.

When the user asks for an action, call the matching tool instead of describing it.
Some tools require the user's approval; call them anyway and wait for the decision.
If a tool result says the user denied the call, acknowledge it and do not retry."""


class LanguageModel(Protocol):
    """Anything that can stream one model step over a conversation."""

    def stream_step(self, messages: list[Message], tools: list[LLMToolDefinition]) -> AsyncIterator[ModelEvent]:
        """Stream one generation step.

        Args:
            messages: Sanitized history, oldest first
            tools: Model-facing tool definitions

        Yields:
            ModelTextDelta, ModelToolCallStarted, ModelToolCall and finally ModelStepFinished

        Raises:
            TransportError: If the model cannot be reached
        """
        ...


def _tool_output_text(output: object) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, default=str)


def to_llm_messages(messages: list[Message]) -> tuple[str, list[LLMMessage]]:
    """Convert history into provider messages.

    Resolved tool invocations become a tool_use block followed by a tool_result
    in the next user turn. Unresolved invocations are never sent. System
    messages are folded into the returned system text.

    Returns:
        Extra system text and the provider message list
    """
    system_text: list[str] = []
    converted: list[LLMMessage] = []

    def append(role: str, blocks: list[ContentBlock]) -> None:
        if not blocks:
            return
        if converted and converted[-1].role == role and isinstance(converted[-1].content, list):
            converted[-1].content.extend(blocks)
        else:
            converted.append(LLMMessage(role=role, content=list(blocks)))

    for message in messages:
        if message.role == "system":
            system_text.append(message.text)
            continue

        if message.role == "user":
            append("user", [TextBlock(text=part.text) for part in message.parts if isinstance(part, TextPart)])
            continue

        assistant_blocks: list[ContentBlock] = []
        results: list[ContentBlock] = []
        for part in message.parts:
            if isinstance(part, TextPart):
                if results:
                    append("assistant", assistant_blocks)
                    append("user", results)
                    assistant_blocks, results = [], []
                if part.text.strip():
                    assistant_blocks.append(TextBlock(text=part.text))
            elif isinstance(part, ToolInvocationPart) and part.is_resolved:
                assistant_blocks.append(ToolUseBlock(id=part.tool_call_id, name=part.tool_name, input=part.input))
                output = _tool_output_text(part.output)
                results.append(
                    ToolResultBlock(tool_use_id=part.tool_call_id, content=output, is_error=output.startswith("Error"))
                )
        append("assistant", assistant_blocks)
        append("user", results)

    return "\n\n".join(text for text in system_text if text), converted


def get_system_prompt(extra: str = "") -> str:
    """Build the system prompt for one step."""
    prompt = BASE_SYSTEM_PROMPT
    prompt += f"\n\nCurrent date and time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
    if extra:
        prompt += f"\n\n{extra}"
    return prompt


class AnthropicLanguageModel:
    """LanguageModel backed by the Anthropic Messages API."""

    def __init__(self, client: AnthropicClient | None = None):
        """Initialize the model.

        Args:
            client: Anthropic client (defaults to global instance)
        """
        self.client = client or get_anthropic_client()

    async def stream_step(self, messages: list[Message], tools: list[LLMToolDefinition]) -> AsyncIterator[ModelEvent]:
        extra_system, llm_messages = to_llm_messages(messages)
        logger.debug(f"Calling LLM with {len(llm_messages)} messages and {len(tools)} tools")
        async for event in self.client.stream_message(llm_messages, get_system_prompt(extra_system), tools):
            yield event


_language_model: LanguageModel | None = None


def get_language_model(settings: AgentSettings | None = None) -> LanguageModel:
    """Get or create the Anthropic-backed language model."""
    global _language_model
    if _language_model is None:
        config = None
        if settings is not None:
            config = AnthropicConfig(
                model=settings.model, max_tokens=settings.max_tokens, temperature=settings.temperature
            )
        _language_model = AnthropicLanguageModel(get_anthropic_client(config))
    return _language_model
