"""Anthropic API client with rate limiting, truncation and error handling."""

import asyncio
import os
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass

import tiktoken
from anthropic import APIConnectionError, APIError, APIStatusError, AsyncAnthropic
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from toolgate.errors import TransportError
from toolgate.models.llm import (
    LLMMessage,
    LLMToolDefinition,
    LLMUsage,
    ModelEvent,
    ModelStepFinished,
    ModelTextDelta,
    ModelToolCall,
    ModelToolCallStarted,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from toolgate.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    model: str = "claude-3-5-sonnet-20241022"
    max_tokens: int = 1024
    temperature: float = 0.1
    max_retries: int = 3
    retry_delay: float = 1.0

    # Token limits for truncation
    max_conversation_tokens: int = 200000
    token_headroom: int = 2000  # Reserve tokens for response


class AnthropicRateLimiter:
    """Request and token rate limiter backed by the limits library."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "anthropic") -> None:
        """Wait until the request fits within the configured limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_window(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=max(1, estimated_tokens)):
            await self._wait_for_window(self.token_limit, token_identifier, "Token")

    async def _wait_for_window(self, limit, identifier: str, label: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{label} rate limit exceeded, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


def _block_text(block: TextBlock | ToolUseBlock | ToolResultBlock) -> str:
    if isinstance(block, TextBlock):
        return block.text
    if isinstance(block, ToolUseBlock):
        return block.name + str(block.input)
    return block.content


def _message_text(message: LLMMessage) -> str:
    if isinstance(message.content, str):
        return message.content
    return "".join(_block_text(block) for block in message.content)


def _has_tool_results(message: LLMMessage) -> bool:
    return isinstance(message.content, list) and any(isinstance(b, ToolResultBlock) for b in message.content)


class AnthropicClient:
    """Low-level Anthropic API client with rate limiting and error handling."""

    tokenizer: tiktoken.Encoding | None = None
    client: AsyncAnthropic
    config: AnthropicConfig
    rate_limiter: AnthropicRateLimiter = AnthropicRateLimiter()

    def __init__(self, api_key: str | None = None, config: AnthropicConfig | None = None):
        """Initialize Anthropic client.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Client configuration
        """
        anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required")

        # Retries are handled here so they can stop once output has been streamed
        self.client = AsyncAnthropic(api_key=anthropic_api_key, max_retries=0)
        self.config = config or AnthropicConfig()

        try:
            # Close approximation for Claude
            self.tokenizer = tiktoken.encoding_for_model("gpt-4")
        except Exception:
            self.tokenizer = None

    async def stream_message(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[LLMToolDefinition] | None = None,
        **kwargs,
    ) -> AsyncIterator[ModelEvent]:
        """Stream one model response as provider-agnostic events.

        Args:
            messages: Conversation history in provider format
            system_prompt: System prompt
            tools: Tool definitions to advertise
            **kwargs: Overrides for model, max_tokens and temperature

        Yields:
            Text deltas, tool call starts, completed tool calls, then a finish event

        Raises:
            TransportError: If the API cannot be reached or fails after output started
        """
        truncated_messages = self.truncate_conversation(messages, system_prompt, tools)

        estimated_tokens = self._estimate_tokens(truncated_messages, system_prompt)
        logger.debug(f"Estimated tokens: {estimated_tokens}")
        await self.rate_limiter.check_rate_limit(estimated_tokens)

        request_params = {
            "model": kwargs.get("model", self.config.model),
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
            "temperature": kwargs.get("temperature", self.config.temperature),
            "system": system_prompt,
            "messages": [msg.model_dump() for msg in truncated_messages],
        }
        if tools:
            request_params["tools"] = [tool.model_dump() for tool in tools]

        for attempt in range(self.config.max_retries):
            emitted = False
            try:
                async with self.client.messages.stream(**request_params) as stream:
                    async for event in stream:
                        if event.type == "text":
                            emitted = True
                            yield ModelTextDelta(text=event.text)
                        elif event.type == "content_block_start" and event.content_block.type == "tool_use":
                            emitted = True
                            yield ModelToolCallStarted(
                                tool_call_id=event.content_block.id, tool_name=event.content_block.name
                            )
                    final_message = await stream.get_final_message()
            except APIError as e:
                delay = None if emitted else self._retry_delay(e, attempt)
                if delay is None:
                    logger.error(f"Anthropic request failed: {e}")
                    raise TransportError("The language model is unavailable", retryable=not emitted) from e
                logger.warning(f"Anthropic request failed (attempt {attempt + 1}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            for block in final_message.content:
                if block.type == "tool_use":
                    yield ModelToolCall(tool_call_id=block.id, tool_name=block.name, input=dict(block.input or {}))

            usage = None
            if final_message.usage:
                usage = LLMUsage(
                    input_tokens=final_message.usage.input_tokens,
                    output_tokens=final_message.usage.output_tokens,
                    cache_creation_input_tokens=final_message.usage.cache_creation_input_tokens or 0,
                    cache_read_input_tokens=final_message.usage.cache_read_input_tokens or 0,
                )
            logger.debug(f"Response received - Stop reason: {final_message.stop_reason}")
            yield ModelStepFinished(stop_reason=final_message.stop_reason, usage=usage)
            return

        raise TransportError(f"Failed to complete request after {self.config.max_retries} attempts")

    def _retry_delay(self, error: APIError, attempt: int) -> float | None:
        """Seconds to wait before retrying, or None if the error is not retryable."""
        if attempt >= self.config.max_retries - 1:
            return None

        if isinstance(error, APIStatusError):
            if error.status_code == 429:  # Rate limit exceeded
                retry_after = int(error.response.headers.get("retry-after", 60))
                return float(retry_after) if retry_after < 120 else None
            if error.status_code >= 500:
                return self.config.retry_delay * (2**attempt)
            return None

        if isinstance(error, APIConnectionError):
            return self.config.retry_delay * (2**attempt)

        return None

    def _estimate_tokens(self, messages: list[LLMMessage], system_prompt: str) -> int:
        """Estimate token count for rate limiting."""
        text_content = system_prompt + "".join(_message_text(message) for message in messages)
        return self.estimate_message_tokens(text_content)

    def estimate_message_tokens(self, message: str) -> int:
        """Estimate token count for a single message."""
        try:
            return len(self.tokenizer.encode(message)) if self.tokenizer else len(message) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(message) // 4

    def truncate_conversation(
        self, messages: list[LLMMessage], system_prompt: str, tools: list[LLMToolDefinition] | None = None
    ) -> list[LLMMessage]:
        """Truncate conversation from the beginning to fit within token limits.

        The result always starts with a plain user message, so a tool result is
        never separated from the tool use it answers.
        """
        if not messages:
            return messages

        available_tokens = self.config.max_conversation_tokens - self.config.token_headroom
        available_tokens -= self.estimate_message_tokens(system_prompt)
        if tools:
            tool_content = "".join(tool.name + tool.description + str(tool.input_schema) for tool in tools)
            available_tokens -= self.estimate_message_tokens(tool_content)

        truncated_messages: list[LLMMessage] = []
        current_tokens = 0

        for message in reversed(messages):
            message_tokens = self.estimate_message_tokens(_message_text(message))
            if current_tokens + message_tokens > available_tokens:
                break
            truncated_messages.insert(0, message)
            current_tokens += message_tokens

        while truncated_messages and (
            truncated_messages[0].role != "user" or _has_tool_results(truncated_messages[0])
        ):
            truncated_messages.pop(0)

        if len(truncated_messages) < len(messages):
            logger.warning(
                f"Truncated conversation from {len(messages)} to {len(truncated_messages)} messages "
                f"to fit within {available_tokens} token limit"
            )

        return truncated_messages


_anthropic_client: AnthropicClient | None = None


def get_anthropic_client(config: AnthropicConfig | None = None) -> AnthropicClient:
    """Get or create Anthropic client instance."""
    global _anthropic_client
    if _anthropic_client is None:
        _anthropic_client = AnthropicClient(config=config)
    return _anthropic_client
