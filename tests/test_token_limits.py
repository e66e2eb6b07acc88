"""Tests for token estimation, truncation and model streaming in the Anthropic client."""

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest
from anthropic import APIConnectionError

from toolgate.clients.anthropic import AnthropicClient, AnthropicConfig
from toolgate.errors import TransportError
from toolgate.models.llm import (
    LLMMessage,
    ModelStepFinished,
    ModelTextDelta,
    ModelToolCall,
    ModelToolCallStarted,
    ToolResultBlock,
    ToolUseBlock,
)


@pytest.fixture
def anthropic_client():
    """Create AnthropicClient for testing."""
    config = AnthropicConfig(max_conversation_tokens=10000, token_headroom=1000, max_retries=2, retry_delay=0)
    with patch.dict("os.environ", {"ANTHROPIC_API_KEY": "test-key"}):
        client = AnthropicClient(config=config)
    # Mock tokenizer for consistent testing
    client.tokenizer = Mock()
    client.rate_limiter = Mock(check_rate_limit=_async_noop)
    return client


async def _async_noop(*args, **kwargs):
    return None


class TestTokenEstimation:
    """Tests for token estimation."""

    def test_estimate_uses_tokenizer(self, anthropic_client):
        """Test that the tokenizer count is used when available."""
        anthropic_client.tokenizer.encode.return_value = ["token"] * 42
        assert anthropic_client.estimate_message_tokens("anything") == 42

    def test_estimate_fallback_without_tokenizer(self, anthropic_client):
        """Test the four-characters-per-token fallback."""
        anthropic_client.tokenizer = None
        assert anthropic_client.estimate_message_tokens("a" * 400) == 100

    def test_missing_api_key(self):
        """Test that the client refuses to start without an API key."""
        with patch.dict("os.environ", {}, clear=True), pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
            AnthropicClient()


class TestConversationTruncation:
    """Tests for conversation truncation functionality."""

    def test_truncate_conversation_within_limit(self, anthropic_client):
        """Test that conversations within limits are not truncated."""
        anthropic_client.tokenizer.encode.return_value = ["token"] * 100

        messages = [
            LLMMessage(role="user", content="Message 1"),
            LLMMessage(role="assistant", content="Response 1"),
            LLMMessage(role="user", content="Message 2"),
        ]

        result = anthropic_client.truncate_conversation(messages, "System prompt")

        assert result == messages

    def test_truncate_conversation_exceeds_limit(self, anthropic_client):
        """Test that conversations exceeding limits are truncated from beginning."""

        def mock_encode(text):
            if "System prompt" in text:
                return ["token"] * 500
            return ["token"] * 3000

        anthropic_client.tokenizer.encode.side_effect = mock_encode

        messages = [
            LLMMessage(role="user", content="Message 1"),
            LLMMessage(role="assistant", content="Response 1"),
            LLMMessage(role="user", content="Message 2"),
            LLMMessage(role="assistant", content="Response 2"),
            LLMMessage(role="user", content="Message 3"),
        ]

        result = anthropic_client.truncate_conversation(messages, "System prompt")

        assert len(result) < len(messages)
        assert result[0].role == "user"
        assert result[-1].content == "Message 3"

    def test_truncation_never_starts_with_tool_result(self, anthropic_client):
        """Test that a tool result is never kept without the tool use it answers."""

        def mock_encode(text):
            return ["token"] * (5000 if "old" in text else 1000)

        anthropic_client.tokenizer.encode.side_effect = mock_encode

        messages = [
            LLMMessage(role="user", content="old question"),
            LLMMessage(role="assistant", content=[ToolUseBlock(id="toolu_1", name="getLocalTime", input={})]),
            LLMMessage(role="user", content=[ToolResultBlock(tool_use_id="toolu_1", content="noon")]),
            LLMMessage(role="assistant", content="It is noon."),
            LLMMessage(role="user", content="thanks"),
        ]

        result = anthropic_client.truncate_conversation(messages, "System prompt")

        assert result == messages[-1:]

    def test_truncate_conversation_empty_messages(self, anthropic_client):
        """Test truncation with empty message list."""
        assert anthropic_client.truncate_conversation([], "System prompt") == []


class _FakeStream:
    """Stands in for the SDK's streaming context manager."""

    def __init__(self, events, final_message=None, error=None):
        self.events = events
        self.final_message = final_message
        self.error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self.events:
            yield event
        if self.error:
            raise self.error

    async def get_final_message(self):
        return self.final_message


def _connection_error() -> APIConnectionError:
    return APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))


def _collect(client, messages):
    async def go():
        return [event async for event in client.stream_message(messages, "System prompt")]

    return asyncio.run(go())


class TestStreamMessage:
    """Tests for streaming model output."""

    def test_stream_yields_text_tool_calls_and_finish(self, anthropic_client):
        """Test the translation of SDK stream events into model events."""
        anthropic_client.tokenizer.encode.return_value = ["token"] * 10
        final = SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="Let me check."),
                SimpleNamespace(type="tool_use", id="toolu_1", name="getLocalTime", input={"location": "UTC"}),
            ],
            stop_reason="tool_use",
            usage=SimpleNamespace(
                input_tokens=12, output_tokens=7, cache_creation_input_tokens=None, cache_read_input_tokens=None
            ),
        )
        events = [
            SimpleNamespace(type="text", text="Let me check."),
            SimpleNamespace(
                type="content_block_start",
                content_block=SimpleNamespace(type="tool_use", id="toolu_1", name="getLocalTime"),
            ),
        ]
        anthropic_client.client = MagicMock()
        anthropic_client.client.messages.stream.return_value = _FakeStream(events, final)

        result = _collect(anthropic_client, [LLMMessage(role="user", content="time?")])

        assert result[0] == ModelTextDelta(text="Let me check.")
        assert result[1] == ModelToolCallStarted(tool_call_id="toolu_1", tool_name="getLocalTime")
        assert result[2] == ModelToolCall(tool_call_id="toolu_1", tool_name="getLocalTime", input={"location": "UTC"})
        assert isinstance(result[3], ModelStepFinished)
        assert result[3].usage.total_tokens == 19

    def test_connection_error_is_retried_then_raised(self, anthropic_client):
        """Test that retryable failures are retried and finally raise TransportError."""
        anthropic_client.tokenizer.encode.return_value = ["token"] * 10
        anthropic_client.client = MagicMock()
        anthropic_client.client.messages.stream.side_effect = lambda **kwargs: _FakeStream([], error=_connection_error())

        with pytest.raises(TransportError):
            _collect(anthropic_client, [LLMMessage(role="user", content="time?")])

        assert anthropic_client.client.messages.stream.call_count == 2

    def test_failure_after_output_is_not_retried(self, anthropic_client):
        """Test that a failure mid-stream is not retried once text has been emitted."""
        anthropic_client.tokenizer.encode.return_value = ["token"] * 10
        anthropic_client.client = MagicMock()
        anthropic_client.client.messages.stream.return_value = _FakeStream(
            [SimpleNamespace(type="text", text="Partial")], error=_connection_error()
        )

        with pytest.raises(TransportError) as exc_info:
            _collect(anthropic_client, [LLMMessage(role="user", content="time?")])

        assert not exc_info.value.retryable
        assert anthropic_client.client.messages.stream.call_count == 1


if __name__ == "__main__":
    pytest.main([__file__])
