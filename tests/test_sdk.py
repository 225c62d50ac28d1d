"""
Unit tests for SDK layer.

Tests the OpenAI upstream client: request shape, chunk mapping, usage
reporting and error translation.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest
from openai import OpenAIError

from credit_meter.config.loader import MeterConfig
from credit_meter.core.errors import UpstreamUnavailable
from credit_meter.core.token_counter import TokenUsage
from credit_meter.sdk.openai_client import OpenAIUpstream


def _chunk(text=None, usage=None, model="gpt-4"):
    choices = [] if text is None else [SimpleNamespace(delta=SimpleNamespace(content=text))]
    return SimpleNamespace(choices=choices, usage=usage, model=model)


class FakeStreamResponse:
    """Async-iterable stand-in for the SDK's streaming response."""

    def __init__(self, chunks, error=None):
        self.chunks = chunks
        self.error = error
        self.close = AsyncMock()

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


def _client(create):
    client = Mock()
    client.chat.completions.create = create
    return client


class TestOpenAIUpstream:
    """Test OpenAIUpstream client wrapper."""

    def test_init_missing_model(self):
        with pytest.raises(ValueError, match="default_model is required"):
            OpenAIUpstream(default_model="", client=Mock())
        with pytest.raises(ValueError, match="default_model is required"):
            OpenAIUpstream(default_model=None, client=Mock())

    @patch('credit_meter.sdk.openai_client.AsyncOpenAI')
    def test_from_config(self, mock_openai_class, monkeypatch):
        monkeypatch.setenv("ROUTER_KEY", "sk-test")
        config = MeterConfig(
            default_model="openai/gpt-4o",
            provider_base_url="https://openrouter.ai/api/v1",
            provider_api_key_env="ROUTER_KEY",
            temperature=0.2,
            max_tokens=100,
        )

        upstream = OpenAIUpstream.from_config(config)

        mock_openai_class.assert_called_once_with(api_key="sk-test", base_url="https://openrouter.ai/api/v1")
        assert upstream.default_model == "openai/gpt-4o"
        assert upstream.temperature == 0.2
        assert upstream.max_tokens == 100

    @pytest.mark.asyncio
    async def test_stream_maps_chunks_and_usage(self):
        response = FakeStreamResponse([
            _chunk("Hel"),
            _chunk("lo"),
            _chunk(""),
            _chunk(usage=SimpleNamespace(prompt_tokens=5, completion_tokens=7)),
        ])
        create = AsyncMock(return_value=response)
        upstream = OpenAIUpstream("gpt-4", client=_client(create), temperature=0.5, max_tokens=50)

        chunks = [chunk async for chunk in upstream.stream([{"role": "user", "content": "hi"}])]

        assert [chunk.text for chunk in chunks] == ["Hel", "lo", ""]
        assert chunks[-1].usage == TokenUsage(prompt_tokens=5, completion_tokens=7)
        assert chunks[0].model == "gpt-4"
        response.close.assert_awaited_once()

        kwargs = create.call_args.kwargs
        assert kwargs["model"] == "gpt-4"
        assert kwargs["stream"] is True
        assert kwargs["stream_options"] == {"include_usage": True}
        assert kwargs["temperature"] == 0.5
        assert kwargs["max_tokens"] == 50

    @pytest.mark.asyncio
    async def test_stream_model_override(self):
        create = AsyncMock(return_value=FakeStreamResponse([]))
        upstream = OpenAIUpstream("gpt-4", client=_client(create))

        chunks = [chunk async for chunk in upstream.stream([{"role": "user", "content": "hi"}], model="other")]

        assert chunks == []
        assert create.call_args.kwargs["model"] == "other"
        assert "temperature" not in create.call_args.kwargs

    @pytest.mark.asyncio
    async def test_stream_request_error(self):
        create = AsyncMock(side_effect=OpenAIError("rate limited"))
        upstream = OpenAIUpstream("gpt-4", client=_client(create))

        with pytest.raises(UpstreamUnavailable) as exc_info:
            [chunk async for chunk in upstream.stream([{"role": "user", "content": "hi"}])]
        assert isinstance(exc_info.value.original_error, OpenAIError)

    @pytest.mark.asyncio
    async def test_stream_mid_stream_error_closes_response(self):
        response = FakeStreamResponse([_chunk("partial")], error=OpenAIError("connection reset"))
        upstream = OpenAIUpstream("gpt-4", client=_client(AsyncMock(return_value=response)))

        received = []
        with pytest.raises(UpstreamUnavailable):
            async for chunk in upstream.stream([{"role": "user", "content": "hi"}]):
                received.append(chunk.text)

        assert received == ["partial"]
        response.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_messages_rejected(self):
        upstream = OpenAIUpstream("gpt-4", client=_client(AsyncMock()))
        with pytest.raises(ValueError, match="messages is required"):
            await upstream.complete([])

    @pytest.mark.asyncio
    async def test_complete(self):
        response = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="Answer"))],
            usage=SimpleNamespace(prompt_tokens=3, completion_tokens=4),
            model="gpt-4-0613",
        )
        create = AsyncMock(return_value=response)
        upstream = OpenAIUpstream("gpt-4", client=_client(create))

        reply = await upstream.complete([{"role": "user", "content": "hi"}])

        assert reply.text == "Answer"
        assert reply.usage.total_tokens == 7
        assert reply.model == "gpt-4-0613"
        assert "stream" not in create.call_args.kwargs

    @pytest.mark.asyncio
    async def test_complete_without_usage(self):
        response = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=None))],
            usage=None,
            model=None,
        )
        upstream = OpenAIUpstream("gpt-4", client=_client(AsyncMock(return_value=response)))

        reply = await upstream.complete([{"role": "user", "content": "hi"}])

        assert reply.text == ""
        assert reply.usage is None
        assert reply.model == "gpt-4"

    @pytest.mark.asyncio
    async def test_complete_error(self):
        upstream = OpenAIUpstream("gpt-4", client=_client(AsyncMock(side_effect=OpenAIError("down"))))
        with pytest.raises(UpstreamUnavailable):
            await upstream.complete([{"role": "user", "content": "hi"}])
