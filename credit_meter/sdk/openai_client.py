"""
OpenAI-compatible upstream client.

Wraps the async OpenAI SDK (or any OpenAI-compatible endpoint such as
OpenRouter) as the provider behind StreamRelay. The client is constructed
explicitly and injected; nothing here is module-level state.
"""

import os
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from ..config.loader import MeterConfig
from ..core.errors import UpstreamUnavailable
from ..core.token_counter import TokenUsage
from ..stream.relay import UpstreamChunk, UpstreamReply


def _usage_from_response(usage: Any) -> Optional[TokenUsage]:
    if usage is None:
        return None
    return TokenUsage.from_counts(
        getattr(usage, "prompt_tokens", 0),
        getattr(usage, "completion_tokens", 0),
    )


class OpenAIUpstream:
    """Chat completions provider for StreamRelay.

    Every provider failure is raised as UpstreamUnavailable so the relay can
    report it without billing.
    """

    def __init__(
        self,
        default_model: str,
        client: Optional[AsyncOpenAI] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ):
        """Initialize the upstream client.

        Args:
            default_model: Model used when a call does not name one (required)
            client: Preconfigured AsyncOpenAI client; built from api_key/base_url if omitted
            api_key: Provider API key
            base_url: Provider base URL, e.g. https://openrouter.ai/api/v1
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)

        Raises:
            ValueError: If default_model is missing/empty
        """
        if not default_model or not default_model.strip():
            raise ValueError("default_model is required and cannot be empty")

        self.default_model = default_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    @classmethod
    def from_config(cls, config: MeterConfig, client: Optional[AsyncOpenAI] = None) -> "OpenAIUpstream":
        return cls(
            default_model=config.default_model,
            client=client,
            api_key=os.environ.get(config.provider_api_key_env),
            base_url=config.provider_base_url,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )

    def _request(self, messages: List[Dict[str, Any]], model: Optional[str], **kwargs: Any) -> Dict[str, Any]:
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        request: Dict[str, Any] = {"model": model or self.default_model, "messages": messages}
        if self.temperature is not None:
            request["temperature"] = self.temperature
        if self.max_tokens is not None:
            request["max_tokens"] = self.max_tokens
        request.update(kwargs)
        return request

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
    ) -> AsyncIterator[UpstreamChunk]:
        """Stream chunks from the provider.

        Usage counters are requested with ``stream_options.include_usage`` and
        arrive on the final chunk when the provider supports it. Closing this
        iterator closes the underlying HTTP response.
        """
        request = self._request(messages, model, stream=True, stream_options={"include_usage": True})
        try:
            response = await self.client.chat.completions.create(**request)
        except OpenAIError as e:
            raise UpstreamUnavailable(f"OpenAI streaming error: {e}", original_error=e)

        try:
            async for chunk in response:
                text = ""
                if chunk.choices and chunk.choices[0].delta is not None:
                    text = chunk.choices[0].delta.content or ""
                usage = _usage_from_response(getattr(chunk, "usage", None))
                if text or usage is not None:
                    yield UpstreamChunk(text=text, usage=usage, model=getattr(chunk, "model", None))
        except OpenAIError as e:
            raise UpstreamUnavailable(f"OpenAI streaming failed: {e}", original_error=e)
        finally:
            await response.close()

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
    ) -> UpstreamReply:
        """Create a single chat completion."""
        request = self._request(messages, model)
        try:
            response = await self.client.chat.completions.create(**request)
        except OpenAIError as e:
            raise UpstreamUnavailable(f"OpenAI completion error: {e}", original_error=e)

        if not response.choices:
            raise UpstreamUnavailable("OpenAI response contained no choices")
        text = response.choices[0].message.content or ""
        return UpstreamReply(
            text=text,
            usage=_usage_from_response(response.usage),
            model=getattr(response, "model", None) or request["model"],
        )
