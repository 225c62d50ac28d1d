"""
Streaming relay between a model provider and a metered caller.

Drives one provider call, forwards visible text as it arrives, and bills the
account exactly once after a normal end. Canceled and failed calls are never
billed. Events are pulled from an async iterator::

    async for event in relay.stream(account_id, messages, cancel=disconnected):
        send(event)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

from .events import Canceled, Complete, Credits, Delta, End, Error, StreamEvent
from .extractor import DEFAULT_CLOSE_MARKER, DEFAULT_OPEN_MARKER, StreamStateExtractor
from .state import StreamState
from ..core.deduction import ChargeFailure, ChargeResult, DeductionCoordinator
from ..core.errors import StreamCanceled, UpstreamUnavailable
from ..core.token_counter import DEFAULT_CHARS_PER_TOKEN, TokenUsage, estimate_usage
from ..storage.repository import utcnow

logger = logging.getLogger(__name__)

Message = Dict[str, Any]

UPSTREAM_ERROR_MESSAGE = "AI service temporarily unavailable"

_FAILURE_MESSAGES = {
    ChargeFailure.NOT_FOUND: "Account not found",
    ChargeFailure.EXPIRED: "Credits have expired",
    ChargeFailure.INSUFFICIENT: "Insufficient credits",
}


@dataclass(frozen=True)
class UpstreamChunk:
    """One provider frame: a text increment and/or usage counters."""
    text: str = ""
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None


@dataclass(frozen=True)
class UpstreamReply:
    text: str
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None


class ChatUpstream(Protocol):
    """The model provider, reduced to what the relay needs."""

    def stream(self, messages: List[Message], model: Optional[str] = None) -> AsyncIterator[UpstreamChunk]:
        ...

    async def complete(self, messages: List[Message], model: Optional[str] = None) -> UpstreamReply:
        ...


@dataclass(frozen=True)
class ChatReply:
    """Result of a single, non-streamed metered completion."""
    reply: str
    usage: TokenUsage
    model: str
    charge: ChargeResult
    state: Optional[StreamState] = None


_EXHAUSTED = object()


class StreamRelay:
    """Relays one provider call per ``stream``/``complete`` invocation.

    Args:
        upstream: Provider client; injected so tests can use a fake
        coordinator: The only path used to charge the account
        default_model: Model used when a call does not name one
        service_type: Label written to usage records
        chars_per_token: Divisor for the usage estimate fallback
        clock: Returns the time used to stamp extracted state
    """

    def __init__(
        self,
        upstream: ChatUpstream,
        coordinator: DeductionCoordinator,
        default_model: str,
        service_type: str = "chat",
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
        open_marker: str = DEFAULT_OPEN_MARKER,
        close_marker: str = DEFAULT_CLOSE_MARKER,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.upstream = upstream
        self.coordinator = coordinator
        self.default_model = default_model
        self.service_type = service_type
        self.chars_per_token = chars_per_token
        self.open_marker = open_marker
        self.close_marker = close_marker
        self.clock = clock

    def _extractor(self) -> StreamStateExtractor:
        return StreamStateExtractor(self.open_marker, self.close_marker)

    def _resolve_usage(self, reported: Optional[TokenUsage], messages: List[Message], reply: str) -> TokenUsage:
        if reported is not None:
            return reported
        usage = estimate_usage(messages, reply, self.chars_per_token)
        logger.warning(
            "Provider reported no token usage; billing estimated %d tokens (%d chars/token)",
            usage.total_tokens, self.chars_per_token,
        )
        return usage

    async def _charge(self, account_id: str, usage: TokenUsage, model: str, description: str) -> ChargeResult:
        return await asyncio.to_thread(
            self.coordinator.charge_tokens,
            account_id,
            usage.total_tokens,
            self.service_type,
            model,
            description,
            usage.prompt_tokens,
            usage.completion_tokens,
        )

    @staticmethod
    def _billing_event(charge: ChargeResult, usage: TokenUsage) -> StreamEvent:
        if charge.ok:
            return Credits(cost=charge.cost, remaining=charge.remaining, ratio=charge.ratio, usage=usage)
        return Error(code=charge.reason.value, message=_FAILURE_MESSAGES[charge.reason], required=charge.cost)

    @staticmethod
    async def _next_chunk(iterator: AsyncIterator[UpstreamChunk], cancel: Optional[asyncio.Event]):
        """Await the next upstream chunk, or raise StreamCanceled if ``cancel`` fires first."""
        if cancel is not None and cancel.is_set():
            raise StreamCanceled()
        next_task = asyncio.ensure_future(iterator.__anext__())
        if cancel is None:
            waiters = {next_task}
        else:
            cancel_task = asyncio.ensure_future(cancel.wait())
            waiters = {next_task, cancel_task}
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()
        if next_task not in done or (cancel is not None and cancel.is_set()):
            # let the canceled __anext__ unwind before the iterator is closed
            await asyncio.gather(next_task, return_exceptions=True)
            raise StreamCanceled()
        try:
            return next_task.result()
        except StopAsyncIteration:
            return _EXHAUSTED

    @staticmethod
    async def _close(iterator: AsyncIterator[UpstreamChunk]) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            logger.debug("Error while closing upstream stream", exc_info=True)

    async def stream(
        self,
        account_id: str,
        messages: List[Message],
        model: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
        previous_state: Optional[StreamState] = None,
        description: str = "Chat (streamed)",
    ) -> AsyncIterator[StreamEvent]:
        """Run one streamed, metered call.

        The account is checked before the provider is contacted; a missing,
        expired or empty account raises before any event is produced.

        Args:
            account_id: Account to bill
            messages: Chat messages forwarded to the provider
            model: Provider model, defaults to ``default_model``
            cancel: Set when the caller disconnects
            previous_state: Snapshot the extracted state is merged onto
            description: Ledger entry description

        Yields:
            Delta*, Complete, Credits | Error, End on success;
            Delta*, Error, End on provider failure;
            Delta*, Canceled, End on cancellation
        """
        await asyncio.to_thread(self.coordinator.ensure_credits_active, account_id)
        model = model or self.default_model
        extractor = self._extractor()
        reported: Optional[TokenUsage] = None
        iterator = self.upstream.stream(messages, model=model).__aiter__()

        try:
            try:
                while True:
                    chunk = await self._next_chunk(iterator, cancel)
                    if chunk is _EXHAUSTED:
                        break
                    if chunk.usage is not None:
                        reported = chunk.usage
                    if chunk.model:
                        model = chunk.model
                    visible = extractor.feed(chunk.text)
                    if visible:
                        yield Delta(visible)
                if cancel is not None and cancel.is_set():
                    raise StreamCanceled()
                tail = extractor.finish()
                if tail:
                    yield Delta(tail)
            finally:
                await self._close(iterator)
        except StreamCanceled:
            logger.info("Stream for account %s canceled by caller; not billed", account_id)
            yield Canceled()
            yield End()
            return
        except asyncio.CancelledError:
            logger.info("Stream task for account %s canceled; not billed", account_id)
            raise
        except Exception:
            logger.exception("Upstream stream failed for account %s; not billed", account_id)
            yield Error(code=UpstreamUnavailable.code, message=UPSTREAM_ERROR_MESSAGE)
            yield End()
            return

        reply = extractor.reply
        state = extractor.parse_state(self.clock())
        if state is not None and previous_state is not None:
            state = state.merged_onto(previous_state)
        usage = self._resolve_usage(reported, messages, reply)
        # billed before the reply is released so a reader that stops at Complete is still charged
        charge = await self._charge(account_id, usage, model, description)
        yield Complete(reply=reply, usage=usage, model=model, state=state)
        yield self._billing_event(charge, usage)
        yield End()

    async def complete(
        self,
        account_id: str,
        messages: List[Message],
        model: Optional[str] = None,
        previous_state: Optional[StreamState] = None,
        description: str = "Chat",
    ) -> ChatReply:
        """Run one non-streamed, metered call.

        Raises:
            AccountNotFound, CreditsExpired, InsufficientCredits: From the pre-flight check
            UpstreamUnavailable: If the provider call fails (nothing is billed)
        """
        await asyncio.to_thread(self.coordinator.ensure_credits_active, account_id)
        model = model or self.default_model
        try:
            result = await self.upstream.complete(messages, model=model)
        except UpstreamUnavailable:
            raise
        except Exception as e:
            logger.exception("Upstream completion failed for account %s; not billed", account_id)
            raise UpstreamUnavailable(UPSTREAM_ERROR_MESSAGE, original_error=e)

        extractor = self._extractor()
        extractor.feed(result.text or "")
        extractor.finish()
        reply = extractor.reply
        state = extractor.parse_state(self.clock())
        if state is not None and previous_state is not None:
            state = state.merged_onto(previous_state)
        model = result.model or model
        usage = self._resolve_usage(result.usage, messages, reply)
        charge = await self._charge(account_id, usage, model, description)
        return ChatReply(reply=reply, usage=usage, model=model, charge=charge, state=state)
