"""Continuation controller: chain generation rounds until the output is
judged complete.

    message -> StreamingRetry -> ChatCompletionStream -> final text
       ^                                                     |
       +---- continuation prompt (user) <-- incomplete? -----+

One controller drives one user-triggered generation at a time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from coder_stream.config import ContinuationSpec, DetectorSpec, RetrySpec, UpstreamSpec
from coder_stream.errors import CoderStreamError, StreamFailedError
from coder_stream.events.bus import EventBus
from coder_stream.llm.continuation import continuation_prompt, is_incomplete
from coder_stream.llm.retry import StreamingRetry, StreamSource
from coder_stream.llm.sse import DONE_EVENT, ChatCompletionStream, encode_delta, encode_error
from coder_stream.storage.store import MessageStore, trim_history
from coder_stream.types import CompletionRequest, EventType, Message, StreamSession

_logger = logging.getLogger(__name__)

DeltaFn = Callable[[str], Any]


@dataclass
class GenerationResult:
    """Outcome of a (possibly chained) generation."""

    content: str = ""
    messages: list[Message] = field(default_factory=list)
    continuations: int = 0
    complete: bool = False
    cancelled: bool = False


class ContinuationController:
    """Run a generation, persist every response, and request continuations.

    Parameters
    ----------
    source:
        Completion source handed to each ``StreamingRetry``.
    store:
        Message persistence.
    upstream:
        Sampling parameters for requests.
    retry / detector / continuation:
        Tunables; defaults match ``StreamConfig``.
    max_history:
        History trimming limit for upstream requests.
    event_bus:
        Receives retry and continuation events (optional).
    """

    def __init__(
        self,
        source: StreamSource,
        store: MessageStore,
        upstream: UpstreamSpec | None = None,
        retry: RetrySpec | None = None,
        detector: DetectorSpec | None = None,
        continuation: ContinuationSpec | None = None,
        max_history: int = 10,
        event_bus: EventBus | None = None,
    ) -> None:
        self._source = source
        self._store = store
        self._upstream = upstream or UpstreamSpec()
        self._retry = retry or RetrySpec()
        self._detector = detector or DetectorSpec()
        self._continuation = continuation or ContinuationSpec()
        self._max_history = max_history
        self._event_bus = event_bus if event_bus is not None else EventBus()
        self._session: StreamingRetry | None = None
        self._stream: ChatCompletionStream | None = None
        self._cancelled = False

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def open_session(
        self,
        message_id: str,
        model: str,
        credential: str,
        on_partial_content: Callable[[str], Any] | None = None,
    ) -> StreamingRetry:
        """Build a retrying session answering the chat history that ends
        at *message_id*."""
        target = await self._store.get_message(message_id)
        history = await self._store.load_messages(target.chat_id, target.position)
        history = trim_history(history, self._max_history)
        request = CompletionRequest(
            messages=[m.to_message() for m in history],
            model=model,
            temperature=self._upstream.temperature,
            max_tokens=self._upstream.max_tokens,
            extra_params=dict(self._upstream.extra_params),
        )
        session = StreamSession(
            target_message_id=target.id, chat_id=target.chat_id, model=model,
        )
        return StreamingRetry(
            self._source,
            request,
            credential,
            retry=self._retry,
            session=session,
            on_partial_content=on_partial_content,
            event_bus=self._event_bus,
        )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        message_id: str,
        model: str,
        credential: str,
        on_delta: DeltaFn | None = None,
    ) -> GenerationResult:
        """Generate a response to *message_id*, continuing until complete.

        Raises ``StreamFailedError`` only when the first round fails; a
        failing continuation round leaves the earlier responses as final.
        Either way, partial content of the failed round is persisted first.
        """
        self._cancelled = False
        result = GenerationResult()
        target_id = message_id
        chat_id = ""

        while not self._cancelled:
            first_round = not result.messages
            partial: list[str] = []
            try:
                session = await self.open_session(
                    target_id, model, credential, on_partial_content=partial.append,
                )
            except CoderStreamError as e:
                if first_round:
                    raise
                await self._continuation_failed(result, e)
                break
            chat_id = session.session.chat_id

            text = ""
            try:
                text = (await self._consume(session, on_delta)).strip()
            except StreamFailedError as e:
                kept = partial[0].strip() if partial else ""
                if kept:
                    saved = await self._store.append_message(chat_id, "assistant", kept)
                    result.messages.append(saved)
                    result.content += kept
                if first_round:
                    raise
                await self._continuation_failed(result, e)
                break
            finally:
                self._session = None
                self._stream = None

            if text:
                saved = await self._store.append_message(chat_id, "assistant", text)
                result.messages.append(saved)
                result.content += text

            if self._cancelled:
                result.cancelled = True
                break

            if not is_incomplete(
                text,
                length_threshold=self._detector.length_threshold,
                bracket_threshold=self._detector.bracket_threshold,
            ):
                result.complete = True
                break

            limit = self._continuation.max_continuations
            if limit and result.continuations >= limit:
                _logger.warning(
                    "Response still incomplete after %d continuation(s); stopping",
                    result.continuations,
                )
                break

            prompt = continuation_prompt(text)
            _logger.info("Response appears incomplete, requesting continuation")
            try:
                follow_up = await self._store.append_message(chat_id, "user", prompt)
            except Exception as e:
                _logger.exception("Failed to persist continuation request")
                await self._continuation_failed(result, e)
                break
            result.messages.append(follow_up)
            result.continuations += 1
            target_id = follow_up.id
            await self._event_bus.publish(EventType.CONTINUATION_REQUESTED, {
                "chat_id": chat_id,
                "message_id": follow_up.id,
                "prompt": prompt,
                "round": result.continuations,
            })

        if self._cancelled:
            result.cancelled = True
        await self._event_bus.publish(EventType.GENERATION_DONE, {
            "chat_id": chat_id,
            "content_length": len(result.content),
            "continuations": result.continuations,
            "complete": result.complete,
            "cancelled": result.cancelled,
        })
        return result

    async def relay(
        self,
        message_id: str,
        model: str,
        credential: str,
    ) -> AsyncIterator[bytes]:
        """Run ``generate()`` and re-emit its deltas as one SSE stream.

        Continuation rounds appear as a single continuous stream ending
        with one ``[DONE]`` event.  Failures end the stream with an
        ``error`` event.
        """
        queue: asyncio.Queue[bytes | None] = asyncio.Queue()

        async def _run() -> None:
            try:
                await self.generate(
                    message_id, model, credential,
                    on_delta=lambda delta: queue.put_nowait(encode_delta(delta)),
                )
                queue.put_nowait(DONE_EVENT)
            except CoderStreamError as e:
                _logger.warning("Generation failed: %s", e)
                queue.put_nowait(encode_error(str(e)))
            except Exception as e:
                _logger.exception("Generation failed unexpectedly")
                queue.put_nowait(encode_error(f"Internal error: {e}"))
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(_run())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
        finally:
            if not task.done():
                self.cancel()
                await task

    def cancel(self) -> None:
        """Cancel the running round and stop chaining.  Idempotent."""
        self._cancelled = True
        if self._stream is not None:
            self._stream.cancel()
        if self._session is not None:
            self._session.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _consume(self, session: StreamingRetry, on_delta: DeltaFn | None) -> str:
        """Drive one round and return the text the retry session committed."""
        stream = ChatCompletionStream.from_stream(session.stream())
        session.on_attempt = lambda _attempt: stream.restart()
        if on_delta is not None:
            stream.on("content", lambda delta, _content: on_delta(delta))
        self._session = session
        self._stream = stream
        await stream.run()
        return session.accumulated_content

    async def _continuation_failed(self, result: GenerationResult, error: Exception) -> None:
        _logger.warning(
            "Continuation failed, keeping %d chars as final: %s",
            len(result.content), error,
        )
        await self._event_bus.publish(EventType.CONTINUATION_FAILED, {"error": str(error)})
