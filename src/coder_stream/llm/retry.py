"""Retrying stream session around a completion source.

``StreamingRetry`` is a small state machine::

    ATTEMPTING -> FORWARDING -> SUCCEEDED
         ^            |
         +-- backoff -+-> FAILED
    (any state) -----------> CANCELLED

Every upstream byte chunk is yielded to the consumer as soon as it
arrives, so a live typing effect keeps running even during an attempt
that later turns out to need a retry.  Delta text is tracked per attempt
and only appended to the session total when the attempt ends.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Protocol

from coder_stream.config import RetrySpec
from coder_stream.errors import StreamFailedError, StreamIncompleteError, UpstreamError
from coder_stream.events.bus import EventBus
from coder_stream.types import CompletionRequest, EventType, StreamSession, StreamState

from .sse import SSEDecoder

_logger = logging.getLogger(__name__)

PartialContentFn = Callable[[str], Any]
AttemptFn = Callable[[int], Any]


class StreamSource(Protocol):
    """Anything that can open one upstream streaming response."""

    def open_stream(
        self,
        request: CompletionRequest,
        credential: str,
        timeout: float = ...,
    ) -> AsyncContextManager[Any]:
        """Return a context manager yielding an object with ``aiter_bytes()``."""
        ...


def is_retryable(error: Exception) -> bool:
    """Bad credentials and malformed requests are final; everything else
    (network failures, timeouts, premature stream ends) is transient."""
    if isinstance(error, UpstreamError):
        return error.retryable
    return True


class StreamingRetry:
    """One retrying stream session.

    Parameters
    ----------
    source:
        The completion source (normally a ``CompletionClient``).
    request:
        The request re-issued on every attempt.
    credential:
        Bearer credential forwarded to the source.
    retry:
        Attempt count, backoff and per-attempt time budget.
    session:
        Optional pre-built session (carries target message / chat ids).
    on_partial_content:
        Called with the accumulated text when the session fails after
        having received some content.
    event_bus:
        Receives lifecycle events (optional).

    ``on_attempt`` may be set after construction; it is called with the
    attempt number before every retry attempt, once all bytes of the
    previous attempt have been yielded.
    """

    def __init__(
        self,
        source: StreamSource,
        request: CompletionRequest,
        credential: str,
        retry: RetrySpec | None = None,
        session: StreamSession | None = None,
        on_partial_content: PartialContentFn | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._source = source
        self._request = request
        self._credential = credential
        self._retry = retry or RetrySpec()
        self.session = session or StreamSession(model=request.model)
        self._on_partial_content = on_partial_content
        self._event_bus = event_bus
        self._cancelled = False
        self._cancel_event = asyncio.Event()
        self._read_task: asyncio.Future[bytes] | None = None
        self.on_attempt: AttemptFn | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> StreamState:
        return self.session.state

    @property
    def attempts(self) -> int:
        return self.session.attempt

    @property
    def accumulated_content(self) -> str:
        return self.session.accumulated_content

    def cancel(self) -> None:
        """Stop the session: no more retries, the in-flight read is
        cancelled.  Bytes already forwarded are not retracted."""
        if self._cancelled:
            return
        self._cancelled = True
        self.session.cancelled = True
        self._cancel_event.set()
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()

    async def stream(self) -> AsyncIterator[bytes]:
        """Yield upstream bytes across attempts until a terminal state.

        Ends normally on ``SUCCEEDED`` or ``CANCELLED``; raises
        ``StreamFailedError`` on ``FAILED``.
        """
        session = self.session
        last_error: Exception | None = None

        while not self._cancelled and session.attempt < self._retry.max_retries:
            session.begin_attempt()
            if session.attempt > 1:
                _logger.info(
                    "Retry attempt %d/%d (%d chars accumulated so far)",
                    session.attempt, self._retry.max_retries,
                    len(session.accumulated_content),
                )
                if self.on_attempt is not None:
                    result = self.on_attempt(session.attempt)
                    if asyncio.iscoroutine(result):
                        await result
            await self._publish(EventType.STREAM_ATTEMPT, {"attempt": session.attempt})

            decoder = SSEDecoder()
            error: Exception | None = None
            try:
                async with self._source.open_stream(
                    self._request, self._credential, self._retry.attempt_timeout,
                ) as upstream:
                    session.state = StreamState.FORWARDING
                    chunks = upstream.aiter_bytes()
                    deadline = asyncio.get_running_loop().time() + self._retry.attempt_timeout
                    while not self._cancelled:
                        chunk = await self._next_chunk(chunks, deadline)
                        if chunk is None:
                            break
                        yield chunk
                        self._track(decoder.feed(chunk))
                    self._track(decoder.finish())
            except Exception as e:
                error = e
            finally:
                session.commit_attempt()

            if self._cancelled:
                break

            if error is None:
                if decoder.done:
                    await self._succeed()
                    return
                error = self._check_unterminated()
                if error is None:
                    _logger.info(
                        "Attempt %d received no new content; completing with "
                        "%d chars from earlier attempts",
                        session.attempt, len(session.accumulated_content),
                    )
                    await self._succeed()
                    return

            last_error = error
            if not is_retryable(error):
                _logger.warning("Non-retryable stream error: %s", error)
                await self._fail(str(error), error)

            if session.attempt >= self._retry.max_retries:
                break

            delay = self._retry.backoff(session.attempt)
            _logger.warning(
                "Stream attempt %d/%d failed: %s (retrying in %.1fs)",
                session.attempt, self._retry.max_retries, error, delay,
            )
            await self._publish(
                EventType.STREAM_RETRY,
                {"attempt": session.attempt, "delay": delay, "error": str(error)},
            )
            await self._backoff(delay)

        if self._cancelled:
            session.state = StreamState.CANCELLED
            _logger.info("Stream cancelled after %d attempt(s)", session.attempt)
            await self._publish(EventType.STREAM_CANCELLED, {"attempt": session.attempt})
            return

        message = (
            f"Stream failed after {self._retry.max_retries} retries: "
            f"{last_error or 'unknown streaming error'}"
        )
        if session.accumulated_content:
            message += " (partial content available)"
        await self._fail(message, last_error)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _next_chunk(self, chunks: AsyncIterator[bytes], deadline: float) -> bytes | None:
        """Next chunk, or ``None`` at EOF, budget expiry or cancellation."""
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            return None
        self._read_task = asyncio.ensure_future(chunks.__anext__())
        try:
            return await asyncio.wait_for(self._read_task, remaining)
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError:
            _logger.warning(
                "Attempt %d exceeded its %.0fs budget",
                self.session.attempt, self._retry.attempt_timeout,
            )
            return None
        except asyncio.CancelledError:
            if self._cancelled:
                return None
            raise
        finally:
            self._read_task = None

    def _track(self, events: Any) -> None:
        for kind, data in events:
            if kind == "delta":
                self.session.current_attempt_content += data

    def _check_unterminated(self) -> Exception | None:
        """Classify an attempt that ended without the ``[DONE]`` sentinel.

        Returns ``None`` when the far end simply closed after earlier
        attempts already delivered everything it had.
        """
        session = self.session
        if session.current_attempt_content:
            return StreamIncompleteError("Stream incomplete - possible timeout")
        if session.attempt == 1:
            return StreamIncompleteError(
                "Stream incomplete - no content received on first attempt"
            )
        if not session.accumulated_content:
            return StreamIncompleteError(
                "Stream incomplete - no content received after multiple attempts"
            )
        return None

    async def _backoff(self, delay: float) -> None:
        """Sleep *delay* seconds, waking early on cancellation."""
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _succeed(self) -> None:
        self.session.state = StreamState.SUCCEEDED
        await self._publish(EventType.STREAM_SUCCEEDED, {
            "attempt": self.session.attempt,
            "content_length": len(self.session.accumulated_content),
        })

    async def _fail(self, message: str, cause: Exception | None) -> None:
        session = self.session
        session.state = StreamState.FAILED
        if session.accumulated_content:
            _logger.warning(
                "Stream failed after %d attempt(s) with %d chars partial content",
                session.attempt, len(session.accumulated_content),
            )
            await self._publish(
                EventType.STREAM_PARTIAL,
                {"content_length": len(session.accumulated_content)},
            )
            if self._on_partial_content is not None:
                result = self._on_partial_content(session.accumulated_content)
                if asyncio.iscoroutine(result):
                    await result
        await self._publish(EventType.STREAM_FAILED, {
            "attempt": session.attempt, "error": message,
        })
        status = cause.status_code if isinstance(cause, UpstreamError) else None
        raise StreamFailedError(
            message,
            partial_content=session.accumulated_content,
            attempts=session.attempt,
            status_code=status,
        ) from cause

    async def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus is None:
            return
        data.setdefault("message_id", self.session.target_message_id)
        await self._event_bus.publish(event_type, data)
