"""Server-Sent-Events decoding for OpenAI-style completion streams.

``SSEDecoder`` is the pure, incremental part: bytes in, ``(event_type,
data)`` tuples out.  ``ChatCompletionStream`` drives a decoder over an
async byte iterator and fans the results out to subscribed handlers.
"""

from __future__ import annotations

import codecs
import inspect
import json
import logging
from typing import Any, AsyncIterator, Callable, Generator

_logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
DONE_EVENT = b"data: [DONE]\n\n"


def encode_delta(text: str) -> bytes:
    """Encode *text* as one ``data:`` event in the upstream wire format."""
    payload = {"choices": [{"delta": {"content": text}}]}
    return f"data: {json.dumps(payload)}\n\n".encode()


def encode_error(message: str) -> bytes:
    """Encode a terminal error as a named ``error`` event."""
    return f"event: error\ndata: {json.dumps({'error': message})}\n\n".encode()


def extract_delta(data: Any) -> str:
    """Return ``choices[0].delta.content`` or ``""`` if absent."""
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    choice = choices[0]
    if not isinstance(choice, dict):
        return ""
    delta = choice.get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ""


# ---------------------------------------------------------------------------
# Incremental decoder
# ---------------------------------------------------------------------------

class SSEDecoder:
    """Turn arbitrarily split byte chunks into delta / done events.

    Yields ``(event_type, data)`` tuples:

    ``("delta", text)``
        One non-empty content fragment.
    ``("done", "")``
        The end-of-stream sentinel was seen.

    An incomplete trailing line (including a split UTF-8 sequence) is held
    until the next ``feed()`` or until ``finish()``.
    """

    def __init__(self) -> None:
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.content = ""

    def feed(self, data: bytes) -> Generator[tuple[str, str], None, None]:
        self._buffer += self._text.decode(data)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        for line in lines:
            yield from self._process_line(line)

    def finish(self) -> Generator[tuple[str, str], None, None]:
        """Flush the decoder and process any unterminated last line."""
        self._buffer += self._text.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        if line:
            yield from self._process_line(line)

    def _process_line(self, line: str) -> Generator[tuple[str, str], None, None]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return
        data_str = line[len(DATA_PREFIX):].strip()
        if data_str == DONE_SENTINEL:
            self.done = True
            yield ("done", "")
            return
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            _logger.debug("Skipping malformed SSE data line: %.200s", data_str)
            return
        delta = extract_delta(data)
        if delta:
            self.content += delta
            yield ("delta", delta)


# ---------------------------------------------------------------------------
# Observer-style stream consumer
# ---------------------------------------------------------------------------

Handler = Callable[..., Any]

_EVENTS = ("content", "final_content", "done", "error")


class ChatCompletionStream:
    """Consume an SSE byte stream and notify subscribers.

    Events and handler signatures:

    - ``content``: ``(delta, accumulated)`` for every delta
    - ``final_content``: ``(accumulated)`` once, when the stream ends
    - ``done``: ``()`` when the ``[DONE]`` sentinel is seen
    - ``error``: ``(exc)`` when the byte source raises

    Handlers can be sync or async.  ``final_content`` fires on EOF even
    without a sentinel, and also after an error if any content arrived.

    When the byte source is stitched together from several upstream
    responses, call ``restart()`` at each boundary so a line cut off by
    one response is never joined to the next response's first line.
    """

    def __init__(self, chunks: AsyncIterator[bytes]) -> None:
        self._chunks = chunks
        self._decoder = SSEDecoder()
        self._accumulated = ""
        self._done = False
        self._handlers: dict[str, list[Handler]] = {name: [] for name in _EVENTS}
        self._cancelled = False

    @classmethod
    def from_stream(cls, chunks: AsyncIterator[bytes]) -> ChatCompletionStream:
        return cls(chunks)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on(self, event: str, handler: Handler) -> ChatCompletionStream:
        """Subscribe *handler* to *event*.  Returns ``self`` for chaining."""
        if event not in self._handlers:
            raise ValueError(f"Unknown stream event: {event}")
        self._handlers[event].append(handler)
        return self

    def off(self, event: str, handler: Handler) -> None:
        try:
            self._handlers[event].remove(handler)
        except (KeyError, ValueError):
            pass

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    @property
    def accumulated(self) -> str:
        return self._accumulated

    @property
    def done(self) -> bool:
        return self._done

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def run(self) -> str:
        """Read the byte source to the end and return accumulated text."""
        try:
            async for chunk in self._chunks:
                if self._cancelled:
                    break
                for event in self._decoder.feed(chunk):
                    await self._dispatch(event)
                    if self._cancelled:
                        break
            if not self._cancelled:
                for event in self._decoder.finish():
                    await self._dispatch(event)
        except Exception as e:
            if self._cancelled:
                return self.accumulated
            _logger.warning("Error reading completion stream: %s", e)
            await self._emit("error", e)
            if self.accumulated:
                await self._emit("final_content", self.accumulated)
            raise
        finally:
            if self._cancelled:
                await self._close_source()

        if not self._cancelled:
            await self._emit("final_content", self.accumulated)
        return self.accumulated

    async def restart(self) -> None:
        """Flush the current decoder and start a fresh one.

        Accumulated text and subscriptions carry over.
        """
        for event in self._decoder.finish():
            await self._dispatch(event)
        self._decoder = SSEDecoder()

    def cancel(self) -> None:
        """Stop delivering callbacks.  Safe to call more than once."""
        self._cancelled = True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _dispatch(self, event: tuple[str, str]) -> None:
        kind, data = event
        if kind == "delta":
            self._accumulated += data
            await self._emit("content", data, self._accumulated)
        elif kind == "done":
            self._done = True
            await self._emit("done")

    async def _emit(self, event: str, *args: Any) -> None:
        if self._cancelled:
            return
        for handler in list(self._handlers[event]):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

    async def _close_source(self) -> None:
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            _logger.debug("Ignoring error while closing cancelled stream", exc_info=True)
