"""Shared fixtures: scripted completion sources and an in-memory store."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any

import pytest

from coder_stream.config import RetrySpec
from coder_stream.storage.store import SQLiteMessageStore


def sse(*deltas: str, done: bool = True) -> list[bytes]:
    """Encode *deltas* as upstream SSE chunks, one event per chunk."""
    chunks = [
        f"data: {json.dumps({'choices': [{'delta': {'content': d}}]})}\n\n".encode()
        for d in deltas
    ]
    if done:
        chunks.append(b"data: [DONE]\n\n")
    return chunks


class FakeUpstream:
    """Stands in for an open ``httpx.Response``."""

    def __init__(
        self,
        chunks: list[bytes],
        error: Exception | None = None,
        delay: float = 0,
        hang: bool = False,
    ) -> None:
        self.chunks = chunks
        self.error = error
        self.delay = delay
        self.hang = hang

    async def aiter_bytes(self):
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()


class FakeSource:
    """Scripted completion source: one entry per attempt.

    An entry is either an exception (raised when the stream is opened), a
    ``FakeUpstream``, or a list of byte chunks.  The last entry repeats
    once the script runs out.
    """

    def __init__(self, attempts: list[Any]) -> None:
        self.attempts = list(attempts)
        self.requests: list[Any] = []
        self.credentials: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    @asynccontextmanager
    async def open_stream(self, request, credential, timeout=65.0):
        self.requests.append(request)
        self.credentials.append(credential)
        script = self.attempts.pop(0) if len(self.attempts) > 1 else self.attempts[0]
        if isinstance(script, Exception):
            raise script
        if isinstance(script, list):
            script = FakeUpstream(script)
        yield script


@pytest.fixture
def fast_retry() -> RetrySpec:
    return RetrySpec(max_retries=2, base_delay=0, max_delay=0, attempt_timeout=5)


@pytest.fixture
def store():
    s = SQLiteMessageStore(":memory:")
    yield s
    s.close()
