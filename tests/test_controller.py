"""Tests for the continuation controller."""

from __future__ import annotations

import sqlite3

import pytest

from coder_stream.config import ContinuationSpec
from coder_stream.core.controller import ContinuationController
from coder_stream.errors import StreamFailedError, UpstreamError
from coder_stream.llm.continuation import CODE_CONTINUATION_PROMPT
from coder_stream.events.bus import EventBus
from coder_stream.llm.sse import DONE_EVENT, SSEDecoder, encode_delta
from coder_stream.storage.store import SQLiteMessageStore
from coder_stream.types import EventType
from conftest import FakeSource, sse


async def _start_chat(store, prompt="Build me a counter app"):
    chat = await store.create_chat(model="m")
    message = await store.append_message(chat.id, "user", prompt)
    return chat, message


class TestGenerate:
    async def test_complete_response(self, store, fast_retry):
        chat, message = await _start_chat(store)
        source = FakeSource([sse("Hello! Here is your answer.")])
        controller = ContinuationController(source, store, retry=fast_retry)

        result = await controller.generate(message.id, "m", "key")

        assert result.complete
        assert result.content == "Hello! Here is your answer."
        assert result.continuations == 0
        stored = await store.load_messages(chat.id)
        assert [(m.role, m.content) for m in stored] == [
            ("user", "Build me a counter app"),
            ("assistant", "Hello! Here is your answer."),
        ]

    async def test_open_fence_chains_one_continuation(self, store, fast_retry):
        chat, message = await _start_chat(store)
        first = "Here is code:\n```tsx\nfunction App() {"
        second = "return 1;\n}"
        source = FakeSource([sse(first), sse(second)])
        controller = ContinuationController(source, store, retry=fast_retry)

        result = await controller.generate(message.id, "m", "key")

        assert source.calls == 2
        assert result.continuations == 1
        assert result.complete
        assert result.content == first + second

        stored = await store.load_messages(chat.id)
        assert [m.role for m in stored] == ["user", "assistant", "user", "assistant"]
        assert stored[1].content == first
        assert stored[2].content == CODE_CONTINUATION_PROMPT
        assert [m.content for m in stored].count(CODE_CONTINUATION_PROMPT) == 1

        # The continuation request carries the partial answer and the prompt
        follow_up = source.requests[1].messages
        assert follow_up[-2] == {"role": "assistant", "content": first}
        assert follow_up[-1] == {"role": "user", "content": CODE_CONTINUATION_PROMPT}

    async def test_deltas_forwarded_across_rounds(self, store, fast_retry):
        _, message = await _start_chat(store)
        source = FakeSource([sse("```js\n", "let a;"), sse("let b;")])
        controller = ContinuationController(source, store, retry=fast_retry)
        deltas = []

        await controller.generate(message.id, "m", "key", on_delta=deltas.append)

        assert deltas == ["```js\n", "let a;", "let b;"]

    async def test_failed_continuation_keeps_earlier_content(self, store, fast_retry):
        chat, message = await _start_chat(store)
        first = "```tsx\nfunction A() {"
        source = FakeSource([sse(first), UpstreamError.from_status(401)])
        controller = ContinuationController(source, store, retry=fast_retry)
        seen = []
        controller.event_bus.subscribe(EventType.CONTINUATION_FAILED, seen.append)

        result = await controller.generate(message.id, "m", "key")

        assert not result.complete
        assert result.content == first
        assert len(seen) == 1
        assert "Authentication failed" in seen[0].data["error"]
        stored = await store.load_messages(chat.id)
        assert stored[-1].role == "user"

    async def test_first_round_failure_persists_partial_and_raises(self, store, fast_retry):
        chat, message = await _start_chat(store)
        source = FakeSource([sse("ab", done=False)])
        controller = ContinuationController(source, store, retry=fast_retry)

        with pytest.raises(StreamFailedError) as exc_info:
            await controller.generate(message.id, "m", "key")

        assert "(partial content available)" in str(exc_info.value)
        stored = await store.load_messages(chat.id)
        assert stored[-1].role == "assistant"
        assert stored[-1].content == "abab"

    async def test_first_round_failure_without_content(self, store, fast_retry):
        chat, message = await _start_chat(store)
        source = FakeSource([UpstreamError.from_status(403)])
        controller = ContinuationController(source, store, retry=fast_retry)

        with pytest.raises(StreamFailedError) as exc_info:
            await controller.generate(message.id, "m", "key")

        assert exc_info.value.status_code == 403
        assert len(await store.load_messages(chat.id)) == 1

    async def test_max_continuations(self, store, fast_retry):
        _, message = await _start_chat(store)
        source = FakeSource([sse("```never closed")])
        controller = ContinuationController(
            source, store, retry=fast_retry,
            continuation=ContinuationSpec(max_continuations=2),
        )

        result = await controller.generate(message.id, "m", "key")

        assert source.calls == 3
        assert result.continuations == 2
        assert not result.complete

    async def test_continuation_persist_failure_finalizes(self, fast_retry):
        class FlakyStore(SQLiteMessageStore):
            fail_user = False

            async def append_message(self, chat_id, role, content):
                if role == "user" and self.fail_user:
                    raise sqlite3.OperationalError("database is locked")
                return await super().append_message(chat_id, role, content)

        store = FlakyStore(":memory:")
        try:
            _, message = await _start_chat(store)
            store.fail_user = True
            source = FakeSource([sse("```js\nlet a;")])
            controller = ContinuationController(source, store, retry=fast_retry)

            result = await controller.generate(message.id, "m", "key")

            assert source.calls == 1
            assert result.content == "```js\nlet a;"
            assert result.continuations == 0
            assert not result.complete
        finally:
            store.close()

    async def test_cancel_stops_chaining_and_keeps_text(self, store, fast_retry):
        chat, message = await _start_chat(store)
        source = FakeSource([sse("```js\n", "let a;", "let b;")])
        controller = ContinuationController(source, store, retry=fast_retry)

        def on_delta(_delta):
            controller.cancel()

        result = await controller.generate(message.id, "m", "key", on_delta=on_delta)

        assert result.cancelled
        assert result.continuations == 0
        assert source.calls == 1
        stored = await store.load_messages(chat.id)
        assert stored[-1].content == "```js"

    async def test_attempt_cut_mid_line_keeps_every_delta(self, store, fast_retry):
        chat, message = await _start_chat(store)
        cut = sse("Hello", done=False) + [b'data: {"choices":[{"del']
        source = FakeSource([cut, sse(" world.")])
        controller = ContinuationController(source, store, retry=fast_retry)
        deltas = []
        sessions = []
        controller.event_bus.subscribe(
            EventType.STREAM_SUCCEEDED, lambda e: sessions.append(e.data),
        )

        result = await controller.generate(message.id, "m", "key", on_delta=deltas.append)

        assert source.calls == 2
        assert deltas == ["Hello", " world."]
        assert result.content == "Hello world."
        assert sessions[0]["content_length"] == len("Hello world.")
        stored = await store.load_messages(chat.id)
        assert stored[-1].content == "Hello world."
        assert result.continuations == 0

    async def test_saved_text_is_trimmed(self, store, fast_retry):
        chat, message = await _start_chat(store)
        source = FakeSource([sse("\n\n", "All done.", "\n")])
        controller = ContinuationController(source, store, retry=fast_retry)

        result = await controller.generate(message.id, "m", "key")

        assert result.content == "All done."
        stored = await store.load_messages(chat.id)
        assert stored[-1].content == "All done."

    async def test_whitespace_only_response_not_saved(self, store, fast_retry):
        chat, message = await _start_chat(store)
        source = FakeSource([sse("  ", "\n")])
        controller = ContinuationController(source, store, retry=fast_retry)

        result = await controller.generate(message.id, "m", "key")

        assert result.content == ""
        assert result.messages == []
        assert source.calls == 1
        assert len(await store.load_messages(chat.id)) == 1

    async def test_injected_bus_receives_events(self, store, fast_retry):
        _, message = await _start_chat(store)
        bus = EventBus()
        controller = ContinuationController(
            FakeSource([sse("Fine.")]), store, retry=fast_retry, event_bus=bus,
        )

        await controller.generate(message.id, "m", "key")

        assert controller.event_bus is bus
        assert bus.events_of(EventType.GENERATION_DONE)

    async def test_generation_done_event(self, store, fast_retry):
        _, message = await _start_chat(store)
        controller = ContinuationController(FakeSource([sse("Fine.")]), store, retry=fast_retry)

        await controller.generate(message.id, "m", "key")

        last = controller.event_bus.history[-1]
        assert last.type == EventType.GENERATION_DONE
        assert last.data["complete"] is True
        assert last.data["continuations"] == 0


class TestOpenSession:
    async def test_request_uses_trimmed_history_up_to_target(self, store):
        chat = await store.create_chat(model="m")
        for i in range(12):
            await store.append_message(chat.id, "user" if i % 2 == 0 else "assistant", f"m{i}")
        messages = await store.load_messages(chat.id)
        target = messages[10]
        controller = ContinuationController(FakeSource([sse("x")]), store, max_history=6)

        session = await controller.open_session(target.id, "model-x", "key")
        request = session._request

        assert [m["content"] for m in request.messages] == ["m0", "m1", "m2", "m8", "m9", "m10"]
        assert request.model == "model-x"
        assert request.temperature == 0.2
        assert request.max_tokens == 9000
        assert session.session.target_message_id == target.id
        assert session.session.chat_id == chat.id


class TestRelay:
    async def test_single_done_across_continuations(self, store, fast_retry):
        _, message = await _start_chat(store)
        source = FakeSource([sse("```js\nlet a;"), sse("\nlet b;")])
        controller = ContinuationController(source, store, retry=fast_retry)

        chunks = [c async for c in controller.relay(message.id, "m", "key")]

        assert chunks.count(DONE_EVENT) == 1
        assert chunks[-1] == DONE_EVENT
        decoder = SSEDecoder()
        for chunk in chunks:
            list(decoder.feed(chunk))
        assert decoder.content == "```js\nlet a;\nlet b;"
        assert decoder.done

    async def test_failure_ends_with_error_event(self, store, fast_retry):
        _, message = await _start_chat(store)
        controller = ContinuationController(
            FakeSource([UpstreamError.from_status(402)]), store, retry=fast_retry,
        )

        chunks = [c async for c in controller.relay(message.id, "m", "key")]

        assert DONE_EVENT not in chunks
        assert chunks[-1].startswith(b"event: error\n")
        assert b"Insufficient balance" in chunks[-1]

    async def test_unexpected_error_ends_with_error_event(self, fast_retry):
        class BrokenStore(SQLiteMessageStore):
            async def append_message(self, chat_id, role, content):
                if role == "assistant":
                    raise sqlite3.OperationalError("disk I/O error")
                return await super().append_message(chat_id, role, content)

        store = BrokenStore(":memory:")
        try:
            _, message = await _start_chat(store)
            controller = ContinuationController(
                FakeSource([sse("Hi there.")]), store, retry=fast_retry,
            )

            chunks = [c async for c in controller.relay(message.id, "m", "key")]

            assert DONE_EVENT not in chunks
            assert chunks[0] == encode_delta("Hi there.")
            assert chunks[-1].startswith(b"event: error\n")
            assert b"disk I/O error" in chunks[-1]
        finally:
            store.close()
