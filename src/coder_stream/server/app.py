"""
coder-stream HTTP service - FastAPI application
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from coder_stream import __version__
from coder_stream.config import StreamConfig
from coder_stream.core.controller import ContinuationController
from coder_stream.errors import ChatNotFoundError, MessageNotFoundError, StreamFailedError
from coder_stream.events.bus import EventBus
from coder_stream.llm.client import CompletionClient
from coder_stream.llm.sse import encode_error
from coder_stream.server.auth import CredentialResolver
from coder_stream.storage.cache import TTLCache
from coder_stream.storage.store import SQLiteMessageStore

_logger = logging.getLogger(__name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

# Upstream statuses passed through to the caller as-is
_PASS_THROUGH_STATUSES = (400, 401, 402, 403)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CompletionStreamRequest(BaseModel):
    """Request a streamed answer to the history ending at a message."""

    messageId: str = Field(min_length=1)
    model: str | None = Field(default=None, min_length=1, max_length=100)


class CreateChatRequest(BaseModel):
    prompt: str = Field(min_length=1)
    model: str | None = None
    quality: str = "high"
    system: str | None = None  # optional system prompt placed first


class CreateMessageRequest(BaseModel):
    role: str = Field(pattern="^(user|assistant)$")
    content: str


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: StreamConfig | None = None,
    client: CompletionClient | None = None,
    store: SQLiteMessageStore | None = None,
) -> FastAPI:
    """Build the FastAPI app.  *client* and *store* are created from
    *config* when not given."""
    config = config or StreamConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_client = client is None
        owns_store = store is None
        app.state.config = config
        app.state.client = client or CompletionClient(config.upstream)
        app.state.store = store or SQLiteMessageStore(config.storage.db_path)
        app.state.event_bus = EventBus()
        verify = app.state.client.verify_credential if config.auth.verify else None
        app.state.resolver = CredentialResolver(
            verify=verify,
            cache=TTLCache(ttl=config.auth.cache_ttl, max_entries=config.auth.cache_max_entries),
        )
        _logger.info("coder-stream %s started (upstream %s)", __version__, config.upstream.url)
        yield
        if owns_client:
            await app.state.client.close()
        if owns_store:
            app.state.store.close()

    app = FastAPI(
        title="coder-stream",
        description="Streaming completion relay with retry and continuation",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(ChatNotFoundError)
    @app.exception_handler(MessageNotFoundError)
    async def _not_found(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "coder-stream"}

    @app.post("/api/chats")
    async def create_chat(body: CreateChatRequest, credential: str = Depends(_credential)):
        st: SQLiteMessageStore = app.state.store
        model = body.model or config.upstream.model_for_quality(body.quality)
        title = await app.state.client.generate_title(body.prompt, credential)
        chat = await st.create_chat(
            model=model, quality=body.quality, title=title or body.prompt[:80],
        )
        if body.system:
            await st.append_message(chat.id, "system", body.system)
        message = await st.append_message(chat.id, "user", body.prompt)
        return {
            "chatId": chat.id, "messageId": message.id, "model": chat.model, "title": chat.title,
        }

    @app.post("/api/chats/{chat_id}/messages")
    async def create_message(
        chat_id: str, body: CreateMessageRequest, credential: str = Depends(_credential),
    ):
        message = await app.state.store.append_message(chat_id, body.role, body.content)
        return {"id": message.id, "position": message.position}

    @app.post("/api/completions")
    async def completion_stream(
        body: CompletionStreamRequest, credential: str = Depends(_credential),
    ):
        """Relay one retried upstream stream byte-for-byte."""
        controller = _controller(app)
        model = await _resolve_model(app, body)
        session = await controller.open_session(body.messageId, model, credential)
        chunks = session.stream()

        # Surface failures that happen before any byte as plain HTTP errors
        try:
            first = await chunks.__anext__()
        except StopAsyncIteration:
            first = b""
        except StreamFailedError as e:
            return _stream_error_response(e)

        async def body_iter() -> AsyncIterator[bytes]:
            try:
                if first:
                    yield first
                async for chunk in chunks:
                    yield chunk
            except StreamFailedError as e:
                yield encode_error(str(e))
            finally:
                session.cancel()
                await chunks.aclose()

        return StreamingResponse(
            body_iter(), media_type="text/event-stream", headers=_SSE_HEADERS,
        )

    @app.post("/api/generate")
    async def generate_stream(
        body: CompletionStreamRequest, credential: str = Depends(_credential),
    ):
        """Stream a response, chaining continuations into one SSE stream."""
        model = await _resolve_model(app, body)
        await app.state.store.get_message(body.messageId)
        controller = _controller(app)
        return StreamingResponse(
            controller.relay(body.messageId, model, credential),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    return app


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _credential(request: Request) -> str:
    credential = await request.app.state.resolver.resolve(request.headers)
    if credential is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return credential


def _controller(app: FastAPI) -> ContinuationController:
    config: StreamConfig = app.state.config
    return ContinuationController(
        app.state.client,
        app.state.store,
        upstream=config.upstream,
        retry=config.retry,
        detector=config.detector,
        continuation=config.continuation,
        max_history=config.max_history,
        event_bus=app.state.event_bus,
    )


async def _resolve_model(app: FastAPI, body: CompletionStreamRequest) -> str:
    if body.model:
        return body.model
    message = await app.state.store.get_message(body.messageId)
    chat = await app.state.store.get_chat(message.chat_id)
    return chat.model


def _stream_error_response(exc: StreamFailedError) -> JSONResponse:
    status = exc.status_code if exc.status_code in _PASS_THROUGH_STATUSES else 502
    return JSONResponse({"error": str(exc)}, status_code=status)
