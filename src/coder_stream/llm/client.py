"""Async client for the upstream OpenAI-compatible completion API.

Opens one streaming ``POST /chat/completions`` per call and hands the
response to the caller as a scoped byte stream.  Short auxiliary calls
(chat titles) use the same endpoint without streaming.  The caller's credential
is sent as a bearer token on each request and is never logged.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from coder_stream.config import UpstreamSpec
from coder_stream.errors import (
    CoderStreamError,
    UpstreamConnectionError,
    UpstreamError,
    UpstreamTimeoutError,
)
from coder_stream.types import CompletionRequest

_logger = logging.getLogger(__name__)

_KEY_INFO_PATH = "/account/key"

TITLE_PROMPT = (
    "You are a chatbot helping the user create a simple app or script, and "
    "your current job is to create a succinct title, maximum 3-5 words, for "
    "the chat given their initial prompt. Please return only the title."
)


def _auth_headers(credential: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {credential}",
        "Content-Type": "application/json",
    }


def _message_content(data: Any) -> str:
    """Return ``choices[0].message.content`` or ``""`` if absent."""
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else ""


class CompletionClient:
    """Streaming chat-completion source backed by ``httpx.AsyncClient``.

    Parameters
    ----------
    upstream:
        Provider URL and request defaults.
    transport:
        Optional ``httpx`` transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        upstream: UpstreamSpec,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.upstream = upstream
        base_url = upstream.url.rstrip("/")
        # Account endpoints live beside the /v1 API root, not under it
        self._key_info_url = base_url.removesuffix("/v1") + _KEY_INFO_PATH
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(60, connect=upstream.connect_timeout),
            transport=transport,
        )

    @asynccontextmanager
    async def open_stream(
        self,
        request: CompletionRequest,
        credential: str,
        timeout: float = 65.0,
    ) -> AsyncIterator[httpx.Response]:
        """Issue the streaming request and yield the open response.

        Raises ``UpstreamError`` for non-2xx statuses, and
        ``UpstreamTimeoutError`` / ``UpstreamConnectionError`` for
        transport failures, including those raised while the caller is
        reading the body.
        """
        if not credential:
            raise UpstreamError("API key is required for upstream calls", 401)

        try:
            async with self._client.stream(
                "POST",
                "/chat/completions",
                json=request.to_payload(),
                headers=_auth_headers(credential),
                timeout=httpx.Timeout(timeout, connect=self.upstream.connect_timeout),
            ) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode(errors="replace")
                    _logger.warning(
                        "Upstream returned %d for model %s",
                        resp.status_code, request.model,
                    )
                    raise UpstreamError.from_status(resp.status_code, body)
                yield resp
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Upstream request timed out: {e}") from e
        except httpx.TransportError as e:
            raise UpstreamConnectionError(f"Upstream connection failed: {e}") from e

    async def complete(
        self,
        request: CompletionRequest,
        credential: str,
        timeout: float = 30.0,
    ) -> str:
        """Issue a non-streaming request and return the reply text.

        Raises the same errors as ``open_stream()``.
        """
        if not credential:
            raise UpstreamError("API key is required for upstream calls", 401)

        try:
            resp = await self._client.post(
                "/chat/completions",
                json=request.to_payload(stream=False),
                headers=_auth_headers(credential),
                timeout=httpx.Timeout(timeout, connect=self.upstream.connect_timeout),
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Upstream request timed out: {e}") from e
        except httpx.TransportError as e:
            raise UpstreamConnectionError(f"Upstream connection failed: {e}") from e

        if resp.status_code >= 400:
            _logger.warning(
                "Upstream returned %d for model %s", resp.status_code, request.model,
            )
            raise UpstreamError.from_status(resp.status_code, resp.text)
        try:
            data: Any = resp.json()
        except ValueError as e:
            raise UpstreamError("Upstream returned a non-JSON body") from e
        return _message_content(data)

    async def generate_title(self, prompt: str, credential: str) -> str | None:
        """Ask the title model for a 3-5 word chat title.

        Returns ``None`` when titles are disabled or the call fails, so
        callers can fall back to the prompt itself.
        """
        model = self.upstream.title_model
        if not model:
            return None
        request = CompletionRequest(
            messages=[
                {"role": "system", "content": TITLE_PROMPT},
                {"role": "user", "content": prompt},
            ],
            model=model,
            temperature=self.upstream.temperature,
            max_tokens=32,
            extra_params=dict(self.upstream.extra_params),
        )
        try:
            title = await self.complete(request, credential)
        except CoderStreamError as e:
            _logger.warning("Title generation failed: %s", e)
            return None
        title = title.strip().strip("\"'").strip()
        return title or None

    async def verify_credential(self, credential: str) -> bool:
        """Ask the provider whether *credential* is a valid key."""
        try:
            resp = await self._client.get(
                self._key_info_url,
                headers=_auth_headers(credential),
                timeout=10,
            )
        except httpx.HTTPError as e:
            _logger.warning("Credential verification failed: %s", e)
            return False
        if resp.status_code != 200:
            return False
        try:
            data: Any = resp.json()
        except ValueError:
            return False
        return bool(isinstance(data, dict) and data.get("valid"))

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
