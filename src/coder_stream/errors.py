"""Exception taxonomy for the streaming engine."""

from __future__ import annotations

# Statuses that are worth another attempt even though they are 4xx
_RETRYABLE_CLIENT_STATUSES = (408, 429)

_STATUS_GUIDANCE = {
    401: "Authentication failed. Please reconnect your account.",
    402: "Insufficient balance. Please add credit to your account.",
    403: "Access denied. Check your API key permissions.",
}


class CoderStreamError(Exception):
    """Base class for all coder-stream errors."""


class UpstreamError(CoderStreamError):
    """The upstream chat-completion call failed.

    ``status_code`` is ``None`` for failures that never produced an HTTP
    response (timeouts, connection errors).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """4xx responses (except 408/429) can never succeed on retry."""
        if self.status_code is None:
            return True
        if 400 <= self.status_code < 500:
            return self.status_code in _RETRYABLE_CLIENT_STATUSES
        return True

    @classmethod
    def from_status(cls, status_code: int, body: str = "") -> UpstreamError:
        guidance = _STATUS_GUIDANCE.get(status_code)
        if guidance:
            return cls(guidance, status_code)
        detail = body.strip()[:500]
        return cls(f"Upstream API error: {status_code} - {detail}", status_code)


class UpstreamTimeoutError(UpstreamError):
    """The upstream request did not complete within its time budget."""


class UpstreamConnectionError(UpstreamError):
    """Network-level failure talking to the upstream API."""


class StreamIncompleteError(CoderStreamError):
    """A stream ended without the end-of-stream sentinel."""

    retryable = True


class StreamFailedError(CoderStreamError):
    """Terminal failure of a retrying stream session.

    ``partial_content`` carries whatever text was accumulated across all
    attempts so the caller can persist it.
    """

    def __init__(
        self,
        message: str,
        partial_content: str = "",
        attempts: int = 0,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.partial_content = partial_content
        self.attempts = attempts
        self.status_code = status_code


class ChatNotFoundError(CoderStreamError):
    """No chat with the given id."""


class MessageNotFoundError(CoderStreamError):
    """No message with the given id."""
