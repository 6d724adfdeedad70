"""Shared data types for coder-stream."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Chat / message types
# ---------------------------------------------------------------------------

ROLES = ("system", "user", "assistant")


@dataclass(frozen=True)
class Message:
    """A persisted chat message.  Never mutated after creation."""

    id: str
    chat_id: str
    role: str  # system, user, assistant
    content: str
    position: int
    created_at: float = field(default_factory=time.time)

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class Chat:
    """A conversation that feeds completion requests."""

    id: str
    model: str
    quality: str = "high"  # "low" | "high"
    title: str = ""
    created_at: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# LLM types
# ---------------------------------------------------------------------------

@dataclass
class CompletionRequest:
    """Everything needed for a single upstream call."""

    messages: list[dict[str, str]]
    model: str
    temperature: float = 0.2
    max_tokens: int = 9000
    extra_params: dict[str, Any] = field(default_factory=dict)

    def to_payload(self, stream: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages,
            "stream": stream,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if self.extra_params:
            payload.update(self.extra_params)
        return payload


class StreamState(enum.Enum):
    """Lifecycle of one retrying stream session."""

    ATTEMPTING = "attempting"
    FORWARDING = "forwarding"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (
            StreamState.SUCCEEDED, StreamState.FAILED, StreamState.CANCELLED,
        )


@dataclass
class StreamSession:
    """In-flight attempt to obtain one complete assistant response.

    ``accumulated_content`` is append-only for the life of the session;
    ``current_attempt_content`` is reset at the start of every attempt.
    """

    target_message_id: str = ""
    chat_id: str = ""
    model: str = ""
    accumulated_content: str = ""
    current_attempt_content: str = ""
    attempt: int = 0
    cancelled: bool = False
    state: StreamState = StreamState.ATTEMPTING

    def begin_attempt(self) -> None:
        self.attempt += 1
        self.current_attempt_content = ""
        self.state = StreamState.ATTEMPTING

    def commit_attempt(self) -> None:
        self.accumulated_content += self.current_attempt_content


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Event types emitted by the streaming engine."""

    # Retry orchestrator
    STREAM_ATTEMPT = "stream.attempt"
    STREAM_RETRY = "stream.retry"
    STREAM_SUCCEEDED = "stream.succeeded"
    STREAM_FAILED = "stream.failed"
    STREAM_CANCELLED = "stream.cancelled"
    STREAM_PARTIAL = "stream.partial"

    # Continuation controller
    CONTINUATION_REQUESTED = "continuation.requested"
    CONTINUATION_FAILED = "continuation.failed"
    GENERATION_DONE = "generation.done"


@dataclass
class StreamEvent:
    """Event emitted by the engine via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
