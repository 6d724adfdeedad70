"""Engine lifecycle events."""

from coder_stream.events.bus import EventBus

__all__ = ["EventBus"]
