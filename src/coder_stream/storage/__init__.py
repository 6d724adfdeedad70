"""Persistence collaborators for the engine."""

from coder_stream.storage.cache import TTLCache
from coder_stream.storage.store import MessageStore, SQLiteMessageStore, trim_history

__all__ = ["MessageStore", "SQLiteMessageStore", "TTLCache", "trim_history"]
