"""Configuration for coder-stream.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./coder_stream.yaml``
  3. ``~/.config/coder-stream/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class UpstreamSpec:
    """The OpenAI-compatible chat-completion provider.

    ``models`` is ordered by quality tier: index 0 = ``"low"``,
    last = ``"high"``.
    """

    url: str = "https://gen.pollinations.ai/v1"
    models: list[str] = field(default_factory=lambda: ["openai", "openai-large"])
    temperature: float = 0.2
    max_tokens: int = 9000
    connect_timeout: float = 30
    extra_params: dict[str, Any] = field(
        default_factory=lambda: {"referrer": "coder-stream"}
    )
    # Model asked for short chat titles; empty disables the call
    title_model: str = "openai"

    def model_for_quality(self, quality: str) -> str:
        if quality == "low" or len(self.models) == 1:
            return self.models[0]
        return self.models[-1]


@dataclass
class RetrySpec:
    """Retry/backoff settings for one stream session.

    ``max_retries`` counts total attempts.  ``attempt_timeout`` is the
    wall-clock budget of each attempt (platform limit plus margin).
    """

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 10.0
    attempt_timeout: float = 65.0

    def backoff(self, attempt: int) -> float:
        """Delay before the attempt following *attempt* (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


@dataclass
class DetectorSpec:
    """Tunable thresholds of the completeness heuristic."""

    length_threshold: int = 15000
    bracket_threshold: int = 3


@dataclass
class ContinuationSpec:
    # 0 = unlimited
    max_continuations: int = 0


@dataclass
class StorageSpec:
    db_path: str = "~/.coder_stream/chats.db"


@dataclass
class AuthSpec:
    """Credential resolution for the HTTP service."""

    verify: bool = False
    cache_ttl: float = 30.0
    cache_max_entries: int = 500


@dataclass
class StreamConfig:
    """Top-level config for coder-stream."""

    upstream: UpstreamSpec = field(default_factory=UpstreamSpec)
    retry: RetrySpec = field(default_factory=RetrySpec)
    detector: DetectorSpec = field(default_factory=DetectorSpec)
    continuation: ContinuationSpec = field(default_factory=ContinuationSpec)
    storage: StorageSpec = field(default_factory=StorageSpec)
    auth: AuthSpec = field(default_factory=AuthSpec)

    # History sent upstream is trimmed beyond this many messages
    max_history: int = 10


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./coder_stream.yaml"),
    Path.home() / ".config" / "coder-stream" / "config.yaml",
]


def _parse_section(cls: type, raw: dict[str, Any] | None) -> Any:
    """Build dataclass *cls* from *raw*, ignoring unknown and null keys."""
    if not raw:
        return cls()
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in raw.items() if k in known and v is not None}
    unknown = set(raw) - known
    if unknown:
        _logger.warning(
            "Ignoring unknown %s keys: %s", cls.__name__, ", ".join(sorted(unknown)),
        )
    return cls(**kwargs)


def load_config(path: str | Path | None = None) -> StreamConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    StreamConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return StreamConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return StreamConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    return StreamConfig(
        upstream=_parse_section(UpstreamSpec, raw.get("upstream")),
        retry=_parse_section(RetrySpec, raw.get("retry")),
        detector=_parse_section(DetectorSpec, raw.get("detector")),
        continuation=_parse_section(ContinuationSpec, raw.get("continuation")),
        storage=_parse_section(StorageSpec, raw.get("storage")),
        auth=_parse_section(AuthSpec, raw.get("auth")),
        max_history=raw.get("max_history", 10),
    )
