"""coder-stream: streaming completion and continuation engine for
LLM-driven app generation."""

__version__ = "0.1.0"
