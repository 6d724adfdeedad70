"""Generation control for coder-stream."""

from coder_stream.core.controller import ContinuationController, GenerationResult

__all__ = ["ContinuationController", "GenerationResult"]
