"""Upstream client, SSE decoding, retry and completeness heuristics."""

from coder_stream.llm.client import CompletionClient
from coder_stream.llm.continuation import continuation_prompt, is_incomplete
from coder_stream.llm.retry import StreamingRetry, StreamSource, is_retryable
from coder_stream.llm.sse import ChatCompletionStream, SSEDecoder, encode_delta

__all__ = [
    "ChatCompletionStream",
    "CompletionClient",
    "SSEDecoder",
    "StreamSource",
    "StreamingRetry",
    "continuation_prompt",
    "encode_delta",
    "is_incomplete",
    "is_retryable",
]
