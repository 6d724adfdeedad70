"""HTTP service exposing the streaming engine."""

from coder_stream.server.app import create_app

__all__ = ["create_app"]
