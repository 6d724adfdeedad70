"""Credential resolution for incoming requests."""

from __future__ import annotations

import hashlib
import logging
from typing import Awaitable, Callable, Mapping

from coder_stream.storage.cache import TTLCache

_logger = logging.getLogger(__name__)

VerifyFn = Callable[[str], Awaitable[bool]]


def extract_credential(headers: Mapping[str, str]) -> str | None:
    """Pull the caller's API key from ``Authorization`` or ``X-Api-Key``."""
    auth = headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
        if token:
            return token
    key = headers.get("x-api-key", "").strip()
    return key or None


class CredentialResolver:
    """Resolve and optionally verify credentials, caching verdicts.

    Verdicts (negative ones too) are cached under a SHA-256 digest of the
    credential, so the raw key is never kept as a cache key.
    """

    def __init__(self, verify: VerifyFn | None = None, cache: TTLCache | None = None) -> None:
        self._verify = verify
        self._cache = cache if cache is not None else TTLCache()

    async def resolve(self, headers: Mapping[str, str]) -> str | None:
        """Return the credential if present and accepted, else ``None``."""
        credential = extract_credential(headers)
        if credential is None:
            return None
        if self._verify is None:
            return credential

        digest = hashlib.sha256(credential.encode()).hexdigest()
        valid = self._cache.get(digest)
        if valid is None:
            valid = await self._verify(credential)
            self._cache.set(digest, valid)
            if not valid:
                _logger.info("Rejected credential %s...", digest[:8])
        return credential if valid else None
