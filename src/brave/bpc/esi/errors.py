"""
ESI and SSO error classification.

Error bodies returned by EVE SSO and ESI vary in shape: SSO answers with OAuth error objects
(``{"error": "invalid_grant", "error_description": ...}``), ESI with ``{"error": "..."}`` and sometimes with
plain text from an intermediate proxy. Only the ``error`` field and the HTTP status are needed to decide what
a caller should do next, so this module parses exactly those and classifies everything else as unknown.

Callers treat ``UNKNOWN`` like ``TRANSIENT``: retrying is preferred over silently discarding a credential.
"""

import asyncio
import json
from enum import Enum
from typing import Any, Optional

from aiohttp import ClientConnectionError, ClientResponseError


class ErrorKind(str, Enum):
    """Taxonomy of external API failures."""

    INVALID_GRANT = "invalid_grant"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.INVALID_GRANT


RATE_LIMIT_STATUSES = frozenset({420, 429})
"""ESI answers 420 when the error limit is exhausted, 429 on plain rate limiting."""


class ESIError(Exception):
    """
    A non-success response from ESI or EVE SSO.

    Attributes:
        status: HTTP status code of the response
        body: Raw response body; a parsed JSON object, text or bytes
    """

    def __init__(self, status: int, body: Any = None, message: Optional[str] = None) -> None:
        super().__init__(message or f"ESI request failed with status {status}")
        self.status = status
        self.body = body

    @property
    def error(self) -> Optional[str]:
        return error_field(self.body)


class RefreshError(Exception):
    """A token refresh failed; ``kind`` tells the caller whether to drop the token or retry."""

    def __init__(self, character_id: int, kind: ErrorKind, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"refresh failed for character {character_id}: {kind.value}")
        self.character_id = character_id
        self.kind = kind
        self.cause = cause


def error_field(body: Any) -> Optional[str]:
    """
    Extract the ``error`` string from a response body.

    Accepts a decoded JSON object, or JSON text as ``str``/``bytes``. Anything that isn't a JSON object with a
    string ``error`` member yields None.
    """
    if isinstance(body, (bytes, bytearray)):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError:
            return None

    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError:
            return None

    if isinstance(body, dict):
        value = body.get("error")
        if isinstance(value, str):
            return value
    return None


def classify(raw: Any) -> ErrorKind:
    """
    Normalize an external API failure into an ErrorKind.

    ``raw`` may be an ESIError, an aiohttp client exception, a timeout, or a bare error payload.

    Rules, in order:
    - an ``error`` field equal to ``invalid_grant`` is INVALID_GRANT
    - status 420 or 429 is RATE_LIMITED
    - status 5xx, timeouts and connection failures are TRANSIENT
    - anything else is UNKNOWN
    """
    status: Optional[int] = None
    body: Any = None

    if isinstance(raw, ESIError):
        status, body = raw.status, raw.body
    elif isinstance(raw, ClientResponseError):
        status = raw.status
    elif isinstance(raw, (asyncio.TimeoutError, TimeoutError, ClientConnectionError)):
        return ErrorKind.TRANSIENT
    else:
        body = raw

    if error_field(body) == "invalid_grant":
        return ErrorKind.INVALID_GRANT

    if status is not None:
        if status in RATE_LIMIT_STATUSES:
            return ErrorKind.RATE_LIMITED
        if status >= 500:
            return ErrorKind.TRANSIENT

    return ErrorKind.UNKNOWN
