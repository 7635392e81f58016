"""Process-wide identifier issuing.

Identifiers are ULIDs: 128 bits, lexicographically sortable and prefixed with a millisecond timestamp. ULIDs
created within the same millisecond are not ordered by the library, so the issuer bumps the previous value
to keep identifiers strictly increasing within the process.
"""

import threading
from typing import Optional

from ulid import ULID


class IdentifierIssuer:
    """
    Issues unique, time-ordered identifiers for new domain records.

    Safe to share between threads and tasks. Every identifier returned is strictly greater than the one
    before it, even when the clock does not advance or moves backwards.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: Optional[int] = None

    def issue(self) -> str:
        with self._lock:
            candidate = int(ULID())
            if self._last is not None and candidate <= self._last:
                candidate = self._last + 1
            self._last = candidate
            return str(ULID.from_int(candidate))


default_issuer = IdentifierIssuer()
"""Shared issuer used when a component is not given its own."""
