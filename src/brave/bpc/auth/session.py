"""Session identity.

Maps the opaque session key carried by a request cookie to the character that
signed in. Sessions live in Redis under ``bpc:session:<key>`` with a TTL, and
their age is checked again at lookup time, so an entry that outlived its TTL
for any reason is still treated as expired. There is no background sweep.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
import json
import logging
import secrets
from typing import Any, Optional, Union

import redis.asyncio as redis

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "bpc:session:"


@dataclass(frozen=True)
class Anonymous:
    @property
    def authenticated(self) -> bool:
        return False


@dataclass(frozen=True)
class Authenticated:
    character_id: int
    issued_at: datetime

    @property
    def authenticated(self) -> bool:
        return True


Identity = Union[Anonymous, Authenticated]

ANONYMOUS = Anonymous()


class SessionIdentity:
    def __init__(self, redis_client: redis.Redis, max_age: timedelta) -> None:
        self.redis_client = redis_client
        self.max_age = max_age

    def _key(self, session_key: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_key}"

    async def issue(self, character_id: int, now: datetime) -> str:
        """Create a session for ``character_id`` and return its opaque key."""
        session_key = secrets.token_urlsafe(32)
        payload = json.dumps({"character_id": character_id, "issued_at": now.isoformat()})
        await self.redis_client.set(
            self._key(session_key),
            payload,
            ex=max(1, int(self.max_age.total_seconds())),
        )
        logger.debug("Issued session for character %d", character_id)
        return session_key

    async def identify(self, session_key: Optional[str], now: datetime) -> Identity:
        """
        Return the identity behind ``session_key``.

        Absent, malformed and expired sessions are all anonymous; this never raises for a bad key.
        """
        if not session_key:
            return ANONYMOUS

        raw: Any = await self.redis_client.get(self._key(session_key))
        if raw is None:
            return ANONYMOUS

        try:
            data = json.loads(raw)
            character_id = int(data["character_id"])
            issued_at = datetime.fromisoformat(data["issued_at"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed session entry")
            return ANONYMOUS

        if issued_at + self.max_age <= now:
            return ANONYMOUS

        return Authenticated(character_id=character_id, issued_at=issued_at)

    async def destroy(self, session_key: Optional[str]) -> None:
        if session_key:
            await self.redis_client.delete(self._key(session_key))
