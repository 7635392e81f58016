import asyncio
from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator, Dict, Iterable, List, Optional, Protocol

from brave.bpc.auth.token import CharacterToken

logger = logging.getLogger(__name__)


class TokenPersistence(Protocol):
    """Durable side of the token pool. See brave.bpc.auth.repository.TokenRepository."""

    async def save(self, token: CharacterToken) -> None: ...

    async def delete(self, character_id: int) -> bool: ...

    async def load_all(self) -> List[CharacterToken]: ...


class TokenStore:
    """
    Live pool of character tokens, one per character.

    Reads are lock-free and see a consistent token per character. Writes for the same character are serialized
    by a per-character lock, so updating one character never waits on another. When a persistence backend is
    given, every write goes through to it while the character's lock is held, which keeps the database and the
    pool in the same order of updates.

    A character's lock exists only while some write for it holds or waits on it.
    """

    def __init__(self, persistence: Optional[TokenPersistence] = None) -> None:
        self._tokens: Dict[int, CharacterToken] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}
        self._persistence = persistence

    @asynccontextmanager
    async def _locked(self, character_id: int) -> AsyncIterator[None]:
        lock = self._locks.get(character_id)
        if lock is None:
            lock = self._locks[character_id] = asyncio.Lock()
        self._lock_users[character_id] = self._lock_users.get(character_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[character_id] -= 1
            if self._lock_users[character_id] == 0:
                del self._lock_users[character_id]
                del self._locks[character_id]

    async def _write(self, token: CharacterToken) -> None:
        if self._persistence is not None:
            await self._persistence.save(token)
        self._tokens[token.character_id] = token

    async def _delete(self, character_id: int) -> bool:
        if self._persistence is not None:
            await self._persistence.delete(character_id)
        return self._tokens.pop(character_id, None) is not None

    async def load(self) -> int:
        """Populate the pool from persistence. Returns the number of tokens loaded."""
        if self._persistence is None:
            return 0

        tokens = await self._persistence.load_all()
        for token in tokens:
            async with self._locked(token.character_id):
                self._tokens[token.character_id] = token

        logger.info("Loaded %d character tokens", len(tokens))
        return len(tokens)

    async def put(self, token: CharacterToken) -> None:
        """Insert or replace the token of ``token.character_id``; the newest authorization wins."""
        async with self._locked(token.character_id):
            await self._write(token)

        logger.debug(
            "Stored token for character %d expiring %s",
            token.character_id,
            token.expires_at.isoformat(),
        )

    async def replace(self, expected: CharacterToken, token: CharacterToken) -> bool:
        """
        Store ``token`` only if the character's current token is still ``expected``.

        Returns False, leaving the pool untouched, when the character authorized again or was removed since
        ``expected`` was read.
        """
        if expected.character_id != token.character_id:
            raise ValueError("replace() must keep the character")

        async with self._locked(token.character_id):
            if self._tokens.get(token.character_id) != expected:
                return False
            await self._write(token)
        return True

    async def remove(self, character_id: int) -> bool:
        """Forget a character's token. Returns False when there was nothing to remove."""
        async with self._locked(character_id):
            removed = await self._delete(character_id)

        if removed:
            logger.info("Removed token for character %d", character_id)
        return removed

    async def discard(self, expected: CharacterToken) -> bool:
        """Remove the character's token only if it is still ``expected``. Returns True if it was removed."""
        async with self._locked(expected.character_id):
            if self._tokens.get(expected.character_id) != expected:
                return False
            await self._delete(expected.character_id)

        logger.info("Removed token for character %d", expected.character_id)
        return True

    def get(self, character_id: int) -> Optional[CharacterToken]:
        return self._tokens.get(character_id)

    def members_of(self, corporation_id: int) -> List[int]:
        """Ids of the characters whose token was issued while they belonged to ``corporation_id``."""
        return sorted(
            token.character_id
            for token in self._tokens.values()
            if token.corporation_id == corporation_id
        )

    def tokens_covering_any(self, scopes: Iterable[str]) -> List[CharacterToken]:
        """Every stored token granting at least one of ``scopes``, ordered by character id."""
        wanted = frozenset(scopes)
        if len(wanted) == 0:
            return []
        return sorted(
            (token for token in self._tokens.values() if token.grants_any(wanted)),
            key=lambda token: token.character_id,
        )

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, character_id: object) -> bool:
        return character_id in self._tokens
