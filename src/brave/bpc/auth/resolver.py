"""
Scope Resolution

Given the scopes an operation requires, the resolver picks the character tokens that will exercise them. No
single character has to hold every scope: a Director may have granted the blueprint scope while another member
granted the structure scope, and an operation needing both is served by the two of them together.

Selection is a greedy set cover over the token pool:

1. Refuse immediately when some still-uncovered scope has no remaining candidate (NoCoverage)
2. Pick the candidate covering the most uncovered scopes, the lowest character id winning ties
3. If the candidate is expired under the clock-skew policy, refresh it once
   - invalid_grant: remove the token from the pool, discard the candidate, go back to step 1
   - anything else: fail with ResolutionTransient; coverage is never silently dropped
4. Bind every uncovered scope the candidate grants to it and repeat until nothing is uncovered

Every required scope appears in the result exactly once, bound to exactly one character.

Refresh is at most one in flight per character. Concurrent resolutions that need the same stale token wait on
the same refresh and all observe its outcome; the pool is updated once, by the refresh itself, and only if the
character did not authorize again while it ran. A newer authorization always wins over a refresh of the old one.
"""

import asyncio
from datetime import datetime, timezone
from functools import partial
import logging
from typing import Callable, Dict, Iterable, List, Optional, Set

from brave.bpc.auth.skew import ClockSkewPolicy
from brave.bpc.auth.store import TokenStore
from brave.bpc.auth.token import CharacterToken, ScopeSourcePair
from brave.bpc.esi.errors import ErrorKind, RefreshError
from brave.bpc.esi.oauth import TokenRefresher

logger = logging.getLogger(__name__)


class ResolutionError(Exception):
    pass


class NoCoverage(ResolutionError):
    """No linked character currently grants ``scope``."""

    def __init__(self, scope: str) -> None:
        super().__init__(f"no character grants scope {scope}")
        self.scope = scope


class ResolutionTransient(ResolutionError):
    """A candidate could not be refreshed for a retryable reason."""

    def __init__(self, character_id: int, kind: ErrorKind) -> None:
        super().__init__(f"refresh of character {character_id} failed: {kind.value}")
        self.character_id = character_id
        self.kind = kind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScopeResolver:
    def __init__(
        self,
        store: TokenStore,
        refresher: TokenRefresher,
        policy: Optional[ClockSkewPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.refresher = refresher
        self.policy = policy or ClockSkewPolicy()
        self.clock = clock
        self._in_flight: Dict[int, "asyncio.Future[CharacterToken]"] = {}

    async def _refresh_and_store(self, token: CharacterToken) -> CharacterToken:
        # The character may authorize again while the refresh is out; the newer token then stays.
        try:
            refreshed = await self.refresher.refresh(token, self.clock())
        except RefreshError as e:
            if e.kind is ErrorKind.INVALID_GRANT and not await self.store.discard(token):
                logger.info(
                    "Keeping newer token of character %d after failed refresh of the old one",
                    token.character_id,
                )
            raise
        if not await self.store.replace(token, refreshed):
            logger.info(
                "Not storing refresh of character %d: token changed during refresh",
                token.character_id,
            )
        return refreshed

    def _forget(self, character_id: int, future: "asyncio.Future[CharacterToken]") -> None:
        if self._in_flight.get(character_id) is future:
            del self._in_flight[character_id]

    async def refresh(self, token: CharacterToken) -> CharacterToken:
        """
        Refresh ``token`` unless a refresh of the same character is already running, in which case wait for it.

        The shared refresh is shielded: a caller giving up does not cancel it for the others.
        """
        future = self._in_flight.get(token.character_id)
        if future is None:
            future = asyncio.ensure_future(self._refresh_and_store(token))
            self._in_flight[token.character_id] = future
            future.add_done_callback(partial(self._forget, token.character_id))
        else:
            logger.debug("Joining in-flight refresh for character %d", token.character_id)
        return await asyncio.shield(future)

    async def resolve(
        self,
        required_scopes: Iterable[str],
        among: Optional[Iterable[int]] = None,
    ) -> List[ScopeSourcePair]:
        """
        Select and, where needed, refresh a covering set of tokens for ``required_scopes``.

        Args:
            required_scopes: Scopes the operation needs
            among: When given, only tokens of these characters are considered

        Raises:
            NoCoverage: Some scope is granted by no remaining candidate
            ResolutionTransient: A needed refresh failed for a retryable reason
        """
        uncovered: Set[str] = set(required_scopes)
        allowed = frozenset(among) if among is not None else None
        discarded: Set[int] = set()
        pairs: List[ScopeSourcePair] = []

        while len(uncovered) > 0:
            candidates = [
                token
                for token in self.store.tokens_covering_any(uncovered)
                if token.character_id not in discarded
                and (allowed is None or token.character_id in allowed)
            ]

            for scope in sorted(uncovered):
                if not any(scope in token.scopes for token in candidates):
                    raise NoCoverage(scope)

            best = min(
                candidates,
                key=lambda token: (-len(token.scopes & uncovered), token.character_id),
            )

            if self.policy.is_expired(best.expires_at, self.clock()):
                try:
                    best = await self.refresh(best)
                except RefreshError as e:
                    if e.kind is ErrorKind.INVALID_GRANT:
                        current = self.store.get(best.character_id)
                        if current is None or current == best:
                            logger.info(
                                "Discarding character %d: refresh token no longer valid",
                                best.character_id,
                            )
                            discarded.add(best.character_id)
                        continue
                    raise ResolutionTransient(best.character_id, e.kind) from e

            granted = sorted(best.scopes & uncovered)
            pairs.extend(ScopeSourcePair(scope, best.character_id) for scope in granted)
            uncovered.difference_update(granted)

        return pairs

    async def token_for(self, required_scopes: Iterable[str], among: Optional[Iterable[int]] = None) -> CharacterToken:
        """
        Resolve ``required_scopes`` to a single character's token.

        For operations that make one ESI call, the scopes must be held by one character. When the greedy cover
        needs more than one character, NoCoverage is raised for the first scope the best character lacks.
        """
        pairs = await self.resolve(required_scopes, among)
        if len(pairs) == 0:
            raise ValueError("token_for requires at least one scope")

        character_ids = {pair.character_id for pair in pairs}
        if len(character_ids) > 1:
            first = pairs[0].character_id
            missing = sorted(pair.scope for pair in pairs if pair.character_id != first)
            raise NoCoverage(missing[0])

        token = self.store.get(pairs[0].character_id)
        if token is None:
            raise NoCoverage(pairs[0].scope)
        return token
