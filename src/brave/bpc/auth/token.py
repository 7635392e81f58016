from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, Optional


@dataclass(frozen=True)
class CharacterToken:
    """
    The current OAuth credentials of one character.

    Tokens are immutable; a refresh produces a new token through ``dataclasses.replace``. The granted scopes
    are fixed when the character authorizes and never empty, so a token without scopes cannot be built, let
    alone stored.

    Attributes:
        character_id: EVE character id, taken from the ``sub`` claim of the access token
        access_token: Bearer token presented to ESI
        refresh_token: Credential exchanged for the next access token
        expires_at: Timezone-aware expiry of the access token
        scopes: Scopes granted at authorization time
        character_name: Display name, informational only
        corporation_id: Corporation the character belonged to when it last authorized, None when unknown
    """

    character_id: int
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_at: datetime
    scopes: FrozenSet[str]
    character_name: str = ""
    corporation_id: Optional[int] = None

    def __post_init__(self) -> None:
        if not isinstance(self.scopes, frozenset):
            object.__setattr__(self, "scopes", frozenset(self.scopes))
        if len(self.scopes) == 0:
            raise ValueError(f"character {self.character_id} token has no granted scopes")

    def grants_any(self, scopes: Iterable[str]) -> bool:
        return not self.scopes.isdisjoint(scopes)

    def to_public_dict(self) -> Dict[str, Any]:
        """Token description safe to hand to a client: no credentials."""
        return {
            "character_id": self.character_id,
            "character_name": self.character_name,
            "corporation_id": self.corporation_id,
            "expires_at": self.expires_at.isoformat(),
            "scopes": sorted(self.scopes),
        }


@dataclass(frozen=True, order=True)
class ScopeSourcePair:
    """Binding of one required scope to the character whose token will exercise it."""

    scope: str
    character_id: int
