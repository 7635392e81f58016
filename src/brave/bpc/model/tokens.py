"""Character token data models.

Provides the SQLAlchemy model backing the character token pool: one row per
character holding its latest OAuth tokens and the scopes it granted.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import BigInteger, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSON, insert

from brave.bpc.model.base import Base, str512, str4096, tstz


class CharacterTokenRecord(Base):
    """Latest authorization of one character.

    Both tokens are stored encrypted. Scopes are fixed when the
    character authorizes and only change when it authorizes again.
    """
    __tablename__ = "character_tokens"

    character_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    character_name: Mapped[str512]
    corporation_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    access_token: Mapped[str4096]
    refresh_token: Mapped[str4096]
    scopes: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    expires_at: Mapped[tstz]
    created_at: Mapped[tstz]
    updated_at: Mapped[tstz]

    __table_args__ = (
        Index("idx_character_tokens_expires", "expires_at"),
        Index("idx_character_tokens_corporation", "corporation_id"),
    )


def upsert_character_token_stmt(
    character_id: int,
    character_name: str,
    corporation_id: Optional[int],
    access_token: str,
    refresh_token: str,
    scopes: List[str],
    expires_at: datetime,
    now: datetime,
):
    """Create PostgreSQL upsert statement for a character token.

    The newest authorization for a character replaces whatever was stored
    before it, scopes and corporation included. ``created_at`` is kept from the first insert.
    """
    values = {
        "character_name": character_name,
        "corporation_id": corporation_id,
        "access_token": access_token,
        "refresh_token": refresh_token,
        "scopes": scopes,
        "expires_at": expires_at,
        "updated_at": now,
    }
    return (
        insert(CharacterTokenRecord)
        .values([{"character_id": character_id, "created_at": now, **values}])
        .on_conflict_do_update(index_elements=["character_id"], set_=values)
    )
