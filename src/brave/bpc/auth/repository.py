"""SQLAlchemy persistence for the character token pool.

Credentials never reach the database in clear text: access and refresh
tokens are Fernet-encrypted on the way in and decrypted on the way out.
"""
from datetime import datetime, timezone
import logging
from typing import List

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from brave.bpc.auth.token import CharacterToken
from brave.bpc.model.tokens import CharacterTokenRecord, upsert_character_token_stmt

logger = logging.getLogger(__name__)


class TokenRepository:
    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        encryption_key: Fernet,
    ) -> None:
        self.database_session_maker = database_session_maker
        self.encryption_key = encryption_key

    async def save(self, token: CharacterToken) -> None:
        now = datetime.now(timezone.utc)
        stmt = upsert_character_token_stmt(
            character_id=token.character_id,
            character_name=token.character_name,
            corporation_id=token.corporation_id,
            access_token=self.encryption_key.encrypt(token.access_token.encode()).decode(),
            refresh_token=self.encryption_key.encrypt(token.refresh_token.encode()).decode(),
            scopes=sorted(token.scopes),
            expires_at=token.expires_at,
            now=now,
        )
        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(stmt)

    async def delete(self, character_id: int) -> bool:
        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(
                    delete(CharacterTokenRecord).where(
                        CharacterTokenRecord.character_id == character_id
                    )
                )
                return result.rowcount > 0

    async def load_all(self) -> List[CharacterToken]:
        async with self.database_session_maker() as database_session:
            records = (
                await database_session.scalars(
                    select(CharacterTokenRecord).order_by(CharacterTokenRecord.character_id)
                )
            ).all()

        tokens: List[CharacterToken] = []
        for record in records:
            # Rows that can't be decrypted (rotated key) or lost their scopes are skipped; the character has to
            # authorize again.
            try:
                tokens.append(
                    CharacterToken(
                        character_id=record.character_id,
                        character_name=record.character_name,
                        corporation_id=record.corporation_id,
                        access_token=self.encryption_key.decrypt(record.access_token.encode()).decode(),
                        refresh_token=self.encryption_key.decrypt(record.refresh_token.encode()).decode(),
                        expires_at=record.expires_at,
                        scopes=frozenset(record.scopes or []),
                    )
                )
            except (InvalidToken, ValueError):
                logger.warning("Skipping unusable token row for character %d", record.character_id)
        return tokens
