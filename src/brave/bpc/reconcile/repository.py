from datetime import datetime, timezone
import logging
from typing import Dict, List, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from brave.bpc.model.blueprints import (
    BlueprintEventRecord,
    BlueprintRecord,
    upsert_blueprint_stmt,
)
from brave.bpc.reconcile.records import (
    EventKind,
    IdentityKey,
    ReconciliationEvent,
    ResourceRecord,
)

logger = logging.getLogger(__name__)


class BlueprintRepository:
    """
    Stored blueprint snapshots and the event log, backed by PostgreSQL.

    ``apply`` writes a whole changeset in one transaction: snapshot upserts and deletes together with the
    event rows. Either all of it lands or none of it does.
    """

    def __init__(self, database_session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.database_session_maker = database_session_maker

    async def load_snapshot(self, corporation_id: int) -> List[ResourceRecord]:
        stmt = (
            select(BlueprintRecord)
            .where(BlueprintRecord.corporation_id == corporation_id)
            .order_by(
                BlueprintRecord.position,
                BlueprintRecord.type_id,
                BlueprintRecord.location_id,
                BlueprintRecord.quantity,
            )
        )
        async with self.database_session_maker() as database_session:
            rows = (await database_session.scalars(stmt)).all()

        return [
            ResourceRecord(
                type_id=row.type_id,
                location_id=row.location_id,
                quantity=row.quantity,
                material_efficiency=row.material_efficiency,
                time_efficiency=row.time_efficiency,
                runs=row.runs,
            )
            for row in rows
        ]

    async def apply(
        self,
        corporation_id: int,
        fetched: Sequence[ResourceRecord],
        events: Sequence[ReconciliationEvent],
    ) -> None:
        now = datetime.now(timezone.utc)

        positions: Dict[IdentityKey, int] = {}
        for position, record in enumerate(fetched):
            positions.setdefault(record.identity_key, position)

        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                for event in events:
                    record = event.record
                    if event.kind is EventKind.REMOVED:
                        await database_session.execute(
                            delete(BlueprintRecord).where(
                                BlueprintRecord.corporation_id == corporation_id,
                                BlueprintRecord.type_id == record.type_id,
                                BlueprintRecord.location_id == record.location_id,
                                BlueprintRecord.quantity == record.quantity,
                            )
                        )
                    else:
                        await database_session.execute(
                            upsert_blueprint_stmt(
                                corporation_id,
                                record.to_dict(),
                                positions.get(record.identity_key, len(positions)),
                                now,
                            )
                        )

                    database_session.add(
                        BlueprintEventRecord(
                            event_id=event.id,
                            corporation_id=event.corporation_id,
                            kind=event.kind.value,
                            before=event.before.to_dict() if event.before is not None else None,
                            after=event.after.to_dict() if event.after is not None else None,
                            observed_at=event.observed_at,
                        )
                    )

        logger.debug("Applied %d events for corporation %d", len(events), corporation_id)

    async def recent_events(self, corporation_id: int, limit: int = 100) -> List[BlueprintEventRecord]:
        stmt = (
            select(BlueprintEventRecord)
            .where(BlueprintEventRecord.corporation_id == corporation_id)
            .order_by(BlueprintEventRecord.event_id.desc())
            .limit(limit)
        )
        async with self.database_session_maker() as database_session:
            return list((await database_session.scalars(stmt)).all())
