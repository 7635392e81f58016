"""Corporation blueprint snapshot models.

Stores the last observed blueprint collection of each corporation, keyed by
the blueprint identity key, and the append-only log of changes between
snapshots.
"""
from typing import Any, Optional

from sqlalchemy import BigInteger, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSON, insert

from brave.bpc.model.base import Base, str64, tstz


class BlueprintRecord(Base):
    """One blueprint in a corporation's stored snapshot.

    ``type_id``, ``location_id`` and ``quantity`` identify the blueprint;
    efficiency and runs are the mutable quality fields compared during
    reconciliation.
    """
    __tablename__ = "corporation_blueprints"

    corporation_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    type_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    location_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    quantity: Mapped[int] = mapped_column(Integer, primary_key=True)
    material_efficiency: Mapped[int] = mapped_column(Integer, nullable=False)
    time_efficiency: Mapped[int] = mapped_column(Integer, nullable=False)
    runs: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[tstz]


class BlueprintEventRecord(Base):
    """A reconciliation event, written once and never updated."""
    __tablename__ = "blueprint_events"

    event_id: Mapped[str64] = mapped_column(primary_key=True)
    corporation_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[str64]
    before: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    after: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    observed_at: Mapped[tstz]

    __table_args__ = (
        Index("idx_blueprint_events_corporation", "corporation_id", "observed_at"),
    )


def upsert_blueprint_stmt(corporation_id: int, values: dict, position: int, now):
    """Create PostgreSQL upsert statement for a blueprint snapshot entry.

    ``values`` holds the six record fields. Quality fields and the position
    in the fetched collection are overwritten on conflict.
    """
    quality = {
        "material_efficiency": values["material_efficiency"],
        "time_efficiency": values["time_efficiency"],
        "runs": values["runs"],
        "position": position,
        "updated_at": now,
    }
    return (
        insert(BlueprintRecord)
        .values(
            [
                {
                    "corporation_id": corporation_id,
                    "type_id": values["type_id"],
                    "location_id": values["location_id"],
                    "quantity": values["quantity"],
                    **quality,
                }
            ]
        )
        .on_conflict_do_update(
            index_elements=["corporation_id", "type_id", "location_id", "quantity"],
            set_=quality,
        )
    )
