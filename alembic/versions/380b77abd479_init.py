"""init

Revision ID: 380b77abd479
Revises:
Create Date: 2026-10-19 10:02:41.518230

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "380b77abd479"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "character_tokens",
        sa.Column("character_id", sa.BigInteger, primary_key=True),
        sa.Column("character_name", sa.String(512), nullable=False),
        sa.Column("corporation_id", sa.BigInteger, nullable=True),
        sa.Column("access_token", sa.String(4096), nullable=False),
        sa.Column("refresh_token", sa.String(4096), nullable=False),
        sa.Column("scopes", sa.JSON, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_character_tokens_expires", "character_tokens", ["expires_at"])
    op.create_index("idx_character_tokens_corporation", "character_tokens", ["corporation_id"])

    op.create_table(
        "corporation_blueprints",
        sa.Column("corporation_id", sa.BigInteger, nullable=False),
        sa.Column("type_id", sa.BigInteger, nullable=False),
        sa.Column("location_id", sa.BigInteger, nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("material_efficiency", sa.Integer, nullable=False),
        sa.Column("time_efficiency", sa.Integer, nullable=False),
        sa.Column("runs", sa.Integer, nullable=False),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_primary_key(
        "pk_corporation_blueprints", "corporation_blueprints",
        ["corporation_id", "type_id", "location_id", "quantity"]
    )

    # Append-only; rows are never updated.
    op.create_table(
        "blueprint_events",
        sa.Column("event_id", sa.String(64), primary_key=True),
        sa.Column("corporation_id", sa.BigInteger, nullable=False),
        sa.Column("kind", sa.String(64), nullable=False),
        sa.Column("before", sa.JSON, nullable=True),
        sa.Column("after", sa.JSON, nullable=True),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_blueprint_events_corporation", "blueprint_events", ["corporation_id", "observed_at"]
    )


def downgrade() -> None:
    op.drop_table("character_tokens")
    op.drop_table("corporation_blueprints")
    op.drop_table("blueprint_events")
