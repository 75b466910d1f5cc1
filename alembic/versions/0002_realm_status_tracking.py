"""feat: realm status tracking: has_left_realm / left_realm_at on players

Revision ID: 0002
Revises: 0001
Create Date: 2025-08-24
"""

from alembic import op
import sqlalchemy as sa

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None

SCHEMA = "roster"


def upgrade() -> None:
    op.add_column(
        "players",
        sa.Column("has_left_realm", sa.Boolean, nullable=False, server_default=sa.text("false")),
        schema=SCHEMA,
    )
    op.add_column(
        "players",
        sa.Column("left_realm_at", sa.TIMESTAMP(timezone=True), nullable=True),
        schema=SCHEMA,
    )
    op.create_check_constraint(
        "players_left_realm_consistent",
        "players",
        "(has_left_realm AND left_realm_at IS NOT NULL)"
        " OR (NOT has_left_realm AND left_realm_at IS NULL)",
        schema=SCHEMA,
    )
    op.create_index("ix_players_has_left_realm", "players", ["has_left_realm"], schema=SCHEMA)
    op.create_index("ix_players_last_seen_at", "players", ["last_seen_at"], schema=SCHEMA)


def downgrade() -> None:
    op.drop_index("ix_players_last_seen_at", table_name="players", schema=SCHEMA)
    op.drop_index("ix_players_has_left_realm", table_name="players", schema=SCHEMA)
    op.drop_constraint("players_left_realm_consistent", "players", schema=SCHEMA)
    op.drop_column("players", "left_realm_at", schema=SCHEMA)
    op.drop_column("players", "has_left_realm", schema=SCHEMA)
