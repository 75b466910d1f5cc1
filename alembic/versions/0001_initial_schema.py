"""feat: initial roster schema: seasons, uploads, snapshots, players, change logs

Revision ID: 0001
Revises:
Create Date: 2025-08-10
"""

from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

SCHEMA = "roster"

# Columns stored at full precision (NUMERIC(38, 0))
BIG_COUNT_COLUMNS = [
    "current_power", "power", "building_power", "hero_power", "legion_power", "tech_power",
    "merits", "units_killed", "units_dead", "units_healed",
    "t1_kill_count", "t2_kill_count", "t3_kill_count", "t4_kill_count", "t5_kill_count",
    "resources_given",
    "gold", "gold_spent", "wood", "wood_spent", "ore", "ore_spent",
    "mana", "mana_spent", "gems", "gems_spent",
]
SMALL_INT_COLUMNS = [
    "division", "city_level", "victories", "defeats",
    "city_sieges", "scouted", "helps_given", "resources_given_count",
]


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.TIMESTAMP(timezone=True),
        server_default=sa.text("NOW()"),
        nullable=True,
    )


def upgrade() -> None:
    op.execute(f"CREATE SCHEMA IF NOT EXISTS {SCHEMA}")

    op.create_table(
        "seasons",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("start_date", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("end_date", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.text("false")),
        sa.Column("description", sa.Text, nullable=True),
        _created_at(),
        schema=SCHEMA,
    )

    op.create_table(
        "uploads",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("uploaded_by", sa.String(100), nullable=True),
        sa.Column("rows_processed", sa.Integer, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("duration_seconds", sa.Float, nullable=True),
        _created_at(),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        schema=SCHEMA,
    )

    op.create_table(
        "snapshots",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("timestamp", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("kingdom", sa.String(20), nullable=False),
        sa.Column(
            "upload_id",
            sa.Integer,
            sa.ForeignKey(f"{SCHEMA}.uploads.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "season_id",
            sa.Integer,
            sa.ForeignKey(f"{SCHEMA}.seasons.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _created_at(),
        schema=SCHEMA,
    )
    op.create_index("ix_snapshots_timestamp", "snapshots", ["timestamp"], schema=SCHEMA)

    op.create_table(
        "players",
        sa.Column("lord_id", sa.String(32), primary_key=True),
        sa.Column("current_name", sa.String(100), nullable=False),
        sa.Column("last_seen_at", sa.TIMESTAMP(timezone=True), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=True,
        ),
        schema=SCHEMA,
    )

    op.create_table(
        "player_snapshots",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "snapshot_id",
            sa.Integer,
            sa.ForeignKey(f"{SCHEMA}.snapshots.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "lord_id",
            sa.String(32),
            sa.ForeignKey(f"{SCHEMA}.players.lord_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("alliance_id", sa.String(32), nullable=True),
        sa.Column("alliance_tag", sa.String(20), nullable=True),
        sa.Column("faction", sa.String(50), nullable=True),
        *[sa.Column(name, sa.Integer, nullable=True) for name in SMALL_INT_COLUMNS],
        *[sa.Column(name, sa.Numeric(38, 0), nullable=True) for name in BIG_COUNT_COLUMNS],
        sa.UniqueConstraint("snapshot_id", "lord_id"),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_player_snapshots_lord_id", "player_snapshots", ["lord_id"], schema=SCHEMA
    )
    op.create_index(
        "ix_player_snapshots_alliance_tag", "player_snapshots", ["alliance_tag"], schema=SCHEMA
    )

    op.create_table(
        "name_changes",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "lord_id",
            sa.String(32),
            sa.ForeignKey(f"{SCHEMA}.players.lord_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("old_name", sa.String(100), nullable=False),
        sa.Column("new_name", sa.String(100), nullable=False),
        sa.Column("detected_at", sa.TIMESTAMP(timezone=True), nullable=False),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_name_changes_detected_at", "name_changes", ["detected_at"], schema=SCHEMA
    )

    op.create_table(
        "alliance_changes",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "lord_id",
            sa.String(32),
            sa.ForeignKey(f"{SCHEMA}.players.lord_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("old_alliance", sa.String(20), nullable=True),
        sa.Column("old_alliance_id", sa.String(32), nullable=True),
        sa.Column("new_alliance", sa.String(20), nullable=True),
        sa.Column("new_alliance_id", sa.String(32), nullable=True),
        sa.Column("detected_at", sa.TIMESTAMP(timezone=True), nullable=False),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_alliance_changes_detected_at", "alliance_changes", ["detected_at"], schema=SCHEMA
    )


def downgrade() -> None:
    op.drop_table("alliance_changes", schema=SCHEMA)
    op.drop_table("name_changes", schema=SCHEMA)
    op.drop_table("player_snapshots", schema=SCHEMA)
    op.drop_table("players", schema=SCHEMA)
    op.drop_table("snapshots", schema=SCHEMA)
    op.drop_table("uploads", schema=SCHEMA)
    op.drop_table("seasons", schema=SCHEMA)
