"""SQLAlchemy ORM models for the roster tracker.

roster schema: seasons, uploads, snapshots, players, player_snapshots,
name_changes, alliance_changes
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from realm_common.db.types import BigCount, UTCDateTime

SCHEMA = "roster"


class Base(DeclarativeBase):
    pass


class Season(Base):
    __tablename__ = "seasons"
    __table_args__ = {"schema": SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())

    snapshots: Mapped[list["Snapshot"]] = relationship(back_populates="season")


class Upload(Base):
    __tablename__ = "uploads"
    __table_args__ = {"schema": SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="processing")
    uploaded_by: Mapped[Optional[str]] = mapped_column(String(100))
    rows_processed: Mapped[Optional[int]] = mapped_column(Integer)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    snapshots: Mapped[list["Snapshot"]] = relationship(back_populates="upload")


class Snapshot(Base):
    __tablename__ = "snapshots"
    __table_args__ = (
        Index("ix_snapshots_timestamp", "timestamp"),
        {"schema": SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    kingdom: Mapped[str] = mapped_column(String(20), nullable=False)
    upload_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey(f"{SCHEMA}.uploads.id", ondelete="SET NULL")
    )
    season_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey(f"{SCHEMA}.seasons.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())

    upload: Mapped[Optional[Upload]] = relationship(back_populates="snapshots")
    season: Mapped[Optional[Season]] = relationship(back_populates="snapshots")
    players: Mapped[list["PlayerSnapshot"]] = relationship(back_populates="snapshot")


class Player(Base):
    __tablename__ = "players"
    __table_args__ = (
        CheckConstraint(
            "(has_left_realm AND left_realm_at IS NOT NULL)"
            " OR (NOT has_left_realm AND left_realm_at IS NULL)",
            name="players_left_realm_consistent",
        ),
        Index("ix_players_has_left_realm", "has_left_realm"),
        Index("ix_players_last_seen_at", "last_seen_at"),
        {"schema": SCHEMA},
    )

    lord_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    current_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    has_left_realm: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    left_realm_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )

    snapshots: Mapped[list["PlayerSnapshot"]] = relationship(back_populates="player")
    name_changes: Mapped[list["NameChange"]] = relationship(
        back_populates="player", order_by="NameChange.detected_at.desc()"
    )
    alliance_changes: Mapped[list["AllianceChange"]] = relationship(
        back_populates="player", order_by="AllianceChange.detected_at.desc()"
    )


class PlayerSnapshot(Base):
    __tablename__ = "player_snapshots"
    __table_args__ = (
        UniqueConstraint("snapshot_id", "lord_id"),
        Index("ix_player_snapshots_lord_id", "lord_id"),
        Index("ix_player_snapshots_alliance_tag", "alliance_tag"),
        {"schema": SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    snapshot_id: Mapped[int] = mapped_column(
        Integer, ForeignKey(f"{SCHEMA}.snapshots.id", ondelete="CASCADE"), nullable=False
    )
    lord_id: Mapped[str] = mapped_column(
        String(32), ForeignKey(f"{SCHEMA}.players.lord_id", ondelete="CASCADE"), nullable=False
    )

    # identity at the time of the snapshot
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    division: Mapped[int] = mapped_column(Integer, default=0)
    alliance_id: Mapped[Optional[str]] = mapped_column(String(32))
    alliance_tag: Mapped[Optional[str]] = mapped_column(String(20))
    city_level: Mapped[int] = mapped_column(Integer, default=0)
    faction: Mapped[Optional[str]] = mapped_column(String(50))

    # power
    current_power: Mapped[int] = mapped_column(BigCount, default=0)
    power: Mapped[int] = mapped_column(BigCount, default=0)
    building_power: Mapped[int] = mapped_column(BigCount, default=0)
    hero_power: Mapped[int] = mapped_column(BigCount, default=0)
    legion_power: Mapped[int] = mapped_column(BigCount, default=0)
    tech_power: Mapped[int] = mapped_column(BigCount, default=0)

    # combat
    merits: Mapped[int] = mapped_column(BigCount, default=0)
    units_killed: Mapped[int] = mapped_column(BigCount, default=0)
    units_dead: Mapped[int] = mapped_column(BigCount, default=0)
    units_healed: Mapped[int] = mapped_column(BigCount, default=0)
    t1_kill_count: Mapped[int] = mapped_column(BigCount, default=0)
    t2_kill_count: Mapped[int] = mapped_column(BigCount, default=0)
    t3_kill_count: Mapped[int] = mapped_column(BigCount, default=0)
    t4_kill_count: Mapped[int] = mapped_column(BigCount, default=0)
    t5_kill_count: Mapped[int] = mapped_column(BigCount, default=0)
    victories: Mapped[int] = mapped_column(Integer, default=0)
    defeats: Mapped[int] = mapped_column(Integer, default=0)

    # activity
    city_sieges: Mapped[int] = mapped_column(Integer, default=0)
    scouted: Mapped[int] = mapped_column(Integer, default=0)
    helps_given: Mapped[int] = mapped_column(Integer, default=0)
    resources_given: Mapped[int] = mapped_column(BigCount, default=0)
    resources_given_count: Mapped[int] = mapped_column(Integer, default=0)

    # economy
    gold: Mapped[int] = mapped_column(BigCount, default=0)
    gold_spent: Mapped[int] = mapped_column(BigCount, default=0)
    wood: Mapped[int] = mapped_column(BigCount, default=0)
    wood_spent: Mapped[int] = mapped_column(BigCount, default=0)
    ore: Mapped[int] = mapped_column(BigCount, default=0)
    ore_spent: Mapped[int] = mapped_column(BigCount, default=0)
    mana: Mapped[int] = mapped_column(BigCount, default=0)
    mana_spent: Mapped[int] = mapped_column(BigCount, default=0)
    gems: Mapped[int] = mapped_column(BigCount, default=0)
    gems_spent: Mapped[int] = mapped_column(BigCount, default=0)

    snapshot: Mapped[Snapshot] = relationship(back_populates="players")
    player: Mapped[Player] = relationship(back_populates="snapshots")


class NameChange(Base):
    __tablename__ = "name_changes"
    __table_args__ = (
        Index("ix_name_changes_detected_at", "detected_at"),
        {"schema": SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lord_id: Mapped[str] = mapped_column(
        String(32), ForeignKey(f"{SCHEMA}.players.lord_id", ondelete="CASCADE"), nullable=False
    )
    old_name: Mapped[str] = mapped_column(String(100), nullable=False)
    new_name: Mapped[str] = mapped_column(String(100), nullable=False)
    detected_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    player: Mapped[Player] = relationship(back_populates="name_changes")


class AllianceChange(Base):
    __tablename__ = "alliance_changes"
    __table_args__ = (
        Index("ix_alliance_changes_detected_at", "detected_at"),
        {"schema": SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lord_id: Mapped[str] = mapped_column(
        String(32), ForeignKey(f"{SCHEMA}.players.lord_id", ondelete="CASCADE"), nullable=False
    )
    old_alliance: Mapped[Optional[str]] = mapped_column(String(20))
    old_alliance_id: Mapped[Optional[str]] = mapped_column(String(32))
    new_alliance: Mapped[Optional[str]] = mapped_column(String(20))
    new_alliance_id: Mapped[Optional[str]] = mapped_column(String(32))
    detected_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    player: Mapped[Player] = relationship(back_populates="alliance_changes")
