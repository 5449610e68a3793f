"""SQLAlchemy models for local SQLite storage.

Stats snapshots and lineups are written by upstream collaborators and only
read here. Entity and team scores are derived: one row per key, overwritten
on every rerun, with the full breakdown kept as JSON text.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class StatSnapshotRow(Base):
    """One upstream stats row per entity per period."""

    __tablename__ = "stat_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    period_kind: Mapped[str] = mapped_column(String(8), nullable=False)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rank_delta: Mapped[int | None] = mapped_column(Integer, nullable=True)
    streak: Mapped[int] = mapped_column(Integer, default=0)
    metrics: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "period_key", name="uq_snapshot_entity_period"),
        Index("ix_snapshot_period_type", "period_key", "entity_type"),
    )


class LineupRow(Base):
    """A team's lineup for one period. Slots are a JSON list."""

    __tablename__ = "lineups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    league_id: Mapped[int] = mapped_column(Integer, nullable=False)
    team_id: Mapped[int] = mapped_column(Integer, nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    period_kind: Mapped[str] = mapped_column(String(8), nullable=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    slots: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("team_id", "period_key", name="uq_lineup_team_period"),
        Index("ix_lineup_league_period", "league_id", "period_key"),
    )


class EntityScoreRecord(Base):
    """Authoritative score for one entity in one period."""

    __tablename__ = "entity_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    base_points: Mapped[float] = mapped_column(Float, nullable=False)
    bonus_points: Mapped[float] = mapped_column(Float, nullable=False)
    penalty_points: Mapped[float] = mapped_column(Float, nullable=False)
    scarcity_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    total_points: Mapped[float] = mapped_column(Float, nullable=False)
    breakdown: Mapped[str] = mapped_column(Text, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "period_key", name="uq_entity_score_period"),
    )


class TeamScoreRecord(Base):
    """Authoritative score for one team in one period."""

    __tablename__ = "team_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[int] = mapped_column(Integer, nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    period_kind: Mapped[str] = mapped_column(String(8), nullable=False)
    mfg1_points: Mapped[float] = mapped_column(Float, default=0.0)
    mfg2_points: Mapped[float] = mapped_column(Float, default=0.0)
    cstr1_points: Mapped[float] = mapped_column(Float, default=0.0)
    cstr2_points: Mapped[float] = mapped_column(Float, default=0.0)
    prd1_points: Mapped[float] = mapped_column(Float, default=0.0)
    prd2_points: Mapped[float] = mapped_column(Float, default=0.0)
    phm1_points: Mapped[float] = mapped_column(Float, default=0.0)
    phm2_points: Mapped[float] = mapped_column(Float, default=0.0)
    brd1_points: Mapped[float] = mapped_column(Float, default=0.0)
    flex_points: Mapped[float] = mapped_column(Float, default=0.0)
    slot_points: Mapped[float] = mapped_column(Float, nullable=False)
    bonus_points: Mapped[float] = mapped_column(Float, nullable=False)
    total_points: Mapped[float] = mapped_column(Float, nullable=False)
    breakdown: Mapped[str] = mapped_column(Text, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("team_id", "period_key", name="uq_team_score_period"),
        Index("ix_team_score_period_total", "period_key", "total_points"),
    )
