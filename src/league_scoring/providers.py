"""Stats and lineup providers.

The in-memory providers back tests and embedding callers. The SQL
providers read the ``stat_snapshots`` and ``lineups`` tables that the
upstream collaborators populate.
"""

from __future__ import annotations

import json
import logging
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .core.errors import InvalidSnapshotError
from .core.models import EntityType, Lineup, LineupSlot, Period, StatSnapshot
from .db import get_session_factory
from .sqlmodels import LineupRow, StatSnapshotRow

logger = logging.getLogger(__name__)


class InMemoryStatsProvider:
    def __init__(self, snapshots: Optional[list[StatSnapshot]] = None):
        self._rows: dict[tuple[str, EntityType, int], StatSnapshot] = {}
        for snapshot in snapshots or []:
            self.add(snapshot)

    def add(self, snapshot: StatSnapshot) -> None:
        key = (snapshot.period.key, snapshot.entity_type, snapshot.entity_id)
        if key in self._rows:
            raise ValueError(f"Duplicate snapshot for {snapshot.entity_type.value}:{snapshot.entity_id} in {snapshot.period}")
        self._rows[key] = snapshot

    async def get_snapshots(
        self,
        period: Period,
        entity_type: Optional[EntityType] = None,
        on_invalid: Optional[Callable[[InvalidSnapshotError], None]] = None,
    ) -> list[StatSnapshot]:
        rows = [
            s for (key, etype, _), s in self._rows.items()
            if key == period.key and (entity_type is None or etype == entity_type)
        ]
        return sorted(rows, key=lambda s: (s.entity_type.value, s.entity_id))

    async def get_snapshot(
        self, entity_type: EntityType, entity_id: int, period: Period,
    ) -> Optional[StatSnapshot]:
        return self._rows.get((period.key, entity_type, entity_id))


class InMemoryLineupProvider:
    def __init__(self):
        self._lineups: dict[tuple[int, str], Lineup] = {}
        self._leagues: dict[int, int] = {}

    def add(self, lineup: Lineup, league_id: int = 1) -> None:
        self._lineups[(lineup.team_id, lineup.period.key)] = lineup
        self._leagues[lineup.team_id] = league_id

    def lock(self, team_id: int, period: Period) -> None:
        key = (team_id, period.key)
        self._lineups[key] = self._lineups[key].model_copy(update={"is_locked": True})

    async def get_lineup(self, team_id: int, period: Period) -> Optional[Lineup]:
        return self._lineups.get((team_id, period.key))

    async def list_team_ids(self, league_id: int, period: Period) -> list[int]:
        return sorted(
            team_id for (team_id, key) in self._lineups
            if key == period.key and self._leagues.get(team_id) == league_id
        )

    async def list_league_ids(self, period: Period) -> list[int]:
        return sorted({
            self._leagues[team_id] for (team_id, key) in self._lineups if key == period.key
        })


def _snapshot_from_row(row: StatSnapshotRow, entity_type: EntityType) -> StatSnapshot:
    """Build a snapshot from a stored row.

    Upstream writes ``rank = 0`` for unranked entities.

    Raises:
        InvalidSnapshotError: the row's period, rank, streak or metrics do
            not validate.
    """
    try:
        return StatSnapshot(
            entity_id=row.entity_id,
            entity_type=entity_type,
            period=Period(kind=row.period_kind, key=row.period_key),
            rank=row.rank or None,
            rank_delta=row.rank_delta,
            streak=row.streak or 0,
            metrics=json.loads(row.metrics or "{}"),
        )
    except ValidationError as exc:
        error = exc.errors()[0]
        location = ".".join(str(part) for part in error["loc"])
        reason = f"{location}: {error['msg']}" if location else error["msg"]
        raise InvalidSnapshotError(entity_type, row.entity_id, reason) from exc
    except ValueError as exc:
        raise InvalidSnapshotError(entity_type, row.entity_id, f"unreadable row: {exc}") from exc


def _lineup_from_row(row: LineupRow) -> Lineup:
    return Lineup(
        team_id=row.team_id,
        period=Period(kind=row.period_kind, key=row.period_key),
        is_locked=row.is_locked,
        slots=[LineupSlot.model_validate(s) for s in json.loads(row.slots or "[]")],
    )


class SqlStatsProvider:
    """Reads snapshots from the ``stat_snapshots`` table in bulk."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or get_session_factory()

    async def get_snapshots(
        self,
        period: Period,
        entity_type: Optional[EntityType] = None,
        on_invalid: Optional[Callable[[InvalidSnapshotError], None]] = None,
    ) -> list[StatSnapshot]:
        query = (
            select(StatSnapshotRow)
            .where(StatSnapshotRow.period_key == period.key)
            .order_by(StatSnapshotRow.entity_type.asc(), StatSnapshotRow.entity_id.asc())
        )
        if entity_type is not None:
            query = query.where(StatSnapshotRow.entity_type == entity_type.value)

        async with self._session_factory() as session:
            result = await session.execute(query)
            rows = result.scalars().all()

        snapshots = []
        for row in rows:
            try:
                row_type = EntityType(row.entity_type)
            except ValueError:
                logger.warning("Ignoring snapshot row %d with unknown entity type %r", row.id, row.entity_type)
                continue
            try:
                snapshots.append(_snapshot_from_row(row, row_type))
            except InvalidSnapshotError as exc:
                logger.warning("Unreadable snapshot %s: %s", exc.subject, exc.reason)
                if on_invalid is not None:
                    on_invalid(exc)
        return snapshots

    async def get_snapshot(
        self, entity_type: EntityType, entity_id: int, period: Period,
    ) -> Optional[StatSnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(StatSnapshotRow).where(
                    StatSnapshotRow.entity_type == entity_type.value,
                    StatSnapshotRow.entity_id == entity_id,
                    StatSnapshotRow.period_key == period.key,
                )
            )
            row = result.scalar_one_or_none()
        return _snapshot_from_row(row, entity_type) if row else None

    async def add(self, snapshot: StatSnapshot) -> None:
        """Insert a snapshot. Upstream rows are immutable, so duplicates fail."""
        async with self._session_factory() as session:
            session.add(StatSnapshotRow(
                entity_type=snapshot.entity_type.value,
                entity_id=snapshot.entity_id,
                period_key=snapshot.period.key,
                period_kind=snapshot.period.kind.value,
                rank=snapshot.rank,
                rank_delta=snapshot.rank_delta,
                streak=snapshot.streak,
                metrics=json.dumps(snapshot.metrics),
            ))
            await session.commit()


class SqlLineupProvider:
    """Reads lineups from the ``lineups`` table."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or get_session_factory()

    async def get_lineup(self, team_id: int, period: Period) -> Optional[Lineup]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LineupRow).where(
                    LineupRow.team_id == team_id,
                    LineupRow.period_key == period.key,
                )
            )
            row = result.scalar_one_or_none()
        return _lineup_from_row(row) if row else None

    async def list_team_ids(self, league_id: int, period: Period) -> list[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LineupRow.team_id)
                .where(LineupRow.league_id == league_id, LineupRow.period_key == period.key)
                .order_by(LineupRow.team_id.asc())
            )
            return list(result.scalars().all())

    async def list_league_ids(self, period: Period) -> list[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LineupRow.league_id)
                .where(LineupRow.period_key == period.key)
                .distinct()
                .order_by(LineupRow.league_id.asc())
            )
            return list(result.scalars().all())

    async def add(self, lineup: Lineup, league_id: int) -> None:
        async with self._session_factory() as session:
            session.add(LineupRow(
                league_id=league_id,
                team_id=lineup.team_id,
                period_key=lineup.period.key,
                period_kind=lineup.period.kind.value,
                is_locked=lineup.is_locked,
                slots=json.dumps([s.model_dump(mode="json") for s in lineup.slots]),
            ))
            await session.commit()
