"""Score store — idempotent upserts and reads of entity and team scores.

Writes are keyed by (team, period) and (entity type, entity, period) and
overwrite whatever was there. A team's entity scores and its team score
are written in one transaction. Transient database errors are retried a
bounded number of times with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .core.errors import PersistenceWriteError
from .core.models import EntityScore, EntityType, Period, SlotPosition, TeamScore
from .db import get_session_factory
from .sqlmodels import EntityScoreRecord, TeamScoreRecord

logger = logging.getLogger(__name__)

DEFAULT_WRITE_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 0.25
MAX_BACKOFF_SECONDS = 5.0

ENTITY_KEY = ["entity_type", "entity_id", "period_key"]
TEAM_KEY = ["team_id", "period_key"]


def _entity_row(score: EntityScore) -> dict[str, Any]:
    return {
        "entity_type": score.entity_type.value,
        "entity_id": score.entity_id,
        "period_key": score.period.key,
        "base_points": score.base_points,
        "bonus_points": score.bonus_points,
        "penalty_points": score.penalty_points,
        "scarcity_multiplier": score.scarcity_multiplier,
        "total_points": score.total_points,
        "breakdown": score.model_dump_json(),
        "computed_at": datetime.utcnow(),
    }


def _team_row(team_score: TeamScore) -> dict[str, Any]:
    row: dict[str, Any] = {
        "team_id": team_score.team_id,
        "period_key": team_score.period.key,
        "period_kind": team_score.period.kind.value,
        "slot_points": team_score.slot_points,
        "bonus_points": team_score.bonus_points,
        "total_points": team_score.total_points,
        # computed_at lives in its own column so reruns leave the breakdown unchanged
        "breakdown": team_score.model_dump_json(exclude={"computed_at"}),
        "computed_at": team_score.computed_at,
    }
    positions = team_score.position_points()
    for position in SlotPosition:
        row[f"{position.value}_points"] = positions.get(position.value, 0.0)
    return row


def _upsert(model, row: dict[str, Any], key: list[str]):
    stmt = sqlite_insert(model).values(**row)
    return stmt.on_conflict_do_update(
        index_elements=key,
        set_={name: stmt.excluded[name] for name in row if name not in key},
    )


class ScoreStore:
    """SQLite-backed persistence sink for computed scores."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory
        self.attempts = max(1, int(os.environ.get("SCORE_WRITE_ATTEMPTS", str(DEFAULT_WRITE_ATTEMPTS))))
        self.backoff_seconds = float(os.environ.get(
            "SCORE_WRITE_BACKOFF_SECONDS",
            str(DEFAULT_BACKOFF_SECONDS),
        ))

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def _with_retry(self, subject: str, write: Callable[[], Awaitable[None]]) -> None:
        last_error: Optional[BaseException] = None
        for attempt in range(self.attempts):
            try:
                await write()
                return
            except SQLAlchemyError as exc:
                last_error = exc
                if attempt + 1 >= self.attempts:
                    break
                wait = min(self.backoff_seconds * (2 ** attempt), MAX_BACKOFF_SECONDS)
                logger.warning(
                    "Write for %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    subject, attempt + 1, self.attempts, wait, exc,
                )
                await asyncio.sleep(wait)

        logger.error("Write for %s failed after %d attempts: %s", subject, self.attempts, last_error)
        raise PersistenceWriteError(subject, self.attempts, last_error)

    async def _write_entities(self, scores: list[EntityScore]) -> None:
        async with self.session_factory() as session:
            for score in scores:
                await session.execute(_upsert(EntityScoreRecord, _entity_row(score), ENTITY_KEY))
            await session.commit()

    async def _write_team(self, team_score: TeamScore, entity_scores: list[EntityScore]) -> None:
        async with self.session_factory() as session:
            for score in entity_scores:
                await session.execute(_upsert(EntityScoreRecord, _entity_row(score), ENTITY_KEY))
            await session.execute(_upsert(TeamScoreRecord, _team_row(team_score), TEAM_KEY))
            await session.commit()

    async def save_entity_score(self, score: EntityScore) -> None:
        subject = f"{score.entity_type.value}:{score.entity_id}"
        await self._with_retry(subject, lambda: self._write_entities([score]))

    async def save_team_result(self, team_score: TeamScore, entity_scores: list[EntityScore]) -> None:
        """Upsert a team score and its slot entities' scores atomically."""
        await self._with_retry(
            f"team:{team_score.team_id}",
            lambda: self._write_team(team_score, entity_scores),
        )

    async def save_team_score(self, team_score: TeamScore) -> None:
        """Upsert only the team record, leaving entity scores untouched."""
        await self.save_team_result(team_score, [])

    # ─── Reads ────────────────────────────────────────────────────────────

    async def get_team_score(self, team_id: int, period: Period) -> Optional[TeamScore]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TeamScoreRecord).where(
                    TeamScoreRecord.team_id == team_id,
                    TeamScoreRecord.period_key == period.key,
                )
            )
            row = result.scalar_one_or_none()
        return _team_from_row(row) if row else None

    async def get_entity_score(
        self, entity_type: EntityType, entity_id: int, period: Period,
    ) -> Optional[EntityScore]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(EntityScoreRecord).where(
                    EntityScoreRecord.entity_type == entity_type.value,
                    EntityScoreRecord.entity_id == entity_id,
                    EntityScoreRecord.period_key == period.key,
                )
            )
            row = result.scalar_one_or_none()
        return EntityScore.model_validate_json(row.breakdown) if row else None

    async def list_team_scores(
        self,
        period: Period,
        team_ids: Optional[list[int]] = None,
        limit: Optional[int] = None,
    ) -> list[TeamScore]:
        """Team scores for a period, highest total first."""
        query = (
            select(TeamScoreRecord)
            .where(TeamScoreRecord.period_key == period.key)
            .order_by(TeamScoreRecord.total_points.desc(), TeamScoreRecord.team_id.asc())
        )
        if team_ids is not None:
            query = query.where(TeamScoreRecord.team_id.in_(team_ids))
        if limit:
            query = query.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            rows = result.scalars().all()
        return [_team_from_row(r) for r in rows]

    async def count_team_records(self, team_id: int, period: Period) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TeamScoreRecord.id).where(
                    TeamScoreRecord.team_id == team_id,
                    TeamScoreRecord.period_key == period.key,
                )
            )
            return len(result.scalars().all())


def _team_from_row(row: TeamScoreRecord) -> TeamScore:
    team_score = TeamScore.model_validate_json(row.breakdown)
    return team_score.model_copy(update={"computed_at": row.computed_at})
