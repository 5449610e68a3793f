"""Scoring runs — from stats snapshots to persisted, broadcast team scores.

A run first builds a :class:`RunContext` (every snapshot for the period,
pool depths and scarcity multipliers). Nothing is scored until that
barrier completes, and the context is read-only afterwards. Teams are
then scored one at a time: their slot entities are scored (once per run,
shared between teams), the lineup is aggregated and the result is written
in a single transaction under a per-(team, period) lock.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from collections import Counter
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .core.aggregator import EntityKey, aggregate_team
from .core.bonuses import score_entity
from .core.errors import (
    InvalidSnapshotError,
    LineupNotLockedError,
    PersistenceWriteError,
    ScarcityComputationError,
    ScoringError,
)
from .core.models import (
    EntityScore,
    EntityType,
    EventKind,
    Period,
    RunFailure,
    RunReport,
    ScoringEvent,
    StatSnapshot,
    TeamScore,
)
from .core.normalizer import normalize
from .core.providers import BroadcastChannel, LineupProvider, ScoreSink, StatsProvider
from .core.scarcity import compute_multipliers

logger = logging.getLogger(__name__)


class RunCancelled(Exception):
    """The run's cancel event was set between two units of work."""


class RunContext(BaseModel):
    """Read-only state shared by every entity scored in one run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    period: Period
    snapshots: dict[EntityKey, StatSnapshot]
    pool_depths: dict[EntityType, int]
    multipliers: dict[EntityType, float]
    rejected: dict[EntityKey, str] = Field(default_factory=dict, description="Unreadable rows by key, with the reason")


class RunEmitter:
    """Numbers and publishes the events of one run. Never raises."""

    def __init__(self, run_id: str, period: Period, channel: Optional[BroadcastChannel]):
        self.run_id = run_id
        self.period = period
        self.channel = channel
        self.sequence = 0

    async def emit(self, kind: EventKind, payload: dict) -> None:
        if self.channel is None:
            return
        self.sequence += 1
        event = ScoringEvent(
            kind=kind,
            run_id=self.run_id,
            sequence=self.sequence,
            period=self.period,
            payload=payload,
        )
        try:
            await self.channel.publish(event)
        except Exception as exc:
            logger.warning("Dropped %s event #%d: %s", kind.value, self.sequence, exc)


class _RunState:
    """Mutable per-run bookkeeping: entity scores are computed once and shared."""

    def __init__(self, context: RunContext, emitter: RunEmitter, cancel: Optional[asyncio.Event]):
        self.context = context
        self.emitter = emitter
        self.cancel = cancel
        self.scores: dict[EntityKey, EntityScore] = {}
        self.failures: dict[EntityKey, InvalidSnapshotError] = {
            key: InvalidSnapshotError(key[0], key[1], reason) for key, reason in context.rejected.items()
        }

    def check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise RunCancelled(self.context.run_id)


def _failure(exc: ScoringError) -> RunFailure:
    return RunFailure(
        subject=exc.subject,
        error=type(exc).__name__,
        reason=getattr(exc, "reason", str(exc)),
    )


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class ScoringPipeline:
    """Entry points for entity, team and league scoring."""

    def __init__(
        self,
        stats: StatsProvider,
        lineups: LineupProvider,
        store: ScoreSink,
        channel: Optional[BroadcastChannel] = None,
    ):
        self.stats = stats
        self.lineups = lineups
        self.store = store
        self.channel = channel
        # entries vanish once no run holds or awaits the lock
        self._team_locks: weakref.WeakValueDictionary[tuple[int, str], asyncio.Lock] = weakref.WeakValueDictionary()

    def _team_lock(self, team_id: int, period: Period) -> asyncio.Lock:
        key = (team_id, period.key)
        lock = self._team_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._team_locks[key] = lock
        return lock

    async def build_context(self, period: Period, run_id: Optional[str] = None) -> RunContext:
        """Bulk-load the period's snapshots and fix the scarcity multipliers.

        Raises:
            ScarcityComputationError: some entity type has an empty pool.
        """
        rejected: dict[EntityKey, str] = {}

        def reject(exc: InvalidSnapshotError) -> None:
            rejected[(exc.entity_type, exc.entity_id)] = exc.reason

        snapshots = await self.stats.get_snapshots(period, on_invalid=reject)
        by_key = {s.key: s for s in snapshots}
        # unreadable rows still occupy the pool
        counts = Counter([s.entity_type for s in snapshots] + [t for t, _ in rejected])
        depths = {t: counts.get(t, 0) for t in EntityType}
        multipliers = compute_multipliers(depths)
        return RunContext(
            run_id=run_id or _new_run_id(),
            period=period,
            snapshots=by_key,
            rejected=rejected,
            pool_depths=depths,
            multipliers=multipliers,
        )

    def _score_snapshot(self, context: RunContext, key: EntityKey) -> EntityScore:
        entity_type, entity_id = key
        if key in context.rejected:
            raise InvalidSnapshotError(entity_type, entity_id, context.rejected[key])
        snapshot = context.snapshots.get(key)
        if snapshot is None:
            raise InvalidSnapshotError(entity_type, entity_id, f"no stats snapshot for {context.period}")
        return score_entity(normalize(snapshot), context.multipliers[entity_type])

    async def _score_entities(self, state: _RunState, keys: list[EntityKey]) -> None:
        for key in keys:
            if key in state.scores or key in state.failures:
                continue
            state.check_cancelled()
            try:
                score = self._score_snapshot(state.context, key)
            except InvalidSnapshotError as exc:
                logger.warning("Skipping %s: %s", exc.subject, exc.reason)
                state.failures[key] = exc
                continue
            state.scores[key] = score
            await state.emitter.emit(EventKind.ENTITY_SCORED, score.model_dump(mode="json"))

    async def _score_team(self, state: _RunState, team_id: int) -> TeamScore:
        period = state.context.period
        lineup = await self.lineups.get_lineup(team_id, period)
        if lineup is None or not lineup.is_locked:
            raise LineupNotLockedError(team_id, period)

        lock = self._team_lock(team_id, period)
        async with lock:
            keys = lineup.entity_keys()
            await self._score_entities(state, keys)
            scores = {k: state.scores[k] for k in keys if k in state.scores}
            failures = {k: state.failures[k].reason for k in keys if k in state.failures}
            team_score = aggregate_team(lineup, scores, failures)
            await self.store.save_team_result(team_score, list(scores.values()))

        logger.info("Team %d scored %.1f for %s", team_id, team_score.total_points, period)
        await state.emitter.emit(EventKind.TEAM_SCORED, team_score.model_dump(mode="json"))
        return team_score

    # ─── Command surface ──────────────────────────────────────────────────

    async def calculate_entity_score(
        self, entity_id: int, entity_type: EntityType, period: Period,
    ) -> EntityScore:
        """Score and persist one entity.

        Raises:
            InvalidSnapshotError: no usable snapshot for the entity.
            ScarcityComputationError: the period's pools cannot be sized.
            PersistenceWriteError: the upsert kept failing.
        """
        context = await self.build_context(period)
        score = self._score_snapshot(context, (entity_type, entity_id))
        await self.store.save_entity_score(score)
        emitter = RunEmitter(context.run_id, period, self.channel)
        await emitter.emit(EventKind.ENTITY_SCORED, score.model_dump(mode="json"))
        return score

    async def calculate_team_score(
        self,
        team_id: int,
        period: Period,
        cancel: Optional[asyncio.Event] = None,
    ) -> TeamScore:
        """Score one team against its locked lineup and persist the result.

        Raises:
            LineupNotLockedError: the lineup is missing or unlocked; nothing is written.
            ScarcityComputationError: the period's pools cannot be sized.
            PersistenceWriteError: the upsert kept failing.
            RunCancelled: ``cancel`` was set before the team finished.
        """
        lineup = await self.lineups.get_lineup(team_id, period)
        if lineup is None or not lineup.is_locked:
            raise LineupNotLockedError(team_id, period)

        context = await self.build_context(period)
        state = _RunState(context, RunEmitter(context.run_id, period, self.channel), cancel)
        return await self._score_team(state, team_id)

    async def calculate_league_period(
        self,
        league_id: int,
        period: Period,
        cancel: Optional[asyncio.Event] = None,
    ) -> RunReport:
        """Score every team in a league for a period.

        Never raises for per-team or per-entity problems: they are collected
        into the returned report. A cancelled run reports ``complete=False``
        and publishes no ``run_complete`` event.
        """
        run_id = _new_run_id()
        report = RunReport(run_id=run_id, period=period, league_id=league_id)
        logger.info("Run %s: scoring league %d for %s", run_id, league_id, period)

        try:
            context = await self.build_context(period, run_id)
        except ScarcityComputationError as exc:
            logger.error("Run %s aborted: %s", run_id, exc)
            report.failed.append(_failure(exc))
            report.finished_at = datetime.utcnow()
            return report

        state = _RunState(context, RunEmitter(run_id, period, self.channel), cancel)
        team_ids = await self.lineups.list_team_ids(league_id, period)
        cancelled = False

        for team_id in team_ids:
            try:
                state.check_cancelled()
                team_score = await self._score_team(state, team_id)
            except RunCancelled:
                cancelled = True
                break
            except LineupNotLockedError as exc:
                logger.warning("Run %s: team %d skipped, %s", run_id, team_id, exc.reason)
                report.failed.append(_failure(exc))
                continue
            except PersistenceWriteError as exc:
                report.failed.append(_failure(exc))
                report.unsaved.append(exc.subject)
                continue
            report.succeeded.append(f"team:{team_id}")
            report.team_scores.append(team_score)

        report.skipped_entities = [_failure(exc) for exc in state.failures.values()]
        report.complete = not cancelled
        report.finished_at = datetime.utcnow()

        if cancelled:
            logger.warning("Run %s cancelled: %s", run_id, report.summary)
        else:
            logger.info("Run %s finished: %s", run_id, report.summary)
            await state.emitter.emit(EventKind.RUN_COMPLETE, {
                "league_id": league_id,
                "summary": report.summary,
                "succeeded": report.succeeded,
                "failed": [f.model_dump() for f in report.failed],
                "unsaved": report.unsaved,
            })
        return report
