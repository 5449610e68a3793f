"""Tests for scoring runs: barriers, partial success, cancellation and events."""

import asyncio
import json

import pytest

from league_scoring.broadcast import InMemoryBroadcaster
from league_scoring.core.errors import (
    InvalidSnapshotError,
    LineupNotLockedError,
    PersistenceWriteError,
    ScarcityComputationError,
)
from league_scoring.core.models import EntityType, EventKind, SlotPosition, SlotStatus
from league_scoring.pipeline import ScoringPipeline
from league_scoring.providers import (
    InMemoryLineupProvider,
    InMemoryStatsProvider,
    SqlLineupProvider,
    SqlStatsProvider,
)
from league_scoring.sqlmodels import StatSnapshotRow
from league_scoring.store import ScoreStore

from factories import DEFAULT_METRICS, WEEK, RecordingSink, full_pool, lineup, snapshot


def make_pipeline(snapshots=None, lineups=(), sink=None, channel=None):
    stats = InMemoryStatsProvider(full_pool() if snapshots is None else snapshots)
    rosters = InMemoryLineupProvider()
    for item in lineups:
        rosters.add(item)
    return ScoringPipeline(stats, rosters, sink or RecordingSink(), channel or InMemoryBroadcaster())


class FailingSink(RecordingSink):
    async def save_team_result(self, team_score, entity_scores):
        raise PersistenceWriteError(f"team:{team_score.team_id}", 3, RuntimeError("disk full"))


class CancelAfterFirstTeam(InMemoryBroadcaster):
    def __init__(self, cancel):
        super().__init__()
        self.cancel = cancel

    async def publish(self, event):
        await super().publish(event)
        if event.kind == EventKind.TEAM_SCORED:
            self.cancel.set()


class ExplodingChannel:
    async def publish(self, event):
        raise RuntimeError("socket closed")


class TestRunContext:

    def test_pool_depths_and_multipliers(self):
        context = asyncio.run(make_pipeline().build_context(WEEK))
        assert context.pool_depths == {t: 3 for t in EntityType}
        assert context.multipliers == {t: 1.35 for t in EntityType}
        assert len(context.snapshots) == 15

    def test_empty_pool_fails_before_scoring(self):
        snapshots = [s for s in full_pool() if s.entity_type != EntityType.BRAND]
        with pytest.raises(ScarcityComputationError):
            asyncio.run(make_pipeline(snapshots).build_context(WEEK))


class TestEntityScore:

    def test_scores_persists_and_emits(self):
        sink, channel = RecordingSink(), InMemoryBroadcaster()
        pipeline = make_pipeline(sink=sink, channel=channel)
        score = asyncio.run(pipeline.calculate_entity_score(201, EntityType.STRAIN, WEEK))
        assert score.scarcity_multiplier == 1.35
        assert score.total_points == 64.8
        assert (EntityType.STRAIN, 201, WEEK.key) in sink.entity_scores
        assert channel.kinds() == [EventKind.ENTITY_SCORED]

    def test_missing_snapshot(self):
        with pytest.raises(InvalidSnapshotError) as excinfo:
            asyncio.run(make_pipeline().calculate_entity_score(999, EntityType.BRAND, WEEK))
        assert excinfo.value.subject == "brand:999"


class TestTeamScore:

    def test_unlocked_lineup_writes_nothing(self):
        sink, channel = RecordingSink(), InMemoryBroadcaster()
        pipeline = make_pipeline(lineups=[lineup(1, locked=False)], sink=sink, channel=channel)
        with pytest.raises(LineupNotLockedError):
            asyncio.run(pipeline.calculate_team_score(1, WEEK))
        assert sink.writes == 0
        assert channel.events == []

    def test_missing_lineup_is_refused(self):
        with pytest.raises(LineupNotLockedError):
            asyncio.run(make_pipeline().calculate_team_score(42, WEEK))

    def test_team_events_follow_entity_events(self):
        channel = InMemoryBroadcaster()
        pipeline = make_pipeline(lineups=[lineup(1)], channel=channel)
        team_score = asyncio.run(pipeline.calculate_team_score(1, WEEK))
        assert channel.kinds() == [EventKind.ENTITY_SCORED] * 10 + [EventKind.TEAM_SCORED]
        assert [e.sequence for e in channel.events] == list(range(1, 12))
        assert len({e.run_id for e in channel.events}) == 1
        assert team_score.total_points == round(team_score.slot_points + team_score.bonus_points, 1)

    def test_invalid_snapshot_leaves_slot_unscored(self):
        snapshots = [s for s in full_pool() if s.key != (EntityType.PRODUCT, 302)]
        snapshots.append(snapshot(EntityType.PRODUCT, 302, order_count=None))
        pipeline = make_pipeline(snapshots, lineups=[lineup(1)])
        team_score = asyncio.run(pipeline.calculate_team_score(1, WEEK))
        slot = next(s for s in team_score.slots if s.position == SlotPosition.PRD2)
        assert slot.status == SlotStatus.UNSCORED
        assert "order_count" in slot.note

    def test_concurrent_runs_for_same_team_do_not_duplicate(self, open_db):
        async def scenario():
            async with open_db() as session_factory:
                stats, rosters = SqlStatsProvider(session_factory), SqlLineupProvider(session_factory)
                for snap in full_pool():
                    await stats.add(snap)
                await rosters.add(lineup(1), league_id=1)
                store = ScoreStore(session_factory)
                pipeline = ScoringPipeline(stats, rosters, store)
                first, second = await asyncio.gather(
                    pipeline.calculate_team_score(1, WEEK),
                    pipeline.calculate_team_score(1, WEEK),
                )
                locks_left = len(pipeline._team_locks)
                return first, second, await store.count_team_records(1, WEEK), await store.get_team_score(1, WEEK), locks_left

        first, second, count, stored, locks_left = asyncio.run(scenario())
        assert count == 1
        assert locks_left == 0
        assert first.total_points == second.total_points == stored.total_points
        assert [s.points for s in stored.slots] == [s.points for s in first.slots]


class TestLeagueRun:

    def test_partial_success_report(self):
        channel = InMemoryBroadcaster()
        pipeline = make_pipeline(
            lineups=[lineup(1), lineup(2), lineup(3, locked=False)], channel=channel,
        )
        report = asyncio.run(pipeline.calculate_league_period(1, WEEK))
        assert report.complete
        assert report.succeeded == ["team:1", "team:2"]
        assert [(f.subject, f.error, f.reason) for f in report.failed] == [
            ("team:3", "LineupNotLockedError", "lineup not locked"),
        ]
        assert report.summary == "2/3 teams scored, 1 failed (team:3: lineup not locked)"

        kinds = channel.kinds()
        assert kinds[-1] == EventKind.RUN_COMPLETE
        assert kinds.count(EventKind.TEAM_SCORED) == 2
        # shared entities are scored once per run
        assert kinds.count(EventKind.ENTITY_SCORED) == 10
        sequences = [e.sequence for e in channel.events]
        assert sequences == sorted(sequences) == list(range(1, len(sequences) + 1))

    def test_skipped_entities_reported(self):
        snapshots = [s for s in full_pool() if s.key != (EntityType.BRAND, 501)]
        snapshots.append(snapshot(EntityType.BRAND, 501, views=-1))
        report = asyncio.run(make_pipeline(snapshots, lineups=[lineup(1)]).calculate_league_period(1, WEEK))
        assert report.succeeded == ["team:1"]
        assert [f.subject for f in report.skipped_entities] == ["brand:501"]
        assert report.skipped_entities[0].error == "InvalidSnapshotError"

    def test_text_metric_skips_entity_not_run(self):
        channel = InMemoryBroadcaster()
        snapshots = [s for s in full_pool() if s.key != (EntityType.PRODUCT, 302)]
        snapshots.append(snapshot(EntityType.PRODUCT, 302, order_count="30"))
        pipeline = make_pipeline(snapshots, lineups=[lineup(1)], channel=channel)
        report = asyncio.run(pipeline.calculate_league_period(1, WEEK))
        assert report.complete
        assert report.succeeded == ["team:1"]
        assert [(f.subject, f.reason) for f in report.skipped_entities] == [
            ("product:302", "order_count is not numeric"),
        ]
        assert channel.kinds()[-1] == EventKind.RUN_COMPLETE

    def test_scarcity_failure_aborts_run(self):
        sink, channel = RecordingSink(), InMemoryBroadcaster()
        snapshots = [s for s in full_pool() if s.entity_type != EntityType.PHARMACY]
        pipeline = make_pipeline(snapshots, lineups=[lineup(1)], sink=sink, channel=channel)
        report = asyncio.run(pipeline.calculate_league_period(1, WEEK))
        assert not report.complete
        assert report.failed[0].error == "ScarcityComputationError"
        assert sink.writes == 0
        assert channel.events == []

    def test_unsaved_team_reported(self):
        channel = InMemoryBroadcaster()
        pipeline = make_pipeline(lineups=[lineup(1), lineup(2)], sink=FailingSink(), channel=channel)
        report = asyncio.run(pipeline.calculate_league_period(1, WEEK))
        assert report.unsaved == ["team:1", "team:2"]
        assert report.succeeded == []
        assert EventKind.TEAM_SCORED not in channel.kinds()

    def test_cancelled_before_start(self):
        async def scenario():
            cancel = asyncio.Event()
            cancel.set()
            channel = InMemoryBroadcaster()
            pipeline = make_pipeline(lineups=[lineup(1), lineup(2)], channel=channel)
            return await pipeline.calculate_league_period(1, WEEK, cancel=cancel), channel

        report, channel = asyncio.run(scenario())
        assert not report.complete
        assert report.succeeded == []
        assert EventKind.RUN_COMPLETE not in channel.kinds()

    def test_cancelled_between_teams_keeps_finished_work(self):
        async def scenario():
            cancel = asyncio.Event()
            channel = CancelAfterFirstTeam(cancel)
            sink = RecordingSink()
            pipeline = make_pipeline(lineups=[lineup(1), lineup(2), lineup(3)], sink=sink, channel=channel)
            return await pipeline.calculate_league_period(1, WEEK, cancel=cancel), channel, sink

        report, channel, sink = asyncio.run(scenario())
        assert not report.complete
        assert report.succeeded == ["team:1"]
        assert list(sink.team_scores) == [(1, WEEK.key)]
        assert "incomplete" in report.summary
        assert EventKind.RUN_COMPLETE not in channel.kinds()

    def test_broadcast_failures_are_dropped(self):
        pipeline = make_pipeline(lineups=[lineup(1)], channel=ExplodingChannel())
        report = asyncio.run(pipeline.calculate_league_period(1, WEEK))
        assert report.complete
        assert report.succeeded == ["team:1"]

    def test_rerun_is_idempotent(self, open_store):
        async def scenario():
            async with open_store() as store:
                stats = InMemoryStatsProvider(full_pool())
                rosters = InMemoryLineupProvider()
                rosters.add(lineup(1))
                pipeline = ScoringPipeline(stats, rosters, store)
                await pipeline.calculate_league_period(1, WEEK)
                first = await store.get_team_score(1, WEEK)
                await pipeline.calculate_league_period(1, WEEK)
                second = await store.get_team_score(1, WEEK)
                return first, second, await store.count_team_records(1, WEEK)

        first, second, count = asyncio.run(scenario())
        assert count == 1
        assert first.model_dump(exclude={"computed_at"}) == second.model_dump(exclude={"computed_at"})


class TestStoredSnapshots:

    def test_bad_rows_are_skipped_not_fatal(self, open_db):
        async def scenario():
            async with open_db() as session_factory:
                stats, rosters = SqlStatsProvider(session_factory), SqlLineupProvider(session_factory)
                for snap in full_pool():
                    await stats.add(snap)
                await rosters.add(lineup(1), league_id=1)
                async with session_factory() as session:
                    session.add_all([
                        StatSnapshotRow(
                            entity_type="brand", entity_id=598, period_key=WEEK.key, period_kind="weekly",
                            rank=0, metrics=json.dumps(DEFAULT_METRICS[EntityType.BRAND]),
                        ),
                        StatSnapshotRow(
                            entity_type="brand", entity_id=599, period_key=WEEK.key, period_kind="weekly",
                            metrics=json.dumps({"views": [1, 2]}),
                        ),
                    ])
                    await session.commit()

                unranked = await stats.get_snapshot(EntityType.BRAND, 598, WEEK)
                with pytest.raises(InvalidSnapshotError):
                    await stats.get_snapshot(EntityType.BRAND, 599, WEEK)

                channel = InMemoryBroadcaster()
                pipeline = ScoringPipeline(stats, rosters, ScoreStore(session_factory), channel)
                context = await pipeline.build_context(WEEK)
                report = await pipeline.calculate_league_period(1, WEEK)
                return unranked, context, report, channel

        unranked, context, report, channel = asyncio.run(scenario())
        assert unranked.rank is None
        assert context.pool_depths[EntityType.BRAND] == 5
        assert report.complete
        assert report.succeeded == ["team:1"]
        assert [f.subject for f in report.skipped_entities] == ["brand:599"]
        assert report.skipped_entities[0].error == "InvalidSnapshotError"
        assert report.skipped_entities[0].reason.startswith("metrics.views")
        assert channel.kinds()[-1] == EventKind.RUN_COMPLETE
