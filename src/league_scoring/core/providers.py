"""Collaborator contracts the scoring core depends on.

Stats, lineups, persistence and broadcast are owned elsewhere; the core
only sees these protocols.
"""

from __future__ import annotations

from typing import Callable, Optional, Protocol

from .errors import InvalidSnapshotError
from .models import EntityScore, EntityType, Lineup, Period, ScoringEvent, StatSnapshot, TeamScore


class StatsProvider(Protocol):
    """At most one snapshot per (entity_type, entity_id, period).

    Rows that cannot be read as a snapshot are passed to ``on_invalid`` and
    left out of the result; ``get_snapshot`` raises for them instead.
    """

    async def get_snapshots(
        self,
        period: Period,
        entity_type: Optional[EntityType] = None,
        on_invalid: Optional[Callable[[InvalidSnapshotError], None]] = None,
    ) -> list[StatSnapshot]: ...

    async def get_snapshot(
        self, entity_type: EntityType, entity_id: int, period: Period,
    ) -> Optional[StatSnapshot]: ...


class LineupProvider(Protocol):
    async def get_lineup(self, team_id: int, period: Period) -> Optional[Lineup]: ...

    async def list_team_ids(self, league_id: int, period: Period) -> list[int]: ...

    async def list_league_ids(self, period: Period) -> list[int]: ...


class ScoreSink(Protocol):
    """Idempotent upserts keyed by (team, period) and (entity, type, period)."""

    async def save_entity_score(self, score: EntityScore) -> None: ...

    async def save_team_result(self, team_score: TeamScore, entity_scores: list[EntityScore]) -> None: ...


class BroadcastChannel(Protocol):
    """Fire-and-forget. Implementations must not raise."""

    async def publish(self, event: ScoringEvent) -> None: ...
