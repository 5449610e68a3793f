"""League Scoring MCP Server.

FastMCP server exposing entity, team and league scoring as tools.
Run: league-scoring-mcp
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations

from .broadcast import FanoutBroadcaster, LoggingBroadcaster, WebhookBroadcaster
from .core.aggregator import DIVERSITY_BONUS, MOMENTUM_BONUS, PERFECT_WEEK_BONUS
from .core.bonuses import RANK_TIERS, STREAK_TIERS
from .core.formulas import SCORING_RULES
from .core.models import EntityType, Period, SlotStatus
from .db import close_db, init_db
from .pipeline import ScoringPipeline
from .providers import SqlLineupProvider, SqlStatsProvider
from .scheduler import ScoringScheduler
from .store import ScoreStore

logger = logging.getLogger(__name__)

READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=False)
RECOMPUTE = ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=True, openWorldHint=False)

_pipeline: Optional[ScoringPipeline] = None
_scheduler: Optional[ScoringScheduler] = None


def _build_channel():
    channels = [LoggingBroadcaster()]
    webhook_url = os.environ.get("SCORING_WEBHOOK_URL", "")
    if webhook_url:
        channels.append(WebhookBroadcaster(webhook_url))
    return FanoutBroadcaster(channels)


def get_pipeline() -> ScoringPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = ScoringPipeline(
            stats=SqlStatsProvider(),
            lineups=SqlLineupProvider(),
            store=ScoreStore(),
            channel=_build_channel(),
        )
    return _pipeline


def _scheduler_enabled() -> bool:
    return os.environ.get("SCORING_SCHEDULER_ENABLED", "1").lower() not in ("0", "false", "no")


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Initialize the database and start the weekly scoring job."""
    global _pipeline, _scheduler
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    await init_db()
    if _scheduler_enabled():
        _scheduler = ScoringScheduler(get_pipeline())
        await _scheduler.start()
    try:
        yield
    finally:
        if _scheduler:
            await _scheduler.stop()
            _scheduler = None
        _pipeline = None
        await close_db()


mcp = FastMCP(
    "League Scoring",
    instructions="Fantasy scoring for the cannabis market. Score manufacturers, strains, products, pharmacies and brands, total team lineups, and read the league leaderboard.",
    lifespan=lifespan,
)


def _parse_period(period: str) -> Period:
    try:
        return Period.parse(period)
    except ValueError as exc:
        raise ValueError(f"{exc}. Use an ISO week like '2025-W07' or a date like '2025-02-14'.") from exc


def _parse_entity_type(entity_type: str) -> EntityType:
    try:
        return EntityType(entity_type)
    except ValueError as exc:
        options = ", ".join(t.value for t in EntityType)
        raise ValueError(f"Unknown entity type {entity_type!r}. Use one of: {options}") from exc


# ─── Scoring ────────────────────────────────────────────────────────────────


@mcp.tool(annotations=RECOMPUTE)
async def score_entity(entity_id: int, entity_type: str, period: str) -> dict:
    """Score one entity for a period and store the result.

    Args:
        entity_id: The entity's ID.
        entity_type: One of manufacturer, cannabis_strain, product, pharmacy, brand.
        period: ISO week ('2025-W07') or date ('2025-02-14').
    """
    score = await get_pipeline().calculate_entity_score(
        entity_id, _parse_entity_type(entity_type), _parse_period(period),
    )
    return {
        "score": score.model_dump(mode="json"),
        "summary": f"{score.entity_type.value} {score.entity_id}: {score.total_points:.1f} pts "
        f"({score.base_points:.1f} base, {score.bonus_points:+.1f} bonus, {score.penalty_points:.1f} penalty)",
    }


@mcp.tool(annotations=RECOMPUTE)
async def score_team(team_id: int, period: str) -> dict:
    """Score a team's locked lineup for a period and store the result.

    Args:
        team_id: The team's ID.
        period: ISO week ('2025-W07') or date ('2025-02-14').
    """
    team_score = await get_pipeline().calculate_team_score(team_id, _parse_period(period))
    empty = [s.position.value for s in team_score.slots if s.status != SlotStatus.SCORED]
    summary = f"Team {team_id}: {team_score.total_points:.1f} pts ({team_score.bonus_points:.1f} from team bonuses)"
    if empty:
        summary += f". Not scoring: {', '.join(empty)}"
    return {"team_score": team_score.model_dump(mode="json"), "summary": summary}


@mcp.tool(annotations=RECOMPUTE)
async def score_league_period(league_id: int, period: str) -> dict:
    """Score every team in a league for a period. Returns a partial-success report.

    Args:
        league_id: The league's ID.
        period: ISO week ('2025-W07') or date ('2025-02-14').
    """
    parsed = _parse_period(period)
    if _scheduler is not None:
        report = await _scheduler.trigger(league_id, parsed)
    else:
        report = await get_pipeline().calculate_league_period(league_id, parsed)
    return {
        "run_id": report.run_id,
        "complete": report.complete,
        "succeeded": report.succeeded,
        "failed": [f.model_dump() for f in report.failed],
        "skipped_entities": [f.model_dump() for f in report.skipped_entities],
        "unsaved": report.unsaved,
        "summary": report.summary,
    }


# ─── Reads ──────────────────────────────────────────────────────────────────


@mcp.tool(annotations=READ_ONLY)
async def get_team_score(team_id: int, period: str) -> dict:
    """The stored score and full breakdown for a team in a period.

    Args:
        team_id: The team's ID.
        period: ISO week ('2025-W07') or date ('2025-02-14').
    """
    team_score = await get_pipeline().store.get_team_score(team_id, _parse_period(period))
    if team_score is None:
        return {"team_score": None, "summary": f"No score stored for team {team_id} in {period}."}
    return {
        "team_score": team_score.model_dump(mode="json"),
        "summary": f"Team {team_id}: {team_score.total_points:.1f} pts in {period}",
    }


@mcp.tool(annotations=READ_ONLY)
async def get_leaderboard(period: str, league_id: int = 0, limit: int = 25) -> dict:
    """Team standings for a period, highest total first.

    Args:
        period: ISO week ('2025-W07') or date ('2025-02-14').
        league_id: Restrict to one league. 0 means every team.
        limit: Maximum number of rows. Default 25.
    """
    pipeline = get_pipeline()
    parsed = _parse_period(period)
    team_ids = await pipeline.lineups.list_team_ids(league_id, parsed) if league_id else None
    scores = await pipeline.store.list_team_scores(parsed, team_ids=team_ids, limit=limit)
    standings = [
        {
            "rank": i + 1,
            "team_id": s.team_id,
            "total_points": s.total_points,
            "slot_points": s.slot_points,
            "bonus_points": s.bonus_points,
            "team_bonuses": [b.type for b in s.team_bonuses],
        }
        for i, s in enumerate(scores)
    ]
    summary = (
        f"Leader: team {standings[0]['team_id']} with {standings[0]['total_points']:.1f} pts"
        if standings else f"No team scores stored for {period} yet."
    )
    return {"period": parsed.key, "standings": standings, "summary": summary}


@mcp.tool(annotations=READ_ONLY)
def scoring_rules() -> dict:
    """How points are earned — per entity type, plus rank, streak and team bonuses."""
    return {
        "entity_rules": SCORING_RULES,
        "rank_bonus": {f"#{best}-{worst}" if best != worst else f"#{best}": points for best, worst, points in RANK_TIERS},
        "streak_tiers": {label: f"{minimum}+ periods" for minimum, label in STREAK_TIERS},
        "team_bonuses": {
            "Perfect Week": PERFECT_WEEK_BONUS,
            "Position Diversity": DIVERSITY_BONUS,
            "Momentum Master": MOMENTUM_BONUS,
        },
        "summary": "Points are base components plus bonuses and penalties, scaled by a scarcity multiplier per entity type.",
    }


def main():
    """Entry point for the CLI command."""
    mcp.run()


if __name__ == "__main__":
    main()
