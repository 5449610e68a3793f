"""Weekly scoring scheduler.

Sleeps until the next Monday 00:00 in the league timezone, then scores the
ISO week that just ended for every league with lineups. Uses asyncio tasks
— no external scheduler dependency.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

from .core.models import Period, PeriodKind, RunReport
from .pipeline import ScoringPipeline

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/Berlin"
DEFAULT_RUN_BUDGET_SECONDS = 900


def next_week_boundary(now: datetime) -> datetime:
    """The next Monday 00:00 strictly after ``now``, in ``now``'s timezone."""
    days_ahead = 7 - now.weekday()
    monday = (now + timedelta(days=days_ahead)).date()
    return datetime.combine(monday, time.min, tzinfo=now.tzinfo)


def period_ending_at(boundary: datetime) -> Period:
    """The ISO week that closes at ``boundary``."""
    return Period.containing((boundary - timedelta(days=1)).date(), PeriodKind.WEEKLY)


class ScoringScheduler:
    """Runs the weekly league scoring job."""

    def __init__(self, pipeline: ScoringPipeline):
        self.pipeline = pipeline
        self._task: asyncio.Task | None = None
        self._running = False
        self.timezone = ZoneInfo(os.environ.get("SCORING_TIMEZONE", DEFAULT_TIMEZONE))
        self.budget_seconds = float(os.environ.get(
            "SCORING_RUN_BUDGET_SECONDS",
            str(DEFAULT_RUN_BUDGET_SECONDS),
        ))

    async def start(self):
        """Start the background weekly loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Scoring scheduler started (timezone: %s)", self.timezone.key)

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scoring scheduler stopped")

    async def trigger(self, league_id: int, period: Period) -> RunReport:
        """Score one league now, under the run budget."""
        cancel = asyncio.Event()
        handle = asyncio.get_running_loop().call_later(self.budget_seconds, cancel.set)
        try:
            report = await self.pipeline.calculate_league_period(league_id, period, cancel=cancel)
        finally:
            handle.cancel()
        if not report.complete and cancel.is_set():
            logger.warning(
                "League %d run for %s stopped at the %.0fs budget: %s",
                league_id, period, self.budget_seconds, report.summary,
            )
        elif not report.complete:
            logger.warning("League %d run for %s did not complete: %s", league_id, period, report.summary)
        return report

    async def run_period(self, period: Period) -> list[RunReport]:
        """Score every league that has lineups for ``period``."""
        league_ids = await self.pipeline.lineups.list_league_ids(period)
        logger.info("Scoring %d league(s) for %s", len(league_ids), period)
        reports = []
        for league_id in league_ids:
            reports.append(await self.trigger(league_id, period))
        return reports

    async def _run_loop(self):
        while self._running:
            try:
                boundary = next_week_boundary(datetime.now(self.timezone))
                delay = (boundary - datetime.now(self.timezone)).total_seconds()
                logger.info("Next scoring run at %s", boundary.isoformat())
                await asyncio.sleep(max(delay, 0))
                if not self._running:
                    break
                await self.run_period(period_ending_at(boundary))
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Scheduled scoring run failed: %s", exc, exc_info=True)
                await asyncio.sleep(60)
