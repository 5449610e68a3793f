"""Typed failures raised by the scoring core.

Entity-level errors are recovered by the run (skip and report); run-level
errors abort the work that depends on them.
"""

from __future__ import annotations

from typing import Optional

from .models import EntityType, Period


class ScoringError(Exception):
    """Base class for every scoring failure."""

    @property
    def subject(self) -> str:
        return "run"


class InvalidSnapshotError(ScoringError):
    """A stats row is missing, null or malformed for its entity type."""

    def __init__(self, entity_type: EntityType, entity_id: int, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"{entity_type.value}:{entity_id}: {reason}")

    @property
    def subject(self) -> str:
        return f"{self.entity_type.value}:{self.entity_id}"


class LineupNotLockedError(ScoringError):
    """Aggregation attempted against a lineup that can still change."""

    def __init__(self, team_id: int, period: Period):
        self.team_id = team_id
        self.period = period
        self.reason = "lineup not locked"
        super().__init__(f"Lineup for team {team_id} in {period} is not locked")

    @property
    def subject(self) -> str:
        return f"team:{self.team_id}"


class ScarcityComputationError(ScoringError):
    """Pool depth could not be computed; fatal for the whole run."""

    def __init__(self, entity_type: EntityType, reason: str):
        self.entity_type = entity_type
        self.reason = reason
        super().__init__(f"Scarcity for {entity_type.value}: {reason}")


class PersistenceWriteError(ScoringError):
    """An upsert still failed after the bounded retries."""

    def __init__(self, subject: str, attempts: int, cause: Optional[BaseException] = None):
        self._subject = subject
        self.attempts = attempts
        self.cause = cause
        self.reason = f"write failed after {attempts} attempt(s): {cause}"
        super().__init__(f"{subject}: {self.reason}")

    @property
    def subject(self) -> str:
        return self._subject
