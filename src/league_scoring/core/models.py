"""Pydantic data models — the shared business objects.

The formula library, the team aggregator, the score store and the tool
surface all speak in these models. Nothing here touches a database.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_WEEK_KEY = re.compile(r"^(\d{4})-W(\d{2})$")
_DAY_KEY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class EntityType(str, Enum):
    """Asset classes that can occupy a lineup slot."""

    MANUFACTURER = "manufacturer"
    STRAIN = "cannabis_strain"
    PRODUCT = "product"
    PHARMACY = "pharmacy"
    BRAND = "brand"


class PeriodKind(str, Enum):
    """Scoring interval: daily challenge mode or weekly season mode."""

    DAILY = "daily"
    WEEKLY = "weekly"


class Period(BaseModel):
    """A scoring interval identified by a canonical key.

    Weekly periods use ISO week keys (``2025-W07``), daily periods use
    calendar dates (``2025-02-14``).
    """

    model_config = ConfigDict(frozen=True)

    kind: PeriodKind
    key: str

    @field_validator("key")
    @classmethod
    def _check_key(cls, value: str) -> str:
        if not (_WEEK_KEY.match(value) or _DAY_KEY.match(value)):
            raise ValueError(f"Unrecognised period key: {value!r}")
        return value

    @model_validator(mode="after")
    def _check_kind_matches_key(self) -> Period:
        expected = PeriodKind.WEEKLY if _WEEK_KEY.match(self.key) else PeriodKind.DAILY
        if self.kind != expected:
            raise ValueError(f"{self.kind.value} period cannot have key {self.key!r}")
        return self

    @classmethod
    def weekly(cls, year: int, week: int) -> Period:
        date.fromisocalendar(year, week, 1)
        return cls(kind=PeriodKind.WEEKLY, key=f"{year:04d}-W{week:02d}")

    @classmethod
    def daily(cls, day: date) -> Period:
        return cls(kind=PeriodKind.DAILY, key=day.isoformat())

    @classmethod
    def parse(cls, key: str) -> Period:
        """Build a period from its canonical key."""
        match = _WEEK_KEY.match(key)
        if match:
            return cls.weekly(int(match.group(1)), int(match.group(2)))
        if _DAY_KEY.match(key):
            return cls.daily(date.fromisoformat(key))
        raise ValueError(f"Unrecognised period key: {key!r}")

    @classmethod
    def containing(cls, day: date, kind: PeriodKind = PeriodKind.WEEKLY) -> Period:
        if kind == PeriodKind.DAILY:
            return cls.daily(day)
        iso = day.isocalendar()
        return cls.weekly(iso[0], iso[1])

    @property
    def start(self) -> date:
        match = _WEEK_KEY.match(self.key)
        if match:
            return date.fromisocalendar(int(match.group(1)), int(match.group(2)), 1)
        return date.fromisoformat(self.key)

    def previous(self) -> Period:
        if self.kind == PeriodKind.DAILY:
            return Period.daily(self.start - timedelta(days=1))
        return Period.containing(self.start - timedelta(days=7))

    def __str__(self) -> str:
        return self.key


class StatSnapshot(BaseModel):
    """One upstream stats row for an entity in a period. Immutable."""

    model_config = ConfigDict(frozen=True)

    entity_id: int
    entity_type: EntityType
    period: Period
    rank: Optional[int] = Field(None, ge=1, description="Current-period rank, 1 = best")
    rank_delta: Optional[int] = Field(
        None, description="Previous rank minus current rank; positive = climbed, None = no prior period",
    )
    streak: int = Field(0, ge=0, description="Consecutive periods of positive performance")
    metrics: dict[str, Union[float, str, None]] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[EntityType, int]:
        return (self.entity_type, self.entity_id)


class NormalizedMetrics(BaseModel):
    """Formula inputs derived from a snapshot. Never persisted."""

    entity_id: int
    entity_type: EntityType
    period: Period
    rank: Optional[int] = None
    rank_delta: Optional[int] = None
    streak: int = 0
    growth_percent: Optional[float] = None
    tier: Optional[str] = None
    tier_points: int = 0
    trend_multiplier: float = 1.0
    log_volume: float = 0.0
    values: dict[str, float] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)

    @property
    def has_prior_period(self) -> bool:
        return self.rank_delta is not None


class ScoringComponent(BaseModel):
    """A base-points line item."""

    category: str
    value: Any = None
    formula: str = ""
    points: float


class BonusPenalty(BaseModel):
    """A signed modifier applied after base components."""

    type: str
    condition: str
    points: float

    @property
    def is_penalty(self) -> bool:
        return self.points < 0


class EntityScore(BaseModel):
    """Points for one entity in one period with the full breakdown."""

    entity_id: int
    entity_type: EntityType
    period: Period
    components: list[ScoringComponent] = Field(default_factory=list)
    bonuses: list[BonusPenalty] = Field(default_factory=list)
    scarcity_multiplier: float = 1.0
    rank: Optional[int] = None
    rank_delta: Optional[int] = None
    streak: int = 0
    growth_percent: Optional[float] = None
    total_points: float = 0.0

    @property
    def base_points(self) -> float:
        return round(sum(c.points for c in self.components), 1)

    @property
    def bonus_points(self) -> float:
        return round(sum(b.points for b in self.bonuses if b.points > 0), 1)

    @property
    def penalty_points(self) -> float:
        return round(sum(b.points for b in self.bonuses if b.points < 0), 1)

    def recompute_total(self) -> EntityScore:
        self.total_points = round(self.base_points + sum(b.points for b in self.bonuses), 1)
        return self


class SlotPosition(str, Enum):
    """Lineup positions. FLEX takes any entity type."""

    MFG1 = "mfg1"
    MFG2 = "mfg2"
    CSTR1 = "cstr1"
    CSTR2 = "cstr2"
    PRD1 = "prd1"
    PRD2 = "prd2"
    PHM1 = "phm1"
    PHM2 = "phm2"
    BRD1 = "brd1"
    FLEX = "flex"

    @property
    def fixed_type(self) -> Optional[EntityType]:
        return POSITION_TYPES.get(self)


POSITION_TYPES: dict[SlotPosition, EntityType] = {
    SlotPosition.MFG1: EntityType.MANUFACTURER,
    SlotPosition.MFG2: EntityType.MANUFACTURER,
    SlotPosition.CSTR1: EntityType.STRAIN,
    SlotPosition.CSTR2: EntityType.STRAIN,
    SlotPosition.PRD1: EntityType.PRODUCT,
    SlotPosition.PRD2: EntityType.PRODUCT,
    SlotPosition.PHM1: EntityType.PHARMACY,
    SlotPosition.PHM2: EntityType.PHARMACY,
    SlotPosition.BRD1: EntityType.BRAND,
}


class LineupSlot(BaseModel):
    """One position of a team's lineup; entity fields are None when empty."""

    position: SlotPosition
    entity_id: Optional[int] = None
    entity_type: Optional[EntityType] = None

    @property
    def is_empty(self) -> bool:
        return self.entity_id is None or self.entity_type is None


class Lineup(BaseModel):
    """A team's lineup for one period, as owned by the roster collaborator."""

    team_id: int
    period: Period
    is_locked: bool = False
    slots: list[LineupSlot] = Field(default_factory=list)

    def slot_map(self) -> dict[SlotPosition, LineupSlot]:
        """Every position, with empty slots filled in for positions not listed."""
        listed = {s.position: s for s in self.slots}
        return {p: listed.get(p, LineupSlot(position=p)) for p in SlotPosition}

    def entity_keys(self) -> list[tuple[EntityType, int]]:
        return [
            (s.entity_type, s.entity_id)
            for s in self.slot_map().values()
            if not s.is_empty
        ]


class SlotStatus(str, Enum):
    SCORED = "scored"
    EMPTY = "empty"
    UNSCORED = "unscored"


class SlotScore(BaseModel):
    """A lineup position in the team breakdown."""

    position: SlotPosition
    status: SlotStatus
    entity_id: Optional[int] = None
    entity_type: Optional[EntityType] = None
    points: float = 0.0
    entity_score: Optional[EntityScore] = None
    note: str = ""


class TeamScore(BaseModel):
    """The authoritative score for one team in one period."""

    team_id: int
    period: Period
    slots: list[SlotScore] = Field(default_factory=list)
    team_bonuses: list[BonusPenalty] = Field(default_factory=list)
    slot_points: float = 0.0
    bonus_points: float = 0.0
    total_points: float = 0.0
    computed_at: datetime = Field(default_factory=datetime.utcnow)

    def position_points(self) -> dict[str, float]:
        return {s.position.value: s.points for s in self.slots}


class EventKind(str, Enum):
    ENTITY_SCORED = "entity_scored"
    TEAM_SCORED = "team_scored"
    RUN_COMPLETE = "run_complete"


class ScoringEvent(BaseModel):
    """A progress notification published on the broadcast channel."""

    kind: EventKind
    run_id: str
    sequence: int
    period: Period
    payload: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=datetime.utcnow)


class RunFailure(BaseModel):
    """Why one subject of a run did not make it to the store."""

    subject: str = Field(description="e.g. 'team:12' or 'product:88'")
    error: str = Field(description="Error class name")
    reason: str


class RunReport(BaseModel):
    """Partial-success summary returned to whoever triggered the run."""

    run_id: str
    period: Period
    league_id: Optional[int] = None
    succeeded: list[str] = Field(default_factory=list)
    failed: list[RunFailure] = Field(default_factory=list)
    skipped_entities: list[RunFailure] = Field(default_factory=list)
    unsaved: list[str] = Field(default_factory=list)
    team_scores: list[TeamScore] = Field(default_factory=list)
    complete: bool = False
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def summary(self) -> str:
        total = len(self.succeeded) + len(self.failed)
        text = f"{len(self.succeeded)}/{total} teams scored"
        if self.failed:
            reasons = ", ".join(f"{f.subject}: {f.reason}" for f in self.failed)
            text += f", {len(self.failed)} failed ({reasons})"
        if not self.complete:
            text += ", run incomplete"
        return text
