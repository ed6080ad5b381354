from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from clubstats.shared.ranking import Dimension, Period
from clubstats.shared.snapshots import Provider

_PERIOD_ALIASES = {
    "all_time": Period.ALL_TIME,
    "alltime": Period.ALL_TIME,
    "all": Period.ALL_TIME,
}


def parse_dimension(value: Optional[str]) -> Dimension:
    """
    Accept dimension names case-insensitively

    Raises:
        ValueError: Unknown dimension
    """
    normalized = str(value or Dimension.POINTS.value).strip().upper().replace("-", "_")
    return Dimension(normalized)


def parse_period(value: Optional[str]) -> Period:
    """
    Accept period names case-insensitively, including all_time spellings

    Raises:
        ValueError: Unknown period
    """
    normalized = str(value or Period.ALL_TIME.value).strip().lower()
    if normalized in _PERIOD_ALIASES:
        return _PERIOD_ALIASES[normalized]
    return Period(normalized)


def parse_provider(value: Optional[str]) -> Provider:
    """
    Accept provider names case-insensitively

    Raises:
        ValueError: Unknown provider
    """
    return Provider(str(value or "").strip().upper())


class SyncRequest(BaseModel):
    provider: Optional[str] = None
    trigger: Literal["USER", "VISIT"] = "USER"

    @field_validator("provider")
    @classmethod
    def _validate_provider(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None

        normalized = value.strip().upper()
        if not normalized:
            return None

        if normalized not in {p.value for p in Provider}:
            raise ValueError("provider must be 'GITHUB' or 'LEETCODE'")

        return normalized

    @field_validator("trigger", mode="before")
    @classmethod
    def _normalize_trigger(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value


class SyncProviderError(BaseModel):
    provider: str
    error: str
    type: str


class SyncResponse(BaseModel):
    subject_id: str
    status: str
    providers: Dict[str, str]
    github: Optional[Dict[str, Any]] = None
    leetcode: Optional[Dict[str, Any]] = None
    github_points: int
    leetcode_points: int
    total_points: int
    errors: List[SyncProviderError] = Field(default_factory=list)


class LeaderboardEntry(BaseModel):
    rank: Optional[int] = None
    subject_id: str
    value: int
    points: int
    display_stats: Dict[str, Any]


class LeaderboardResponse(BaseModel):
    dimension: str
    period: str
    built_at: Optional[str] = None
    total: int
    entries: List[LeaderboardEntry]
    source: str


class ActivitiesResponse(BaseModel):
    scope: Literal["user", "global"]
    activities: List[Dict[str, Any]]
    total: int
    has_more: bool = False
    cached: bool
    building: bool = False
    built_at: Optional[str] = None


class BootcampSyncResult(BaseModel):
    bootcamp_id: str
    name: str
    synced: int
    errors: List[Dict[str, Any]]


class CalendarDay(BaseModel):
    date: str
    count: int
    level: int


class ContributionCalendarResponse(BaseModel):
    subject_id: str
    provider: str
    captured_at: Optional[str] = None
    total: int
    days: List[CalendarDay]
