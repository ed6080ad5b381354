"""
Canonical contribution records shared by sync, ranking and bootcamp code
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Provider(str, Enum):
    GITHUB = "GITHUB"
    LEETCODE = "LEETCODE"


class LanguageUnit(str, Enum):
    PERCENT = "PERCENT"
    BYTES = "BYTES"


class SyncStatus(str, Enum):
    STALE = "STALE"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


COUNT_FIELDS = (
    "commits",
    "pull_requests",
    "issues",
    "repositories",
    "followers",
    "contributions",
    "solved_easy",
    "solved_medium",
    "solved_hard",
)


def to_iso8601_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Render datetime as ISO-8601 with a trailing Z

    Args:
        dt (datetime): Datetime or None; naive values are treated as UTC

    Returns:
        str or None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_utc(value) -> Optional[datetime]:
    """
    Parse a datetime or ISO-8601 string into an aware UTC datetime

    Args:
        value (datetime | str | None): Stored timestamp

    Returns:
        datetime or None
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value).strip().replace("Z", "+00:00")
        dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class ContributionSnapshot:
    subject_id: str
    provider: Provider
    captured_at: datetime
    commits: int = 0
    pull_requests: int = 0
    issues: int = 0
    repositories: int = 0
    followers: int = 0
    contributions: int = 0
    language_histogram: Dict[str, int] = field(default_factory=dict)
    language_unit: LanguageUnit = LanguageUnit.PERCENT
    solved_easy: int = 0
    solved_medium: int = 0
    solved_hard: int = 0
    ranking: Optional[int] = None
    reputation: Optional[int] = None
    approximate: bool = False
    # Daily {date, count, level} series; persisted apart from the snapshot row
    calendar: List[Dict[str, Any]] = field(default_factory=list, compare=False, repr=False)

    @property
    def solved_total(self) -> int:
        return self.solved_easy + self.solved_medium + self.solved_hard

    def counts(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in COUNT_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "provider": self.provider.value,
            "captured_at": to_iso8601_z(self.captured_at),
            **self.counts(),
            "solved_total": self.solved_total,
            "language_histogram": dict(self.language_histogram),
            "language_unit": self.language_unit.value,
            "ranking": self.ranking,
            "reputation": self.reputation,
            "approximate": self.approximate,
        }

    @classmethod
    def from_dict(cls, data) -> "ContributionSnapshot":
        """
        Rebuild a snapshot from its stored dict form

        Args:
            data (dict): Output of to_dict() or a stored row mapping

        Returns:
            ContributionSnapshot
        """
        kwargs = {name: int(data.get(name) or 0) for name in COUNT_FIELDS}
        ranking = data.get("ranking")
        reputation = data.get("reputation")
        return cls(
            subject_id=str(data["subject_id"]),
            provider=Provider(data["provider"]),
            captured_at=parse_utc(data["captured_at"]),
            language_histogram=dict(data.get("language_histogram") or {}),
            language_unit=LanguageUnit(data.get("language_unit") or LanguageUnit.PERCENT.value),
            ranking=int(ranking) if ranking is not None else None,
            reputation=int(reputation) if reputation is not None else None,
            approximate=bool(data.get("approximate") or False),
            **kwargs,
        )


@dataclass
class SyncState:
    subject_id: str
    provider: Provider
    status: SyncStatus = SyncStatus.STALE
    last_synced_at: Optional[datetime] = None
    last_sync_ok: Optional[bool] = None
    next_eligible_at: Optional[datetime] = None
    last_error: Optional[str] = None
