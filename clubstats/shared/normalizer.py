"""
Provider payload -> ContributionSnapshot conversion

Raw payloads are a tagged union (GitHubRawPayload | LeetCodeRawPayload) built by
the provider clients. Nothing past this module reads provider-shaped data.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

from clubstats.shared.snapshots import ContributionSnapshot, LanguageUnit, Provider


MAX_LANGUAGE_NAME_CHARS = 49


@dataclass(frozen=True)
class GitHubRawPayload:
    username: str
    profile: Dict[str, Any] = field(default_factory=dict)
    totals: Dict[str, Any] = field(default_factory=dict)
    languages: Dict[Any, Any] = field(default_factory=dict)
    language_unit: LanguageUnit = LanguageUnit.PERCENT
    calendar: List[Dict[str, Any]] = field(default_factory=list)
    approximate: bool = False
    provider: Provider = field(default=Provider.GITHUB, init=False)


@dataclass(frozen=True)
class LeetCodeRawPayload:
    username: str
    matched_user: Dict[str, Any] = field(default_factory=dict)
    calendar: List[Dict[str, Any]] = field(default_factory=list)
    provider: Provider = field(default=Provider.LEETCODE, init=False)


RawPayload = Union[GitHubRawPayload, LeetCodeRawPayload]


def coerce_count(value) -> int:
    """
    Coerce a provider value into a non-negative finite int

    Args:
        value: Any provider field value

    Returns:
        int, 0 for missing, negative, NaN, infinite or non-numeric input
    """
    if value is None or isinstance(value, bool):
        return 0

    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0

    if not isinstance(value, (int, float)):
        return 0

    if isinstance(value, float) and not math.isfinite(value):
        return 0

    coerced = int(value)
    return coerced if coerced > 0 else 0


def _optional_count(value) -> Optional[int]:
    if value is None:
        return None
    return coerce_count(value)


def contribution_level(count) -> int:
    """
    Bucket a daily contribution count into a 0-4 intensity level

    Args:
        count (int): Contributions on the day

    Returns:
        int level
    """
    count = coerce_count(count)
    if count <= 0:
        return 0
    if count < 3:
        return 1
    if count < 6:
        return 2
    if count < 10:
        return 3
    return 4


def normalize_calendar(days) -> List[Dict[str, Any]]:
    """
    Clean a daily activity series

    Entries without a parseable YYYY-MM-DD date are dropped, counts are
    coerced, repeated dates are summed and every day gets its level.

    Args:
        days (list): [{date, count, ...}] from a provider client

    Returns:
        list of {date, count, level}, ascending by date
    """
    counts: Dict[date, int] = {}
    for entry in days or []:
        if not isinstance(entry, dict):
            continue
        try:
            day = date.fromisoformat(str(entry.get("date") or ""))
        except ValueError:
            continue
        counts[day] = counts.get(day, 0) + coerce_count(entry.get("count"))
    return [
        {"date": day.isoformat(), "count": count, "level": contribution_level(count)}
        for day, count in sorted(counts.items())
    ]


def filter_language_histogram(histogram) -> Dict[str, int]:
    """
    Drop malformed language entries

    Entries are dropped when the key is not a string, is empty/blank, is longer
    than 49 characters, or contains a percent sign. Values are coerced like counts.

    Args:
        histogram (dict): Raw language -> value mapping

    Returns:
        dict language -> int
    """
    if not isinstance(histogram, dict):
        return {}

    filtered = {}
    for name, value in histogram.items():
        if not isinstance(name, str):
            continue
        if not name.strip() or len(name) > MAX_LANGUAGE_NAME_CHARS or "%" in name:
            continue
        filtered[name] = coerce_count(value)
    return filtered


def _normalize_github(raw: GitHubRawPayload, subject_id, captured_at) -> ContributionSnapshot:
    profile = raw.profile or {}
    totals = raw.totals or {}

    commits = coerce_count(totals.get("commits"))
    pull_requests = coerce_count(totals.get("pull_requests"))
    issues = coerce_count(totals.get("issues"))

    if totals.get("contributions") is None:
        contributions = commits + pull_requests + issues
    else:
        contributions = coerce_count(totals.get("contributions"))

    return ContributionSnapshot(
        subject_id=str(subject_id),
        provider=Provider.GITHUB,
        captured_at=captured_at,
        commits=commits,
        pull_requests=pull_requests,
        issues=issues,
        repositories=coerce_count(profile.get("public_repos")),
        followers=coerce_count(profile.get("followers")),
        contributions=contributions,
        language_histogram=filter_language_histogram(raw.languages),
        language_unit=raw.language_unit,
        approximate=bool(raw.approximate),
        calendar=normalize_calendar(raw.calendar),
    )


def _solved_by_difficulty(matched_user) -> Dict[str, int]:
    submit_stats = (matched_user or {}).get("submitStats") or {}
    solved = {"Easy": 0, "Medium": 0, "Hard": 0}
    for row in submit_stats.get("acSubmissionNum") or []:
        if not isinstance(row, dict):
            continue
        difficulty = row.get("difficulty")
        if difficulty in solved:
            solved[difficulty] = coerce_count(row.get("count"))
    return solved


def _normalize_leetcode(raw: LeetCodeRawPayload, subject_id, captured_at) -> ContributionSnapshot:
    matched_user = raw.matched_user or {}
    profile = matched_user.get("profile") or {}
    solved = _solved_by_difficulty(matched_user)

    return ContributionSnapshot(
        subject_id=str(subject_id),
        provider=Provider.LEETCODE,
        captured_at=captured_at,
        solved_easy=solved["Easy"],
        solved_medium=solved["Medium"],
        solved_hard=solved["Hard"],
        ranking=_optional_count(profile.get("ranking")),
        reputation=_optional_count(profile.get("reputation")),
        calendar=normalize_calendar(raw.calendar),
    )


def normalize(provider, raw: RawPayload, subject_id="", captured_at: Optional[datetime] = None) -> ContributionSnapshot:
    """
    Convert a raw provider payload into a ContributionSnapshot

    Args:
        provider (Provider): Expected provider tag
        raw (RawPayload): Tagged payload from a provider client
        subject_id (str): Subject the snapshot belongs to
        captured_at (datetime): Capture time; defaults to now (UTC)

    Returns:
        ContributionSnapshot

    Raises:
        ValueError: When the payload tag does not match provider
    """
    provider = Provider(provider)
    if getattr(raw, "provider", None) != provider:
        raise ValueError(f"normalize: payload is not a {provider.value} payload")

    captured_at = captured_at or datetime.now(timezone.utc)

    if provider == Provider.GITHUB:
        return _normalize_github(raw, subject_id, captured_at)
    return _normalize_leetcode(raw, subject_id, captured_at)
