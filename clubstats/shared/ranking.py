"""
Deterministic scoring and ranking

Ordering is value descending, ties broken by subject id ascending, so the
same input always produces the same ranks.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from clubstats.shared.snapshots import COUNT_FIELDS, ContributionSnapshot


class Dimension(str, Enum):
    COMMITS = "COMMITS"
    PULL_REQUESTS = "PULL_REQUESTS"
    ISSUES = "ISSUES"
    CONTRIBUTIONS = "CONTRIBUTIONS"
    EXPERIENCE = "EXPERIENCE"
    STREAK = "STREAK"
    LEETCODE = "LEETCODE"
    POINTS = "POINTS"


class Period(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ALL_TIME = "all-time"


PERIOD_WINDOWS = {
    Period.DAILY: timedelta(days=1),
    Period.WEEKLY: timedelta(days=7),
    Period.MONTHLY: timedelta(days=30),
}

GITHUB_WEIGHTS = {"commits": 1, "pull_requests": 5, "issues": 2, "repositories": 3}
LEETCODE_WEIGHTS = {"solved_easy": 2, "solved_medium": 4, "solved_hard": 6}

LEVEL_BASE_XP = 100
LEVEL_MULTIPLIER = 1.5


@dataclass
class SubjectStats:
    subject_id: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    github_username: Optional[str] = None
    leetcode_username: Optional[str] = None
    github: Optional[ContributionSnapshot] = None
    leetcode: Optional[ContributionSnapshot] = None
    experience: int = 0
    streak: int = 0


@dataclass
class RankedEntry:
    rank: Optional[int]
    subject_id: str
    value: int
    points: int
    display_stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "subject_id": self.subject_id,
            "value": self.value,
            "points": self.points,
            "display_stats": dict(self.display_stats),
        }


def weighted_points(snapshot, weights) -> int:
    if snapshot is None:
        return 0
    return sum(int(getattr(snapshot, name, 0) or 0) * weight for name, weight in weights.items())


def github_points(snapshot) -> int:
    """
    commits*1 + pull_requests*5 + issues*2 + repositories*3
    """
    return weighted_points(snapshot, GITHUB_WEIGHTS)


def leetcode_points(snapshot) -> int:
    """
    solved_easy*2 + solved_medium*4 + solved_hard*6
    """
    return weighted_points(snapshot, LEETCODE_WEIGHTS)


def combined_points(stats: SubjectStats) -> int:
    return github_points(stats.github) + leetcode_points(stats.leetcode)


def calculate_level(experience) -> Dict[str, int]:
    """
    Level progression where each level costs 1.5x the previous one

    Args:
        experience (int): Total experience

    Returns:
        dict with level, experience, experience_to_next, total_experience_for_level
    """
    experience = max(0, int(experience or 0))
    level = 1
    total_for_level = 0
    next_cost = LEVEL_BASE_XP

    while experience >= total_for_level + next_cost:
        total_for_level += next_cost
        level += 1
        next_cost = math.floor(LEVEL_BASE_XP * LEVEL_MULTIPLIER ** (level - 1))

    return {
        "level": level,
        "experience": experience,
        "experience_to_next": total_for_level + next_cost - experience,
        "total_experience_for_level": total_for_level,
    }


def period_window_start(period, now: datetime) -> Optional[datetime]:
    """
    Start of the rolling window for period

    Returns:
        datetime, or None for ALL_TIME
    """
    window = PERIOD_WINDOWS.get(Period(period))
    if window is None:
        return None
    return now - window


def snapshot_delta(current: ContributionSnapshot, baseline: Optional[ContributionSnapshot]) -> ContributionSnapshot:
    """
    Field-by-field current - baseline, clamped at zero

    Args:
        current (ContributionSnapshot): Latest snapshot
        baseline (ContributionSnapshot): Snapshot at the window start; None means no movement

    Returns:
        ContributionSnapshot holding the deltas
    """
    if baseline is None:
        return replace(current, **{name: 0 for name in COUNT_FIELDS})
    deltas = {name: max(0, getattr(current, name) - getattr(baseline, name)) for name in COUNT_FIELDS}
    return replace(current, **deltas)


def dimension_value(stats: SubjectStats, dimension) -> int:
    dimension = Dimension(dimension)
    github = stats.github

    if dimension == Dimension.COMMITS:
        return github.commits if github else 0
    if dimension == Dimension.PULL_REQUESTS:
        return github.pull_requests if github else 0
    if dimension == Dimension.ISSUES:
        return github.issues if github else 0
    if dimension == Dimension.CONTRIBUTIONS:
        return github.contributions if github else 0
    if dimension == Dimension.EXPERIENCE:
        return max(0, int(stats.experience or 0))
    if dimension == Dimension.STREAK:
        return max(0, int(stats.streak or 0))
    if dimension == Dimension.LEETCODE:
        return leetcode_points(stats.leetcode)
    return combined_points(stats)


def display_stats(stats: SubjectStats) -> Dict[str, Any]:
    github = stats.github
    leetcode = stats.leetcode
    return {
        "name": stats.name,
        "avatar_url": stats.avatar_url,
        "github_username": stats.github_username,
        "leetcode_username": stats.leetcode_username,
        "commits": github.commits if github else 0,
        "pull_requests": github.pull_requests if github else 0,
        "issues": github.issues if github else 0,
        "contributions": github.contributions if github else 0,
        "repositories": github.repositories if github else 0,
        "solved_easy": leetcode.solved_easy if leetcode else 0,
        "solved_medium": leetcode.solved_medium if leetcode else 0,
        "solved_hard": leetcode.solved_hard if leetcode else 0,
        "solved_total": leetcode.solved_total if leetcode else 0,
        "github_points": github_points(github),
        "leetcode_points": leetcode_points(leetcode),
        "experience": stats.experience,
        "level": calculate_level(stats.experience)["level"],
        "streak": stats.streak,
    }


def rank(subjects, dimension, period=Period.ALL_TIME, include_unranked=False) -> List[RankedEntry]:
    """
    Rank subjects on one dimension

    Subjects need a stats block for at least one provider. Subjects whose
    combined points are zero are left out, or kept with rank=None when
    include_unranked is set (profile views).

    Args:
        subjects (list[SubjectStats]): Inputs; windowed periods expect delta snapshots
        dimension (Dimension): Value to sort on
        period (Period): Carried for callers; the value is read from the given stats
        include_unranked (bool): Keep zero-point subjects with rank=None

    Returns:
        list[RankedEntry] ordered by rank, unranked entries last
    """
    dimension = Dimension(dimension)
    Period(period)  # raises ValueError on unknown periods

    ranked = []
    unranked = []
    for stats in subjects:
        if stats.github is None and stats.leetcode is None:
            continue
        entry = RankedEntry(
            rank=None,
            subject_id=str(stats.subject_id),
            value=dimension_value(stats, dimension),
            points=combined_points(stats),
            display_stats=display_stats(stats),
        )
        if entry.points > 0:
            ranked.append(entry)
        elif include_unranked:
            unranked.append(entry)

    ranked.sort(key=lambda e: (-e.value, e.subject_id))
    for index, entry in enumerate(ranked):
        entry.rank = index + 1

    unranked.sort(key=lambda e: (-e.value, e.subject_id))
    return ranked + unranked
