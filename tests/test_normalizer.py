import math
from datetime import datetime, timezone

import pytest

from clubstats.shared import normalizer
from clubstats.shared.normalizer import GitHubRawPayload, LeetCodeRawPayload
from clubstats.shared.snapshots import COUNT_FIELDS, ContributionSnapshot, LanguageUnit, Provider


CAPTURED_AT = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, 0),
        (True, 0),
        (-5, 0),
        (float("nan"), 0),
        (float("inf"), 0),
        ("abc", 0),
        ("12", 12),
        (" 7.9 ", 7),
        (3.99, 3),
        (42, 42),
        ({"nested": 1}, 0),
    ],
)
def test_coerce_count_expected(value, expected):
    assert normalizer.coerce_count(value) == expected


def test_filter_language_histogram_drops_malformed_names_expected():
    histogram = {
        "Python": 60,
        "Go": "25",
        "": 5,
        "   ": 5,
        "x" * 50: 1,
        "y" * 49: 2,
        "100%": 3,
        7: 4,
        "Rust": -3,
    }

    filtered = normalizer.filter_language_histogram(histogram)

    assert filtered == {"Python": 60, "Go": 25, "y" * 49: 2, "Rust": 0}


def test_filter_language_histogram_non_dict_expected():
    assert normalizer.filter_language_histogram(["Python"]) == {}
    assert normalizer.filter_language_histogram(None) == {}


def test_normalize_github_derives_contributions_when_absent_expected():
    raw = GitHubRawPayload(
        username="octocat",
        profile={"public_repos": 8, "followers": "12"},
        totals={"commits": 40, "pull_requests": 3, "issues": 2},
        languages={"Python": 70, "Shell": 30},
    )

    snapshot = normalizer.normalize(Provider.GITHUB, raw, subject_id="s-1", captured_at=CAPTURED_AT)

    assert snapshot.subject_id == "s-1"
    assert snapshot.provider == Provider.GITHUB
    assert snapshot.commits == 40
    assert snapshot.contributions == 45
    assert snapshot.repositories == 8
    assert snapshot.followers == 12
    assert snapshot.language_histogram == {"Python": 70, "Shell": 30}
    assert snapshot.language_unit == LanguageUnit.PERCENT
    assert snapshot.approximate is False


def test_normalize_github_keeps_provider_contribution_total_expected():
    raw = GitHubRawPayload(
        username="octocat",
        totals={"commits": 1, "pull_requests": 1, "issues": 1, "contributions": 120},
        approximate=True,
    )

    snapshot = normalizer.normalize(Provider.GITHUB, raw, captured_at=CAPTURED_AT)

    assert snapshot.contributions == 120
    assert snapshot.approximate is True


def test_normalize_garbage_is_non_negative_and_finite_expected():
    raw = GitHubRawPayload(
        username="octocat",
        profile={"public_repos": float("nan"), "followers": -10},
        totals={"commits": float("-inf"), "pull_requests": "lots", "issues": None},
    )

    snapshot = normalizer.normalize(Provider.GITHUB, raw, captured_at=CAPTURED_AT)

    for name in COUNT_FIELDS:
        value = getattr(snapshot, name)
        assert isinstance(value, int)
        assert value >= 0
        assert math.isfinite(value)


def test_normalize_leetcode_reads_difficulty_counts_expected():
    raw = LeetCodeRawPayload(
        username="coder",
        matched_user={
            "profile": {"ranking": 12345, "reputation": None},
            "submitStats": {
                "acSubmissionNum": [
                    {"difficulty": "All", "count": 60},
                    {"difficulty": "Easy", "count": 30},
                    {"difficulty": "Medium", "count": 25},
                    {"difficulty": "Hard", "count": 5},
                ]
            },
        },
    )

    snapshot = normalizer.normalize(Provider.LEETCODE, raw, subject_id="s-2", captured_at=CAPTURED_AT)

    assert (snapshot.solved_easy, snapshot.solved_medium, snapshot.solved_hard) == (30, 25, 5)
    assert snapshot.solved_total == 60
    assert snapshot.ranking == 12345
    assert snapshot.reputation is None
    assert snapshot.commits == 0


def test_normalize_rejects_mismatched_payload_expected():
    with pytest.raises(ValueError):
        normalizer.normalize(Provider.LEETCODE, GitHubRawPayload(username="octocat"))


def test_snapshot_dict_form_survives_storage_expected():
    raw = LeetCodeRawPayload(
        username="coder",
        matched_user={"submitStats": {"acSubmissionNum": [{"difficulty": "Hard", "count": 2}]}},
    )
    snapshot = normalizer.normalize(Provider.LEETCODE, raw, subject_id="s-3", captured_at=CAPTURED_AT)

    restored = ContributionSnapshot.from_dict(snapshot.to_dict())

    assert restored == snapshot
    assert snapshot.to_dict()["captured_at"] == "2025-01-01T00:00:00Z"


def test_normalize_calendar_merges_sorts_and_levels_expected():
    days = [
        {"date": "2025-01-03", "count": 12},
        {"date": "2025-01-01", "count": "2"},
        {"date": "2025-01-01", "count": 3},
        {"date": None, "count": 5},
        {"date": "01/02/2025", "count": 5},
        "garbage",
        {"date": "2025-01-02", "count": -4},
    ]

    assert normalizer.normalize_calendar(days) == [
        {"date": "2025-01-01", "count": 5, "level": 2},
        {"date": "2025-01-02", "count": 0, "level": 0},
        {"date": "2025-01-03", "count": 12, "level": 4},
    ]
    assert normalizer.normalize_calendar(None) == []


def test_normalize_carries_calendar_outside_dict_form_expected():
    raw = LeetCodeRawPayload(
        username="coder",
        matched_user={"submitStats": {"acSubmissionNum": []}},
        calendar=[{"date": "2024-12-31", "count": 1}],
    )

    snapshot = normalizer.normalize(Provider.LEETCODE, raw, subject_id="s-3", captured_at=CAPTURED_AT)

    assert snapshot.calendar == [{"date": "2024-12-31", "count": 1, "level": 1}]
    assert "calendar" not in snapshot.to_dict()
