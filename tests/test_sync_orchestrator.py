from datetime import timedelta

import pytest
from celery.exceptions import SoftTimeLimitExceeded

from clubstats.shared import store
from clubstats.shared.caching import TieredCache, leaderboard_key, user_feed_key
from clubstats.shared.errors import MissingUsername, NotFound, RateLimited, SubjectNotFound, UpstreamError
from clubstats.shared.normalizer import GitHubRawPayload, LeetCodeRawPayload
from clubstats.shared.snapshots import Provider, SyncState, SyncStatus
from clubstats.shared.sync import (
    SyncOrchestrator,
    SyncTrigger,
    is_due,
    leaderboard_relevant_change,
    user_gate_retry_after,
)


class _FakeGitHubClient:
    def __init__(self, commits=10):
        self.commits = commits
        self.calendar = []
        self.calls = []
        self.error = None

    def fetch_contributions(self, username):
        self.calls.append(username)
        if self.error is not None:
            raise self.error
        return GitHubRawPayload(
            username=username,
            profile={"public_repos": 2, "followers": 1},
            totals={"commits": self.commits, "pull_requests": 1, "issues": 0},
            languages={"Python": 100},
            calendar=list(self.calendar),
        )


class _FakeLeetCodeClient:
    def __init__(self, easy=3):
        self.easy = easy
        self.calls = []
        self.error = None

    def fetch_contributions(self, username):
        self.calls.append(username)
        if self.error is not None:
            raise self.error
        return LeetCodeRawPayload(
            username=username,
            matched_user={"submitStats": {"acSubmissionNum": [{"difficulty": "Easy", "count": self.easy}]}},
        )


class _FakeActivityService:
    def __init__(self):
        self.merged = []

    def merge_subject_into_global(self, subject):
        self.merged.append(subject["id"])
        return True


class _Harness:
    def __init__(self, session_factory, clock, acquire_lock=None):
        self.github = _FakeGitHubClient()
        self.leetcode = _FakeLeetCodeClient()
        self.activities = _FakeActivityService()
        self.cache = TieredCache(redis_client=None)
        self.released = []
        kwargs = {}
        if acquire_lock is not None:
            kwargs["acquire_lock"] = acquire_lock
        self.orchestrator = SyncOrchestrator(
            session_factory=session_factory,
            cache=self.cache,
            clients={Provider.GITHUB: self.github, Provider.LEETCODE: self.leetcode},
            activity_service=self.activities,
            now_fn=clock,
            release_lock=lambda subject_id, provider, lock_value: self.released.append((subject_id, provider)),
            **kwargs,
        )


@pytest.fixture()
def harness(session_factory, clock):
    with session_factory() as session:
        store.upsert_subject(session, "s-1", name="Ada", github_username="ada", leetcode_username="ada-lc")
        store.upsert_subject(session, "s-2", name="Bob", github_username="bob")
        store.upsert_subject(session, "s-3", name="Cy")
    return _Harness(session_factory, clock, acquire_lock=lambda *_args, **_kwargs: "lock-value")


def _subject(session_factory, subject_id):
    with session_factory() as session:
        return store.get_subject(session, subject_id)


def _state(session_factory, subject_id, provider):
    with session_factory() as session:
        return store.get_sync_state(session, subject_id, provider)


def test_is_due_respects_trigger_windows_expected(clock):
    now = clock()
    fresh = SyncState("s-1", Provider.GITHUB, SyncStatus.SYNCED, last_synced_at=now - timedelta(minutes=20))
    stale = SyncState("s-1", Provider.GITHUB, SyncStatus.SYNCED, last_synced_at=now - timedelta(minutes=40))

    assert is_due(None, SyncTrigger.PASSIVE, now) is True
    assert is_due(fresh, SyncTrigger.PASSIVE, now) is False
    assert is_due(fresh, SyncTrigger.VISIT, now) is False
    assert is_due(stale, SyncTrigger.VISIT, now) is True
    assert is_due(fresh, SyncTrigger.USER, now) is True
    assert is_due(fresh, SyncTrigger.FORCED, now) is True


def test_user_gate_retry_after_rounds_up_expected(clock):
    now = clock()
    state = SyncState("s-1", Provider.GITHUB, next_eligible_at=now + timedelta(seconds=90, milliseconds=200))

    assert user_gate_retry_after(state, now) == 91
    assert user_gate_retry_after(state, now + timedelta(minutes=2)) == 0
    assert user_gate_retry_after(None, now) == 0


def test_passive_sync_respects_24h_staleness_expected(harness, session_factory, clock):
    subject = _subject(session_factory, "s-1")

    first = harness.orchestrator.sync_provider(subject, Provider.GITHUB, SyncTrigger.PASSIVE)
    assert first["status"] == "synced"
    assert len(harness.github.calls) == 1

    clock.advance(timedelta(hours=23))
    second = harness.orchestrator.sync_provider(subject, Provider.GITHUB, SyncTrigger.PASSIVE)
    assert second["status"] == "skipped"
    assert second["snapshot"].commits == 10
    assert len(harness.github.calls) == 1

    clock.advance(timedelta(hours=2))
    third = harness.orchestrator.sync_provider(subject, Provider.GITHUB, SyncTrigger.PASSIVE)
    assert third["status"] == "synced"
    assert len(harness.github.calls) == 2


def test_successful_sync_persists_snapshot_and_state_expected(harness, session_factory, clock):
    harness.orchestrator.sync_provider(_subject(session_factory, "s-1"), Provider.GITHUB, SyncTrigger.PASSIVE)

    state = _state(session_factory, "s-1", Provider.GITHUB)
    assert state.status == SyncStatus.SYNCED
    assert state.last_sync_ok is True
    assert state.last_synced_at == clock()
    assert state.last_error is None

    with session_factory() as session:
        snapshot = store.get_current_snapshot(session, "s-1", Provider.GITHUB)
    assert snapshot.commits == 10
    assert snapshot.contributions == 11
    assert harness.released == [("s-1", Provider.GITHUB)]


def test_user_sync_gate_blocks_second_fetch_expected(harness, clock):
    result = harness.orchestrator.sync_subject("s-2", trigger=SyncTrigger.USER)
    assert result["status"] == "ok"
    assert len(harness.github.calls) == 1

    clock.advance(timedelta(minutes=4))
    with pytest.raises(RateLimited) as excinfo:
        harness.orchestrator.sync_subject("s-2", trigger=SyncTrigger.USER)

    assert excinfo.value.retry_after_seconds == 360
    assert len(harness.github.calls) == 1

    clock.advance(timedelta(minutes=6))
    assert harness.orchestrator.sync_subject("s-2", trigger=SyncTrigger.USER)["status"] == "ok"
    assert len(harness.github.calls) == 2


def test_user_gate_applies_even_after_failed_sync_expected(harness, session_factory, clock):
    harness.github.error = UpstreamError("GITHUB", "boom")

    with pytest.raises(UpstreamError):
        harness.orchestrator.sync_subject("s-2", trigger=SyncTrigger.USER)

    harness.github.error = None
    clock.advance(timedelta(minutes=1))
    with pytest.raises(RateLimited):
        harness.orchestrator.sync_subject("s-2", trigger=SyncTrigger.USER)
    assert len(harness.github.calls) == 1


def test_failed_sync_marks_state_failed_not_syncing_expected(harness, session_factory):
    harness.github.error = UpstreamError("GITHUB", "GitHub HTTP 502", status_code=502)

    with pytest.raises(UpstreamError):
        harness.orchestrator.sync_provider(_subject(session_factory, "s-1"), Provider.GITHUB, SyncTrigger.PASSIVE)

    state = _state(session_factory, "s-1", Provider.GITHUB)
    assert state.status == SyncStatus.FAILED
    assert state.last_sync_ok is False
    assert "502" in state.last_error
    assert harness.released == [("s-1", Provider.GITHUB)]


def test_unexpected_error_also_marks_failed_expected(harness, session_factory):
    harness.github.error = KeyError("payload")

    with pytest.raises(KeyError):
        harness.orchestrator.sync_provider(_subject(session_factory, "s-1"), Provider.GITHUB, SyncTrigger.FORCED)

    assert _state(session_factory, "s-1", Provider.GITHUB).status == SyncStatus.FAILED


def test_lock_held_returns_locked_without_fetch_expected(session_factory, clock):
    with session_factory() as session:
        store.upsert_subject(session, "s-1", github_username="ada")

    def _held(*_args, **_kwargs):
        raise TimeoutError("held")

    harness = _Harness(session_factory, clock, acquire_lock=_held)

    result = harness.orchestrator.sync_subject("s-1", trigger=SyncTrigger.FORCED)

    assert result["status"] == "locked"
    assert result["providers"] == {"GITHUB": "locked"}
    assert harness.github.calls == []
    assert harness.released == []


def test_sync_clears_user_feed_and_merges_global_expected(harness, session_factory):
    harness.cache.set(user_feed_key("s-1"), [{"id": "old"}])

    harness.orchestrator.sync_provider(_subject(session_factory, "s-1"), Provider.GITHUB, SyncTrigger.FORCED)

    assert harness.cache.get(user_feed_key("s-1")) is None
    assert harness.activities.merged == ["s-1"]


def test_leetcode_sync_does_not_touch_global_feed_expected(harness, session_factory):
    harness.orchestrator.sync_provider(_subject(session_factory, "s-1"), Provider.LEETCODE, SyncTrigger.FORCED)

    assert harness.activities.merged == []
    assert harness.leetcode.calls == ["ada-lc"]


def test_leaderboards_cleared_only_on_relevant_change_expected(harness, session_factory):
    key = leaderboard_key("POINTS", "all-time")
    subject = _subject(session_factory, "s-1")

    harness.cache.set(key, {"entries": []})
    harness.orchestrator.sync_provider(subject, Provider.GITHUB, SyncTrigger.FORCED)
    assert harness.cache.get(key) is None

    harness.cache.set(key, {"entries": []})
    harness.orchestrator.sync_provider(subject, Provider.GITHUB, SyncTrigger.FORCED)
    assert harness.cache.get(key) == {"entries": []}

    harness.github.commits = 11
    harness.orchestrator.sync_provider(subject, Provider.GITHUB, SyncTrigger.FORCED)
    assert harness.cache.get(key) is None


def test_leaderboard_relevant_change_expected(harness, session_factory):
    harness.orchestrator.sync_provider(_subject(session_factory, "s-1"), Provider.LEETCODE, SyncTrigger.FORCED)
    with session_factory() as session:
        snapshot = store.get_current_snapshot(session, "s-1", Provider.LEETCODE)

    assert leaderboard_relevant_change(Provider.LEETCODE, None, snapshot) is True
    assert leaderboard_relevant_change(Provider.LEETCODE, snapshot, snapshot) is False


def test_sync_subject_partial_failure_expected(harness):
    harness.leetcode.error = NotFound("LEETCODE", "ada-lc")

    result = harness.orchestrator.sync_subject("s-1", trigger=SyncTrigger.FORCED)

    assert result["status"] == "partial"
    assert result["providers"] == {"GITHUB": "synced", "LEETCODE": "failed"}
    assert result["errors"][0]["provider"] == "LEETCODE"
    assert result["errors"][0]["type"] == "NotFound"
    assert result["github_points"] == 10 + 5 + 6
    assert result["leetcode"] is None
    assert result["total_points"] == result["github_points"]


def test_sync_subject_returns_composite_stats_expected(harness):
    result = harness.orchestrator.sync_subject("s-1", trigger=SyncTrigger.USER)

    assert result["status"] == "ok"
    assert result["github"]["commits"] == 10
    assert result["leetcode"]["solved_easy"] == 3
    assert result["leetcode_points"] == 6
    assert result["total_points"] == 21 + 6
    assert result["errors"] == []


def test_sync_subject_single_provider_missing_username_expected(harness):
    with pytest.raises(MissingUsername):
        harness.orchestrator.sync_subject("s-2", provider=Provider.LEETCODE)

    with pytest.raises(MissingUsername):
        harness.orchestrator.sync_subject("s-3")

    with pytest.raises(SubjectNotFound):
        harness.orchestrator.sync_subject("nobody")


def test_sync_stale_counts_results_and_continues_past_failures_expected(harness, session_factory, clock):
    harness.orchestrator.sync_provider(_subject(session_factory, "s-2"), Provider.GITHUB, SyncTrigger.PASSIVE)
    harness.leetcode.error = UpstreamError("LEETCODE", "down")

    summary = harness.orchestrator.sync_stale(page_size=1)

    assert summary["synced"] == 1
    assert summary["failed"] == 1
    assert summary["errors"] == [{"subject_id": "s-1", "provider": "LEETCODE", "error": "down"}]
    assert harness.github.calls == ["bob", "ada"]

    clock.advance(timedelta(hours=25))
    harness.leetcode.error = None
    summary = harness.orchestrator.sync_stale(provider=Provider.GITHUB)
    assert summary == {"synced": 2, "skipped": 0, "failed": 0, "errors": []}


def test_soft_time_limit_marks_failed_and_releases_lock_expected(harness, session_factory):
    harness.github.error = SoftTimeLimitExceeded()

    with pytest.raises(SoftTimeLimitExceeded):
        harness.orchestrator.sync_subject("s-2", trigger=SyncTrigger.PASSIVE)

    state = _state(session_factory, "s-2", Provider.GITHUB)
    assert state.status == SyncStatus.FAILED
    assert state.last_sync_ok is False
    assert harness.released == [("s-2", Provider.GITHUB)]


def test_contribution_calendar_persisted_by_sync_expected(harness, session_factory, clock):
    harness.github.calendar = [
        {"date": "2025-02-28", "count": 4},
        {"date": "2025-02-27", "count": 0},
        {"date": "not-a-date", "count": 9},
    ]
    harness.orchestrator.sync_provider(_subject(session_factory, "s-2"), Provider.GITHUB, SyncTrigger.FORCED)

    calendar = harness.orchestrator.contribution_calendar("s-2", Provider.GITHUB)

    assert calendar == {
        "subject_id": "s-2",
        "provider": "GITHUB",
        "captured_at": "2025-03-01T12:00:00Z",
        "total": 4,
        "days": [
            {"date": "2025-02-27", "count": 0, "level": 0},
            {"date": "2025-02-28", "count": 4, "level": 2},
        ],
    }

    # a sync without calendar data keeps the stored series
    harness.github.calendar = []
    clock.advance(timedelta(hours=1))
    harness.orchestrator.sync_provider(_subject(session_factory, "s-2"), Provider.GITHUB, SyncTrigger.FORCED)
    assert harness.orchestrator.contribution_calendar("s-2", Provider.GITHUB)["total"] == 4


def test_contribution_calendar_before_first_sync_expected(harness):
    calendar = harness.orchestrator.contribution_calendar("s-1", "LEETCODE")

    assert calendar == {"subject_id": "s-1", "provider": "LEETCODE", "captured_at": None, "total": 0, "days": []}

    with pytest.raises(SubjectNotFound):
        harness.orchestrator.contribution_calendar("nobody", Provider.GITHUB)
