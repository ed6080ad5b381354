from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from clubstats.api.app import main as api_main
from clubstats.shared.errors import (
    AlreadyRegistered,
    CacheUnavailable,
    MissingUsername,
    NotRegistered,
    RateLimited,
    SubjectNotFound,
    UpstreamError,
)
from clubstats.shared.snapshots import Provider


def _sync_result(subject_id, status="synced"):
    return {
        "subject_id": subject_id,
        "status": status,
        "providers": {"GITHUB": "synced"},
        "github": {"commits": 3},
        "leetcode": None,
        "github_points": 3,
        "leetcode_points": 0,
        "total_points": 3,
        "errors": [],
    }


class _FakeOrchestrator:
    def __init__(self):
        self.calls = []
        self.exc = None

    def sync_subject(self, subject_id, provider=None, trigger="USER"):
        self.calls.append((subject_id, provider, trigger))
        if self.exc is not None:
            raise self.exc
        return _sync_result(subject_id)

    def contribution_calendar(self, subject_id, provider):
        self.calls.append(("calendar", subject_id, provider))
        if self.exc is not None:
            raise self.exc
        return {
            "subject_id": subject_id,
            "provider": provider.value,
            "captured_at": "2025-03-01T12:00:00Z",
            "total": 2,
            "days": [{"date": "2025-02-28", "count": 2, "level": 1}],
        }


class _FakeActivities:
    def __init__(self):
        self.calls = []

    def get_subject_feed(self, subject_id, limit=50):
        self.calls.append(("user", subject_id, limit))
        return {"activities": [{"id": "github-s-1-0"}], "total": 1, "cached": False}

    def get_global_feed(self, limit=50, offset=0, activity_filter="all"):
        self.calls.append(("global", limit, offset, activity_filter))
        return {
            "activities": [],
            "total": 0,
            "has_more": False,
            "cached": False,
            "building": True,
            "built_at": None,
        }


class _FakeLeaderboards:
    def __init__(self):
        self.calls = []

    def get_leaderboard(self, dimension, period, limit=None):
        self.calls.append((dimension, period, limit))
        return {
            "dimension": dimension.value,
            "period": period.value,
            "built_at": "2025-03-01T12:00:00Z",
            "total": 1,
            "entries": [
                {"rank": 1, "subject_id": "s-1", "value": 12, "points": 12, "display_stats": {"name": "Ada"}}
            ],
            "source": "cache",
        }


class _FakeTracker:
    def __init__(self):
        self.exc = None

    def run_bootcamp_cycle(self):
        return [{"bootcamp_id": "b-1", "name": "Spring", "synced": 2, "errors": []}]

    def register(self, bootcamp_id, subject_id):
        if self.exc is not None:
            raise self.exc
        return {
            "bootcamp_id": bootcamp_id,
            "subject_id": subject_id,
            "registered_at": datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc),
            "baseline_stats": {"solved_easy": 4},
        }

    def cancel_bootcamp(self, bootcamp_id):
        return {"bootcamp_id": bootcamp_id, "status": "CANCELLED"}

    def active_bootcamps(self):
        return [{"id": "b-1", "name": "Spring", "status": "ACTIVE", "participant_count": 2}]

    def history(self):
        return [{"id": "b-0", "name": "Winter", "status": "COMPLETED", "podium": [{"rank": 1, "subject_id": "s-1"}]}]

    def leaderboard(self, bootcamp_id):
        return {"bootcamp": {"id": bootcamp_id}, "entries": [{"rank": 1, "subject_id": "s-2", "points": 7}]}

    def participant_progress(self, bootcamp_id, subject_id):
        if subject_id != "s-1":
            raise NotRegistered(bootcamp_id, subject_id)
        return {"bootcamp": {"id": bootcamp_id}, "subject_id": subject_id, "points": 7, "snapshots": []}


@pytest.fixture()
def fakes():
    fakes = {
        "sync": _FakeOrchestrator(),
        "activities": _FakeActivities(),
        "leaderboards": _FakeLeaderboards(),
        "bootcamps": _FakeTracker(),
    }
    api_main.app.dependency_overrides[api_main.get_orchestrator] = lambda: fakes["sync"]
    api_main.app.dependency_overrides[api_main.get_activity_service] = lambda: fakes["activities"]
    api_main.app.dependency_overrides[api_main.get_leaderboard_service] = lambda: fakes["leaderboards"]
    api_main.app.dependency_overrides[api_main.get_bootcamp_tracker] = lambda: fakes["bootcamps"]
    yield fakes
    api_main.app.dependency_overrides.clear()


@pytest.fixture()
def client(fakes):
    return TestClient(api_main.app)


def test_status_code_for_error_expected():
    assert api_main.status_code_for_error(RateLimited(5)) == 429
    assert api_main.status_code_for_error(MissingUsername("s-1")) == 400
    assert api_main.status_code_for_error(SubjectNotFound("s-1")) == 404
    assert api_main.status_code_for_error(AlreadyRegistered("dup")) == 409
    assert api_main.status_code_for_error(UpstreamError("GITHUB", "boom")) == 502
    assert api_main.status_code_for_error(CacheUnavailable()) == 503


def test_sync_requires_subject_header_expected(client):
    resp = client.post("/api/v1/sync")
    assert resp.status_code == 401


def test_sync_defaults_to_user_trigger_expected(client, fakes):
    resp = client.post("/api/v1/sync", headers={"X-Subject-Id": "s-1"})

    assert resp.status_code == 200
    assert resp.json()["total_points"] == 3
    assert fakes["sync"].calls == [("s-1", None, "USER")]


def test_sync_body_normalizes_provider_and_trigger_expected(client, fakes):
    resp = client.post(
        "/api/v1/sync",
        headers={"X-Subject-Id": "s-1"},
        json={"provider": " github ", "trigger": "visit"},
    )

    assert resp.status_code == 200
    assert fakes["sync"].calls == [("s-1", "GITHUB", "VISIT")]


def test_sync_rejects_unknown_provider_expected(client):
    resp = client.post("/api/v1/sync", headers={"X-Subject-Id": "s-1"}, json={"provider": "gitlab"})
    assert resp.status_code == 422


def test_sync_rate_limited_sets_retry_after_expected(client, fakes):
    fakes["sync"].exc = RateLimited(360)

    resp = client.post("/api/v1/sync", headers={"X-Subject-Id": "s-1"})

    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "360"
    assert resp.json()["error"] == "RateLimited"


def test_sync_error_details_expected(client, fakes):
    fakes["sync"].exc = UpstreamError("GITHUB", "GitHub HTTP 503", status_code=503)
    upstream = client.post("/api/v1/sync", headers={"X-Subject-Id": "s-1"})

    fakes["sync"].exc = CacheUnavailable("redis down")
    internal = client.post("/api/v1/sync", headers={"X-Subject-Id": "s-1"})

    fakes["sync"].exc = SubjectNotFound("s-1")
    missing = client.post("/api/v1/sync", headers={"X-Subject-Id": "s-1"})

    assert upstream.status_code == 502
    assert upstream.json()["detail"] == "GitHub HTTP 503"
    assert internal.status_code == 503
    assert internal.json()["detail"] == "Internal error"
    assert missing.status_code == 404


def test_api_auth_token_enforced_when_configured_expected(client, monkeypatch):
    monkeypatch.setattr("clubstats.shared.config.API_AUTH_TOKEN", "secret")

    denied = client.get("/api/v1/leaderboard")
    wrong = client.get("/api/v1/leaderboard", headers={"Authorization": "Bearer nope"})
    allowed = client.get("/api/v1/leaderboard", headers={"Authorization": "Bearer secret"})

    assert denied.status_code == 401
    assert wrong.status_code == 401
    assert allowed.status_code == 200


def test_leaderboard_parses_dimension_and_period_expected(client, fakes):
    resp = client.get("/api/v1/leaderboard", params={"dimension": "leetcode", "period": "all_time", "limit": 5})

    assert resp.status_code == 200
    assert resp.json()["entries"][0]["subject_id"] == "s-1"
    dimension, period, limit = fakes["leaderboards"].calls[0]
    assert (dimension.value, period.value, limit) == ("LEETCODE", "all-time", 5)


@pytest.mark.parametrize("params", [{"dimension": "karma"}, {"period": "yearly"}])
def test_leaderboard_rejects_unknown_arguments_expected(client, params):
    resp = client.get("/api/v1/leaderboard", params=params)
    assert resp.status_code == 400


def test_activities_user_scope_uses_header_expected(client, fakes):
    resp = client.get("/api/v1/activities", params={"scope": "user"}, headers={"X-Subject-Id": "s-1"})

    assert resp.status_code == 200
    assert resp.json()["scope"] == "user"
    assert fakes["activities"].calls == [("user", "s-1", 50)]


def test_activities_user_scope_requires_subject_expected(client):
    resp = client.get("/api/v1/activities", params={"scope": "user"})
    assert resp.status_code == 400


def test_activities_global_scope_passes_filter_expected(client, fakes):
    resp = client.get("/api/v1/activities", params={"filter": "commits", "limit": 10, "offset": 20})

    assert resp.status_code == 200
    assert resp.json()["building"] is True
    assert fakes["activities"].calls == [("global", 10, 20, "commits")]


def test_bootcamp_sync_cycle_expected(client):
    resp = client.post("/api/v1/bootcamps/sync")

    assert resp.status_code == 200
    assert resp.json() == [{"bootcamp_id": "b-1", "name": "Spring", "synced": 2, "errors": []}]


def test_bootcamp_register_expected(client, fakes):
    resp = client.post("/api/v1/bootcamps/b-1/register", headers={"X-Subject-Id": "s-1"})

    assert resp.status_code == 200
    assert resp.json()["registered_at"] == "2025-03-01T12:00:00Z"

    fakes["bootcamps"].exc = AlreadyRegistered("Subject s-1 is already registered for b-1")
    conflict = client.post("/api/v1/bootcamps/b-1/register", headers={"X-Subject-Id": "s-1"})
    assert conflict.status_code == 409


def test_bootcamp_cancel_expected(client):
    resp = client.post("/api/v1/bootcamps/b-1/cancel")
    assert resp.json() == {"bootcamp_id": "b-1", "status": "CANCELLED"}


def test_bootcamp_read_endpoints_expected(client):
    active = client.get("/api/v1/bootcamps/active")
    history = client.get("/api/v1/bootcamps/history")
    board = client.get("/api/v1/bootcamps/b-1/leaderboard")

    assert active.json()[0]["participant_count"] == 2
    assert history.json()[0]["podium"] == [{"rank": 1, "subject_id": "s-1"}]
    assert board.json()["entries"] == [{"rank": 1, "subject_id": "s-2", "points": 7}]


def test_bootcamp_my_progress_uses_subject_header_expected(client):
    assert client.get("/api/v1/bootcamps/b-1/my-progress").status_code == 401

    resp = client.get("/api/v1/bootcamps/b-1/my-progress", headers={"X-Subject-Id": "s-1"})
    assert resp.status_code == 200
    assert resp.json()["points"] == 7

    missing = client.get("/api/v1/bootcamps/b-1/my-progress", headers={"X-Subject-Id": "s-9"})
    assert missing.status_code == 404
    assert missing.json()["error"] == "NotRegistered"


def test_contributions_reads_provider_and_subject_expected(client, fakes):
    resp = client.get("/api/v1/contributions", params={"provider": "leetcode", "subject_id": "s-2"})

    assert resp.status_code == 200
    assert resp.json()["days"] == [{"date": "2025-02-28", "count": 2, "level": 1}]
    assert fakes["sync"].calls == [("calendar", "s-2", Provider.LEETCODE)]

    header = client.get("/api/v1/contributions", headers={"X-Subject-Id": "s-1"})
    assert header.status_code == 200
    assert fakes["sync"].calls[-1] == ("calendar", "s-1", Provider.GITHUB)


def test_contributions_rejects_bad_arguments_expected(client, fakes):
    assert client.get("/api/v1/contributions", params={"provider": "gitlab", "subject_id": "s-1"}).status_code == 400
    assert client.get("/api/v1/contributions").status_code == 400

    fakes["sync"].exc = SubjectNotFound("nobody")
    assert client.get("/api/v1/contributions", params={"subject_id": "nobody"}).status_code == 404


def test_health_reports_database_state_expected(client, monkeypatch):
    class _Session:
        def execute(self, _stmt):
            return None

    @contextmanager
    def _fake_db_session():
        yield _Session()

    monkeypatch.setattr(api_main, "db_session", _fake_db_session)
    healthy = client.get("/health")

    @contextmanager
    def _broken_db_session():
        raise RuntimeError("db down")
        yield

    monkeypatch.setattr(api_main, "db_session", _broken_db_session)
    degraded = client.get("/health")

    assert healthy.status_code == 200
    assert healthy.json()["status"] == "healthy"
    assert healthy.json()["redis"] is None
    assert degraded.status_code == 503
    assert degraded.json()["database"] is False
