import argparse
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from clubstats.scheduler.app import main as scheduler_main
from clubstats.shared import store
from clubstats.shared.snapshots import Provider, SyncState, SyncStatus


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class _SqliteEngine:
    class _Dialect:
        name = "sqlite"

    dialect = _Dialect()


class _FakeCelery:
    def __init__(self, failing=()):
        self.sent = []
        self.failing = set(failing)

    def send_task(self, name, args=None, kwargs=None):
        if args and args[0] in self.failing:
            raise RuntimeError("broker down")
        self.sent.append((name, list(args or []), dict(kwargs or {})))


class _FakeRedis:
    def __init__(self):
        self.kv = {}
        self.expiries = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.kv:
            return None
        self.kv[key] = value
        self.expiries[key] = ex
        return True


def test_scheduler_parse_providers_expected():
    assert scheduler_main._parse_providers("") == [Provider.GITHUB, Provider.LEETCODE]
    assert scheduler_main._parse_providers(" leetcode , ") == [Provider.LEETCODE]

    with pytest.raises(ValueError):
        scheduler_main._parse_providers("gitlab")


def test_scheduler_run_lock_skips_on_non_postgres_expected(monkeypatch):
    monkeypatch.setattr(scheduler_main, "ENGINE", _SqliteEngine())

    with scheduler_main._scheduler_run_lock(123, mode_label="passive-sync") as lock_held:
        assert lock_held is True


def test_collect_due_subject_ids_pages_and_dedupes_expected(monkeypatch, session_factory):
    with session_factory() as session:
        for subject_id in ("a", "b", "c"):
            store.upsert_subject(session, subject_id, github_username=subject_id, leetcode_username=subject_id)
        store.save_sync_state(
            session,
            SyncState("b", Provider.GITHUB, SyncStatus.SYNCED, last_synced_at=NOW, last_sync_ok=True),
        )
    monkeypatch.setattr(scheduler_main, "db_session", session_factory)

    due = scheduler_main.collect_due_subject_ids(
        [Provider.GITHUB, Provider.LEETCODE],
        stale_before=NOW - timedelta(days=1),
        page_size=2,
        max_subjects=10,
    )

    assert due == ["a", "b", "c"]

    github_only = scheduler_main.collect_due_subject_ids(
        [Provider.GITHUB], stale_before=NOW - timedelta(days=1), page_size=2, max_subjects=10
    )
    assert github_only == ["a", "c"]


def test_collect_due_subject_ids_over_cap_raises_expected(monkeypatch, session_factory):
    with session_factory() as session:
        for subject_id in ("a", "b", "c"):
            store.upsert_subject(session, subject_id, github_username=subject_id)
    monkeypatch.setattr(scheduler_main, "db_session", session_factory)

    with pytest.raises(RuntimeError, match="MAX_ENQUEUED_JOBS"):
        scheduler_main.collect_due_subject_ids(
            [Provider.GITHUB], stale_before=NOW, page_size=100, max_subjects=2
        )


def test_enqueue_subjects_counts_failures_expected():
    celery_app = _FakeCelery(failing={"b"})

    enqueued, failures = scheduler_main._enqueue_subjects(celery_app, ["a", "b", "c"], "scheduler.passive")

    assert (enqueued, failures) == (2, 1)
    assert celery_app.sent[0] == (
        "sync_subject",
        ["a"],
        {"provider": None, "trigger": "PASSIVE", "triggered_by": "scheduler.passive"},
    )


def test_run_passive_sync_enqueues_due_subjects_expected(monkeypatch, session_factory):
    with session_factory() as session:
        store.upsert_subject(session, "a", github_username="a")
        store.upsert_subject(session, "b", leetcode_username="b")
        store.upsert_subject(session, "c")
    celery_app = _FakeCelery()
    monkeypatch.setattr(scheduler_main, "ENGINE", _SqliteEngine())
    monkeypatch.setattr(scheduler_main, "db_session", session_factory)
    monkeypatch.setattr(scheduler_main, "_create_celery_client", lambda: celery_app)

    args = argparse.Namespace(
        providers="",
        stale_seconds=3600,
        enqueue_batch_size=1,
        enqueue_sleep_seconds=0,
        max_enqueued_jobs=100,
    )
    scheduler_main.run_passive_sync(args)

    assert [sent[1] for sent in celery_app.sent] == [["a"], ["b"]]


def test_claim_bootcamp_slot_once_per_interval_expected(monkeypatch):
    fake_redis = _FakeRedis()
    monkeypatch.setattr(scheduler_main, "get_redis", lambda: fake_redis)

    assert scheduler_main._claim_bootcamp_slot(21600) is True
    assert scheduler_main._claim_bootcamp_slot(21600) is False
    assert fake_redis.expiries[scheduler_main.BOOTCAMP_CADENCE_KEY] == 21600


def test_claim_bootcamp_slot_without_redis_or_on_error_expected(monkeypatch):
    monkeypatch.setattr(scheduler_main, "get_redis", lambda: None)
    assert scheduler_main._claim_bootcamp_slot(60) is True

    class _BrokenRedis:
        def set(self, *args, **kwargs):
            raise RedisConnectionError("down")

    monkeypatch.setattr(scheduler_main, "get_redis", lambda: _BrokenRedis())
    assert scheduler_main._claim_bootcamp_slot(60) is True


def test_run_bootcamp_sync_respects_cadence_unless_forced_expected(monkeypatch):
    fake_redis = _FakeRedis()
    celery_app = _FakeCelery()
    monkeypatch.setattr(scheduler_main, "ENGINE", _SqliteEngine())
    monkeypatch.setattr(scheduler_main, "get_redis", lambda: fake_redis)
    monkeypatch.setattr(scheduler_main, "_create_celery_client", lambda: celery_app)

    scheduler_main.run_bootcamp_sync(argparse.Namespace(interval_seconds=600, force=False))
    scheduler_main.run_bootcamp_sync(argparse.Namespace(interval_seconds=600, force=False))
    assert len(celery_app.sent) == 1

    scheduler_main.run_bootcamp_sync(argparse.Namespace(interval_seconds=600, force=True))
    assert celery_app.sent[-1] == ("bootcamp_cycle", [], {"triggered_by": "scheduler.bootcamp"})
    assert len(celery_app.sent) == 2


def test_build_arg_parser_modes_expected():
    parser = scheduler_main.build_arg_parser()

    passive = parser.parse_args(["passive-sync", "--providers", "github"])
    bootcamp = parser.parse_args(["bootcamp-sync", "--force"])

    assert passive.mode == "passive-sync"
    assert passive.providers == "github"
    assert bootcamp.mode == "bootcamp-sync"
    assert bootcamp.force is True


def test_build_arg_parser_routes_modes_to_handlers_expected():
    parser = scheduler_main.build_arg_parser()

    passive = parser.parse_args(["passive-sync", "--enqueue-batch-size", "5", "--enqueue-sleep-seconds", "0.5"])
    bootcamp = parser.parse_args(["bootcamp-sync", "--interval-seconds", "900"])

    assert passive.handler is scheduler_main.run_passive_sync
    assert (passive.enqueue_batch_size, passive.enqueue_sleep_seconds) == (5, 0.5)
    assert bootcamp.handler is scheduler_main.run_bootcamp_sync
    assert bootcamp.interval_seconds == 900


def test_run_passive_sync_returns_summary_expected(monkeypatch, session_factory):
    with session_factory() as session:
        store.upsert_subject(session, "a", github_username="a")
    celery_app = _FakeCelery(failing={"a"})
    monkeypatch.setattr(scheduler_main, "ENGINE", _SqliteEngine())
    monkeypatch.setattr(scheduler_main, "db_session", session_factory)
    monkeypatch.setattr(scheduler_main, "_create_celery_client", lambda: celery_app)

    args = argparse.Namespace(
        providers="github",
        stale_seconds=60,
        enqueue_batch_size=10,
        enqueue_sleep_seconds=0,
        max_enqueued_jobs=100,
    )
    summary = scheduler_main.run_passive_sync(args)

    assert summary["subjects_due"] == 1
    assert (summary["jobs_enqueued"], summary["enqueue_failures"]) == (0, 1)
