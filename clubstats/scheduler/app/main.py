import argparse
import copy
import datetime
import logging
import os
import time
from contextlib import contextmanager

from celery import Celery
from redis.exceptions import RedisError
from sqlalchemy import text

from clubstats.shared import store
from clubstats.shared.caching import get_redis
from clubstats.shared.celery_config import CELERY_DEFAULT_QUEUE, CELERY_TASK_ROUTES
from clubstats.shared.config import (
    BOOTCAMP_SYNC_INTERVAL_SECONDS,
    PASSIVE_STALE_SECONDS,
    REDIS_URL,
    SCHEDULER_BOOTCAMP_LOCK_ID,
    SCHEDULER_ENQUEUE_BATCH_SIZE,
    SCHEDULER_ENQUEUE_SLEEP_SECONDS,
    SCHEDULER_MAX_ENQUEUED_JOBS,
    SCHEDULER_PASSIVE_LOCK_ID,
    validate_config,
)
from clubstats.shared.database import ENGINE, db_session
from clubstats.shared.snapshots import Provider


logger = logging.getLogger("scheduler")

BOOTCAMP_CADENCE_KEY = "cs:scheduler:bootcamp_cycle"
PASSIVE_TRIGGERED_BY = "scheduler.passive"
BOOTCAMP_TRIGGERED_BY = "scheduler.bootcamp"


def _utc_now():
    return datetime.datetime.now(datetime.timezone.utc)


def _create_celery_client():
    app = Celery("clubstats-scheduler", broker=REDIS_URL)
    app.conf.update(
        task_default_queue=CELERY_DEFAULT_QUEUE,
        task_routes=copy.deepcopy(CELERY_TASK_ROUTES),
    )
    return app


@contextmanager
def _scheduler_run_lock(lock_id, mode_label):
    """
    Hold a session-level Postgres advisory lock while a scheduler mode runs

    Two scheduler containers firing the same cron slot must not both enqueue.
    SQLite has no advisory locks, so the lock is treated as held there.

    Args:
        lock_id (int): Advisory lock key
        mode_label (str): Scheduler mode, for logs

    Yields:
        bool whether this process owns the run
    """
    if ENGINE.dialect.name != "postgresql":
        logger.warning("Scheduler run lock unavailable on %s; continuing unlocked", ENGINE.dialect.name, extra={"mode": mode_label})
        yield True
        return

    params = {"lock_id": int(lock_id)}
    with ENGINE.connect() as connection:
        held = bool(connection.execute(text("SELECT pg_try_advisory_lock(:lock_id)"), params).scalar())
        try:
            yield held
        finally:
            if held:
                try:
                    connection.execute(text("SELECT pg_advisory_unlock(:lock_id)"), params)
                except Exception:
                    # The lock dies with the connection anyway
                    logger.exception("Scheduler run lock release failed", extra={"lock_id": lock_id, "mode": mode_label})


def _parse_providers(raw):
    if not raw:
        return list(Provider)
    return [Provider(part.strip().upper()) for part in str(raw).split(",") if part.strip()]


def _batched(items, size):
    for start in range(0, len(items), size):
        yield items[start : start + size]


def collect_due_subject_ids(providers, stale_before, page_size, max_subjects):
    """
    Subjects due for a passive sync on any of providers

    Args:
        providers (list[Provider]): Providers to check
        stale_before (datetime): Subjects last synced before this are due
        page_size (int): Keyset page size
        max_subjects (int): Upper bound on the number of subjects

    Returns:
        sorted list of subject ids

    Raises:
        RuntimeError: When more than max_subjects are due
    """
    due = set()
    for provider in providers:
        cursor = None
        page = [None] * page_size
        while len(page) == page_size:
            with db_session() as session:
                page = store.list_due_subject_ids(
                    session, provider, stale_before=stale_before, after_id=cursor, limit=page_size
                )
            if page:
                cursor = page[-1]
            due.update(page)
            if len(due) > max_subjects:
                raise RuntimeError(f"MAX_ENQUEUED_JOBS exceeded ({max_subjects})")
    return sorted(due)


def _enqueue_subjects(celery_app, subject_ids, triggered_by):
    sent = 0
    failed = 0
    for subject_id in subject_ids:
        kwargs = {"provider": None, "trigger": "PASSIVE", "triggered_by": triggered_by}
        try:
            celery_app.send_task("sync_subject", args=[subject_id], kwargs=kwargs)
        except Exception as exc:
            failed += 1
            logger.exception(
                "Could not enqueue passive sync",
                extra={"subject_id": subject_id, "error": type(exc).__name__},
            )
            continue
        sent += 1
    return sent, failed


def run_passive_sync(args):
    """
    Enqueue one sync_subject per subject whose snapshot is older than --stale-seconds

    Returns:
        dict run summary, or None when another scheduler holds the run lock
    """
    started = time.monotonic()
    batch_size = max(1, int(args.enqueue_batch_size))
    pause = float(args.enqueue_sleep_seconds)

    with _scheduler_run_lock(SCHEDULER_PASSIVE_LOCK_ID, mode_label="passive-sync") as owned:
        if not owned:
            logger.warning("Passive sync already running elsewhere; exiting", extra={"mode": "passive-sync"})
            return None

        stale_before = _utc_now() - datetime.timedelta(seconds=int(args.stale_seconds))
        subject_ids = collect_due_subject_ids(
            _parse_providers(args.providers),
            stale_before=stale_before,
            page_size=max(batch_size, 100),
            max_subjects=int(args.max_enqueued_jobs),
        )
        logger.info("Passive sync due subjects: %s", len(subject_ids), extra={"mode": "passive-sync"})

        celery_app = _create_celery_client()
        summary = {"subjects_due": len(subject_ids), "jobs_enqueued": 0, "enqueue_failures": 0}
        batches = list(_batched(subject_ids, batch_size))
        for index, batch in enumerate(batches):
            sent, failed = _enqueue_subjects(celery_app, batch, PASSIVE_TRIGGERED_BY)
            summary["jobs_enqueued"] += sent
            summary["enqueue_failures"] += failed
            if pause > 0 and index + 1 < len(batches):
                time.sleep(pause)

        summary["duration_seconds"] = round(time.monotonic() - started, 3)
        logger.info("Passive sync enqueue finished", extra={"mode": "passive-sync", **summary})
        return summary


def _claim_bootcamp_slot(interval_seconds):
    """
    Claim the current bootcamp cadence slot

    Returns:
        bool whether this run may enqueue; always True without Redis
    """
    redis_client = get_redis()
    if redis_client is None:
        return True
    try:
        claimed = redis_client.set(BOOTCAMP_CADENCE_KEY, _utc_now().isoformat(), nx=True, ex=int(interval_seconds))
    except RedisError as exc:
        logger.warning("Bootcamp cadence check failed; enqueueing anyway", extra={"error": type(exc).__name__})
        return True
    return bool(claimed)


def run_bootcamp_sync(args):
    """
    Enqueue a bootcamp_cycle once per cadence interval
    """
    with _scheduler_run_lock(SCHEDULER_BOOTCAMP_LOCK_ID, mode_label="bootcamp-sync") as owned:
        if not owned:
            logger.warning("Bootcamp sync already running elsewhere; exiting", extra={"mode": "bootcamp-sync"})
            return False

        if not args.force and not _claim_bootcamp_slot(int(args.interval_seconds)):
            logger.info("Bootcamp cycle ran within the last interval; skipping", extra={"mode": "bootcamp-sync"})
            return False

        _create_celery_client().send_task("bootcamp_cycle", kwargs={"triggered_by": BOOTCAMP_TRIGGERED_BY})
        logger.info("Bootcamp cycle enqueued", extra={"mode": "bootcamp-sync", "forced": bool(args.force)})
        return True


def build_arg_parser():
    parser = argparse.ArgumentParser(prog="clubstats-scheduler")
    subparsers = parser.add_subparsers(dest="mode", required=True)

    passive = subparsers.add_parser("passive-sync", help="Enqueue one sync per subject with stale stats")
    passive.add_argument("--providers", default="", help="Comma-separated providers (default: all)")
    passive.add_argument("--stale-seconds", type=int, default=PASSIVE_STALE_SECONDS)
    passive.add_argument("--enqueue-batch-size", type=int, default=SCHEDULER_ENQUEUE_BATCH_SIZE)
    passive.add_argument("--enqueue-sleep-seconds", type=float, default=SCHEDULER_ENQUEUE_SLEEP_SECONDS)
    passive.add_argument("--max-enqueued-jobs", type=int, default=SCHEDULER_MAX_ENQUEUED_JOBS)
    passive.set_defaults(handler=run_passive_sync)

    bootcamp = subparsers.add_parser("bootcamp-sync", help="Enqueue the bootcamp status + progress cycle")
    bootcamp.add_argument("--interval-seconds", type=int, default=BOOTCAMP_SYNC_INTERVAL_SECONDS)
    bootcamp.add_argument("--force", action="store_true", help="Ignore the cadence interval")
    bootcamp.set_defaults(handler=run_bootcamp_sync)

    return parser


def main():
    logging.basicConfig(level=str(os.getenv("LOG_LEVEL", "INFO")).upper())
    validate_config()

    args = build_arg_parser().parse_args()
    args.handler(args)


if __name__ == "__main__":
    main()
