"""
Stat sync orchestration

Per (subject, provider) state machine: STALE -> SYNCING -> SYNCED | FAILED.
A sync fetches through the provider client, normalizes, persists the current
snapshot plus a history row, then runs cache side effects. Side effects are
logged on failure and never fail the sync.
"""

import logging
import math
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from clubstats.shared import store
from clubstats.shared.activities import ActivityFeedService
from clubstats.shared.caching import get_cache, user_feed_key
from clubstats.shared.config import (
    PASSIVE_STALE_SECONDS,
    SUBJECT_LOCK_TTL_SECONDS,
    SUBJECT_LOCK_WAIT_TIMEOUT_SECONDS,
    USER_SYNC_MIN_INTERVAL_SECONDS,
    VISIT_STALE_SECONDS,
)
from clubstats.shared.database import db_session
from clubstats.shared.errors import MissingUsername, RateLimited, SubjectNotFound, SyncError
from clubstats.shared.github_client import GitHubClient
from clubstats.shared.leaderboards import all_leaderboard_keys
from clubstats.shared.leetcode_client import LeetCodeClient
from clubstats.shared.locks import acquire_subject_lock, release_subject_lock
from clubstats.shared.normalizer import normalize
from clubstats.shared.ranking import github_points, leetcode_points
from clubstats.shared.snapshots import Provider, SyncState, SyncStatus, to_iso8601_z


logger = logging.getLogger("sync")


class SyncTrigger(str, Enum):
    PASSIVE = "PASSIVE"
    VISIT = "VISIT"
    USER = "USER"
    FORCED = "FORCED"


STALE_WINDOWS = {
    SyncTrigger.PASSIVE: timedelta(seconds=PASSIVE_STALE_SECONDS),
    SyncTrigger.VISIT: timedelta(seconds=VISIT_STALE_SECONDS),
}

USER_SYNC_INTERVAL = timedelta(seconds=USER_SYNC_MIN_INTERVAL_SECONDS)

_LEADERBOARD_FIELDS = {
    Provider.GITHUB: ("commits", "pull_requests", "issues"),
    Provider.LEETCODE: ("solved_easy", "solved_medium", "solved_hard"),
}


def _utc_now():
    return datetime.now(timezone.utc)


def is_due(state: Optional[SyncState], trigger, now: datetime, stale_windows=None) -> bool:
    """
    Decide whether a (subject, provider) pair should be fetched

    Args:
        state (SyncState): Stored state or None when never synced
        trigger (SyncTrigger): What asked for the sync
        now (datetime): Current time
        stale_windows (dict): Trigger -> timedelta override

    Returns:
        bool
    """
    trigger = SyncTrigger(trigger)
    if trigger in (SyncTrigger.USER, SyncTrigger.FORCED):
        return True
    if state is None or state.last_synced_at is None:
        return True
    window = (stale_windows or STALE_WINDOWS)[trigger]
    return now - state.last_synced_at > window


def user_gate_retry_after(state: Optional[SyncState], now: datetime) -> int:
    """
    Seconds until an explicit user sync is allowed again, 0 when open
    """
    if state is None or state.next_eligible_at is None:
        return 0
    remaining = (state.next_eligible_at - now).total_seconds()
    if remaining <= 0:
        return 0
    return max(1, math.ceil(remaining))


def leaderboard_relevant_change(provider, previous, current) -> bool:
    """
    True when the sync moved a value that any leaderboard sorts on
    """
    fields = _LEADERBOARD_FIELDS[Provider(provider)]
    for name in fields:
        before = getattr(previous, name, 0) if previous is not None else 0
        if getattr(current, name, 0) != before:
            return True
    return False


def _points(provider, snapshot) -> int:
    if provider == Provider.GITHUB:
        return github_points(snapshot)
    return leetcode_points(snapshot)


class SyncOrchestrator:
    """
    Runs provider syncs for subjects

    Collaborators are injectable so the orchestrator can run against fakes.
    """

    def __init__(
        self,
        session_factory=db_session,
        cache=None,
        clients=None,
        activity_service=None,
        now_fn=_utc_now,
        acquire_lock=acquire_subject_lock,
        release_lock=release_subject_lock,
        lock_ttl_seconds=SUBJECT_LOCK_TTL_SECONDS,
        lock_wait_timeout_seconds=SUBJECT_LOCK_WAIT_TIMEOUT_SECONDS,
    ):
        self._session_factory = session_factory
        self._cache = cache or get_cache()
        self._clients = clients or {Provider.GITHUB: GitHubClient(), Provider.LEETCODE: LeetCodeClient()}
        self._activities = activity_service or ActivityFeedService(
            session_factory=session_factory,
            cache=self._cache,
            github_client=self._clients.get(Provider.GITHUB),
            now_fn=now_fn,
        )
        self._now = now_fn
        self._acquire_lock = acquire_lock
        self._release_lock = release_lock
        self.lock_ttl_seconds = lock_ttl_seconds
        self.lock_wait_timeout_seconds = lock_wait_timeout_seconds

    def _load_subject(self, subject_id) -> Dict[str, Any]:
        with self._session_factory() as session:
            subject = store.get_subject(session, subject_id)
        if subject is None:
            raise SubjectNotFound(subject_id)
        return subject

    def _load_state(self, subject_id, provider):
        with self._session_factory() as session:
            return store.get_sync_state(session, subject_id, provider)

    def _load_snapshot(self, subject_id, provider):
        with self._session_factory() as session:
            return store.get_current_snapshot(session, subject_id, provider)

    def _save_state(self, state: SyncState) -> None:
        with self._session_factory() as session:
            store.save_sync_state(session, state)

    def _check_user_gate(self, state, now) -> None:
        retry_after = user_gate_retry_after(state, now)
        if retry_after > 0:
            raise RateLimited(retry_after, f"Sync available again in {retry_after}s")

    def _mark_failed(self, state: SyncState, error) -> None:
        state.status = SyncStatus.FAILED
        state.last_sync_ok = False
        state.last_error = str(error)[:500] if error is not None else "interrupted"
        try:
            self._save_state(state)
        except Exception:
            logger.error(
                "sync_states failed update failed",
                extra={"subject_id": state.subject_id, "provider": state.provider.value},
                exc_info=True,
            )

    def _run_side_effects(self, subject, provider, previous, snapshot) -> None:
        subject_id = subject["id"]

        try:
            self._cache.clear(user_feed_key(subject_id))
        except Exception:
            logger.warning("sync side effect failed: clear user feed", extra={"subject_id": subject_id}, exc_info=True)

        if provider == Provider.GITHUB:
            try:
                self._activities.merge_subject_into_global(subject)
            except Exception:
                logger.warning(
                    "sync side effect failed: merge global feed", extra={"subject_id": subject_id}, exc_info=True
                )

        if leaderboard_relevant_change(provider, previous, snapshot):
            try:
                self._cache.clear_many(all_leaderboard_keys())
            except Exception:
                logger.warning(
                    "sync side effect failed: clear leaderboards", extra={"subject_id": subject_id}, exc_info=True
                )

    def sync_provider(self, subject, provider, trigger=SyncTrigger.PASSIVE) -> Dict[str, Any]:
        """
        Sync one provider for one subject

        Args:
            subject (dict): Subject row from store.get_subject
            provider (Provider): Provider to sync
            trigger (SyncTrigger): What asked for the sync

        Returns:
            dict with status (synced, skipped, locked) and snapshot

        Raises:
            MissingUsername: Subject has no username for provider
            RateLimited: USER trigger inside the minimum interval
            NotFound / UpstreamError / RateLimited: Provider failure; state is FAILED
        """
        provider = Provider(provider)
        trigger = SyncTrigger(trigger)
        subject_id = str(subject["id"])
        username = subject.get(store.username_column(provider))
        if not username:
            raise MissingUsername(subject_id, provider.value)

        now = self._now()
        state = self._load_state(subject_id, provider)
        if trigger == SyncTrigger.USER:
            self._check_user_gate(state, now)
        if not is_due(state, trigger, now):
            return {"status": "skipped", "snapshot": self._load_snapshot(subject_id, provider)}

        try:
            lock_value = self._acquire_lock(
                subject_id,
                provider,
                ttl_seconds=self.lock_ttl_seconds,
                wait_timeout_seconds=self.lock_wait_timeout_seconds,
            )
        except TimeoutError:
            logger.info(
                "sync skipped: per-subject lock held",
                extra={"subject_id": subject_id, "provider": provider.value, "trigger": trigger.value},
            )
            return {"status": "locked", "snapshot": self._load_snapshot(subject_id, provider)}

        try:
            # another worker may have finished while we waited for the lock
            state = self._load_state(subject_id, provider)
            if trigger == SyncTrigger.USER:
                self._check_user_gate(state, now)
            if not is_due(state, trigger, now):
                return {"status": "skipped", "snapshot": self._load_snapshot(subject_id, provider)}

            state = state or SyncState(subject_id=subject_id, provider=provider)
            state.status = SyncStatus.SYNCING
            if trigger == SyncTrigger.USER:
                state.next_eligible_at = now + USER_SYNC_INTERVAL
            self._save_state(state)

            return self._fetch_and_store(subject, provider, username, state, trigger)
        finally:
            self._release_lock(subject_id, provider, lock_value)

    def _fetch_and_store(self, subject, provider, username, state, trigger) -> Dict[str, Any]:
        subject_id = state.subject_id
        started = time.monotonic()
        finished = False
        try:
            raw = self._clients[provider].fetch_contributions(username)
            captured_at = self._now()
            snapshot = normalize(provider, raw, subject_id=subject_id, captured_at=captured_at)

            with self._session_factory() as session:
                previous = store.get_current_snapshot(session, subject_id, provider)
                store.save_snapshot(session, snapshot)
                state.status = SyncStatus.SYNCED
                state.last_synced_at = captured_at
                state.last_sync_ok = True
                state.last_error = None
                store.save_sync_state(session, state)
            finished = True
        except Exception as exc:
            finished = True
            logger.warning(
                "sync failed",
                extra={
                    "subject_id": subject_id,
                    "provider": provider.value,
                    "trigger": trigger.value,
                    "error": type(exc).__name__,
                },
            )
            self._mark_failed(state, exc)
            raise
        finally:
            if not finished:
                self._mark_failed(state, None)

        self._run_side_effects(subject, provider, previous, snapshot)

        logger.info(
            "sync completed",
            extra={
                "subject_id": subject_id,
                "provider": provider.value,
                "trigger": trigger.value,
                "approximate": snapshot.approximate,
                "duration_seconds": round(time.monotonic() - started, 3),
            },
        )
        return {"status": "synced", "snapshot": snapshot}

    def sync_subject(self, subject_id, provider=None, trigger=SyncTrigger.USER) -> Dict[str, Any]:
        """
        Sync one subject and return composite stats

        Args:
            subject_id (str): Subject id
            provider (Provider): Single provider; None means every provider with a username
            trigger (SyncTrigger): What asked for the sync

        Returns:
            dict with status, per-provider results, snapshots and points

        Raises:
            SubjectNotFound, MissingUsername, RateLimited (user gate), and the
            provider error when every requested provider failed
        """
        trigger = SyncTrigger(trigger)
        subject = self._load_subject(subject_id)
        subject_id = str(subject["id"])

        if provider is not None:
            provider = Provider(provider)
            if not subject.get(store.username_column(provider)):
                raise MissingUsername(subject_id, provider.value)
            providers = [provider]
        else:
            providers = [p for p in Provider if subject.get(store.username_column(p))]
            if not providers:
                raise MissingUsername(subject_id)

        if trigger == SyncTrigger.USER:
            now = self._now()
            waits = [user_gate_retry_after(self._load_state(subject_id, p), now) for p in providers]
            if max(waits) > 0:
                raise RateLimited(max(waits), f"Sync available again in {max(waits)}s")

        results = {}
        failures: List[SyncError] = []
        errors = []
        for p in providers:
            try:
                results[p] = self.sync_provider(subject, p, trigger)
            except SyncError as exc:
                failures.append(exc)
                errors.append({"provider": p.value, "error": str(exc), "type": type(exc).__name__})
                results[p] = {"status": "failed", "snapshot": self._load_snapshot(subject_id, p)}

        if failures and len(failures) == len(providers):
            raise failures[0]

        statuses = {result["status"] for result in results.values()}
        if failures:
            status = "partial"
        elif statuses == {"locked"}:
            status = "locked"
        elif "synced" in statuses:
            status = "ok"
        else:
            status = "skipped"

        github = results.get(Provider.GITHUB, {}).get("snapshot")
        leetcode = results.get(Provider.LEETCODE, {}).get("snapshot")
        gh_points = github_points(github)
        lc_points = leetcode_points(leetcode)

        return {
            "subject_id": subject_id,
            "status": status,
            "providers": {p.value: result["status"] for p, result in results.items()},
            "github": github.to_dict() if github else None,
            "leetcode": leetcode.to_dict() if leetcode else None,
            "github_points": gh_points,
            "leetcode_points": lc_points,
            "total_points": gh_points + lc_points,
            "errors": errors,
        }

    def sync_stale(self, provider=None, trigger=SyncTrigger.PASSIVE, page_size=500) -> Dict[str, Any]:
        """
        Sync every subject that is due under trigger

        Continues past per-subject failures

        Args:
            provider (Provider): Single provider; None means all providers
            trigger (SyncTrigger): PASSIVE or VISIT select the stale window; USER/FORCED sync everyone
            page_size (int): Keyset page size for the subject scan

        Returns:
            dict with synced, skipped, failed counts and errors list
        """
        trigger = SyncTrigger(trigger)
        providers = [Provider(provider)] if provider is not None else list(Provider)
        now = self._now()
        window = STALE_WINDOWS.get(trigger)
        # USER/FORCED: every subject with a username is due
        stale_before = now - window if window is not None else now + timedelta(days=1)

        summary = {"synced": 0, "skipped": 0, "failed": 0, "errors": []}
        for p in providers:
            after_id = None
            while True:
                with self._session_factory() as session:
                    subject_ids = store.list_due_subject_ids(
                        session, p, stale_before=stale_before, after_id=after_id, limit=page_size
                    )
                if not subject_ids:
                    break
                after_id = subject_ids[-1]

                for subject_id in subject_ids:
                    try:
                        subject = self._load_subject(subject_id)
                        result = self.sync_provider(subject, p, trigger)
                    except Exception as exc:
                        summary["failed"] += 1
                        summary["errors"].append({"subject_id": subject_id, "provider": p.value, "error": str(exc)})
                        if not isinstance(exc, SyncError):
                            logger.exception(
                                "sync_stale unexpected failure",
                                extra={"subject_id": subject_id, "provider": p.value},
                            )
                        continue
                    if result["status"] == "synced":
                        summary["synced"] += 1
                    else:
                        summary["skipped"] += 1

                if len(subject_ids) < page_size:
                    break

        logger.info(
            "sync_stale completed",
            extra={
                "trigger": trigger.value,
                "synced": summary["synced"],
                "skipped": summary["skipped"],
                "failed": summary["failed"],
            },
        )
        return summary

    def contribution_calendar(self, subject_id, provider) -> Dict[str, Any]:
        """
        Daily contribution calendar stored by the last successful sync

        Args:
            subject_id (str): Subject id
            provider (Provider): Provider whose calendar to read

        Returns:
            dict with subject_id, provider, captured_at, total and days;
            days is empty when the provider has not been synced yet

        Raises:
            SubjectNotFound
        """
        provider = Provider(provider)
        subject = self._load_subject(subject_id)
        with self._session_factory() as session:
            stored = store.get_calendar(session, subject["id"], provider)

        days = stored["days"] if stored else []
        return {
            "subject_id": str(subject["id"]),
            "provider": provider.value,
            "captured_at": to_iso8601_z(stored["captured_at"]) if stored else None,
            "total": sum(int(day.get("count") or 0) for day in days),
            "days": days,
        }
