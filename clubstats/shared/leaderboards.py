import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List

from clubstats.shared import store
from clubstats.shared.caching import get_cache, leaderboard_key
from clubstats.shared.config import BUILD_LOCK_TTL_SECONDS, BUILD_LOCK_WAIT_SECONDS, LEADERBOARD_MAX_ENTRIES
from clubstats.shared.database import db_session
from clubstats.shared.ranking import Dimension, Period, SubjectStats, period_window_start, rank, snapshot_delta
from clubstats.shared.snapshots import Provider, to_iso8601_z


logger = logging.getLogger("leaderboards")


def _utc_now():
    return datetime.now(timezone.utc)


def all_leaderboard_keys() -> List[str]:
    return [leaderboard_key(dimension, period) for dimension in Dimension for period in Period]


def load_subject_stats(session, period, now) -> List[SubjectStats]:
    """
    Build ranking inputs from stored snapshots

    Windowed periods get delta snapshots against the baseline at the window
    start; ALL_TIME uses the current snapshots as-is.

    Args:
        session: SQLAlchemy session
        period (Period): Leaderboard period
        now (datetime): Reference time for the window

    Returns:
        list[SubjectStats]
    """
    period = Period(period)
    current = store.get_current_snapshots(session)
    window_start = period_window_start(period, now)

    baselines = {}
    if window_start is not None:
        for provider in Provider:
            baselines[provider] = store.get_baseline_snapshots(session, provider, window_start)

    stats = []
    for subject in store.list_subjects(session):
        subject_id = str(subject["id"])
        blocks = {}
        for provider in Provider:
            snapshot = current.get((subject_id, provider))
            if snapshot is not None and window_start is not None:
                snapshot = snapshot_delta(snapshot, baselines[provider].get(subject_id))
            blocks[provider] = snapshot

        stats.append(
            SubjectStats(
                subject_id=subject_id,
                name=subject.get("name"),
                avatar_url=subject.get("avatar_url"),
                github_username=subject.get("github_username"),
                leetcode_username=subject.get("leetcode_username"),
                github=blocks[Provider.GITHUB],
                leetcode=blocks[Provider.LEETCODE],
                experience=int(subject.get("experience") or 0),
                streak=int(subject.get("streak") or 0),
            )
        )
    return stats


class LeaderboardService:
    """
    Serves leaderboard pages through the tiered cache

    On a miss one caller builds under the build lock. Others poll the cache,
    then fall back to the last persisted build, then compute without caching.
    """

    def __init__(
        self,
        session_factory=db_session,
        cache=None,
        now_fn=_utc_now,
        sleep_fn=time.sleep,
        max_entries=LEADERBOARD_MAX_ENTRIES,
        lock_wait_seconds=BUILD_LOCK_WAIT_SECONDS,
        poll_interval_seconds=0.2,
    ):
        self._session_factory = session_factory
        self._cache = cache or get_cache()
        self._now = now_fn
        self._sleep = sleep_fn
        self.max_entries = int(max_entries)
        self.lock_wait_seconds = float(lock_wait_seconds)
        self.poll_interval_seconds = float(poll_interval_seconds)

    def compute(self, dimension, period) -> Dict[str, Any]:
        dimension = Dimension(dimension)
        period = Period(period)
        now = self._now()

        with self._session_factory() as session:
            subjects = load_subject_stats(session, period, now)

        entries = rank(subjects, dimension, period)[: self.max_entries]
        return {
            "dimension": dimension.value,
            "period": period.value,
            "built_at": to_iso8601_z(now),
            "total": len(entries),
            "entries": [entry.to_dict() for entry in entries],
        }

    def _build(self, key, dimension, period) -> Dict[str, Any]:
        started = time.monotonic()
        payload = self.compute(dimension, period)
        self._cache.set(key, payload)
        try:
            with self._session_factory() as session:
                store.save_leaderboard_row(session, payload["dimension"], payload["period"], payload, self._now())
        except Exception:
            logger.warning(
                "leaderboard fallback row write failed",
                extra={"dimension": payload["dimension"], "period": payload["period"]},
                exc_info=True,
            )
        logger.info(
            "leaderboard rebuilt",
            extra={
                "dimension": payload["dimension"],
                "period": payload["period"],
                "entries": payload["total"],
                "duration_seconds": round(time.monotonic() - started, 3),
            },
        )
        return payload

    def _wait_for_cache(self, key):
        deadline = time.monotonic() + self.lock_wait_seconds
        while time.monotonic() < deadline:
            self._sleep(self.poll_interval_seconds)
            payload = self._cache.get(key)
            if isinstance(payload, dict):
                return payload
        return None

    def _fallback_row(self, dimension, period):
        with self._session_factory() as session:
            row = store.get_leaderboard_row(session, dimension.value, period.value)
        return row["payload"] if row else None

    def get_leaderboard(self, dimension=Dimension.POINTS, period=Period.ALL_TIME, limit=None) -> Dict[str, Any]:
        """
        Leaderboard for one dimension and period

        Args:
            dimension (Dimension): Value to rank on
            period (Period): Time window
            limit (int): Optional cap on returned entries

        Returns:
            dict with dimension, period, built_at, total, entries and source
            (cache, built, stale or computed)
        """
        dimension = Dimension(dimension)
        period = Period(period)
        key = leaderboard_key(dimension, period)

        payload = self._cache.get(key)
        source = "cache"

        if not isinstance(payload, dict):
            token = self._cache.try_acquire_build_lock(key, ttl_seconds=BUILD_LOCK_TTL_SECONDS)
            if token:
                try:
                    payload = self._build(key, dimension, period)
                    source = "built"
                finally:
                    self._cache.release_build_lock(key, token)
            else:
                payload = self._wait_for_cache(key)
                if payload is None:
                    payload = self._fallback_row(dimension, period)
                    source = "stale"
                if payload is None:
                    payload = self.compute(dimension, period)
                    source = "computed"

        result = dict(payload)
        if limit is not None:
            result["entries"] = list(payload.get("entries") or [])[: max(0, int(limit))]
        result["source"] = source
        return result

    def invalidate_all(self) -> None:
        self._cache.clear_many(all_leaderboard_keys())
