import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List

from clubstats.shared import store
from clubstats.shared.caching import GLOBAL_FEED_KEY, get_cache, user_feed_key
from clubstats.shared.config import (
    BUILD_LOCK_TTL_SECONDS,
    BUILD_LOCK_WAIT_SECONDS,
    GLOBAL_FEED_MAX_ITEMS,
    RECENT_ACTIVITY_PER_SUBJECT,
)
from clubstats.shared.database import db_session
from clubstats.shared.errors import MissingUsername, NotFound, RateLimited, SubjectNotFound, UpstreamError
from clubstats.shared.github_client import GitHubClient
from clubstats.shared.snapshots import Provider, parse_utc, to_iso8601_z


logger = logging.getLogger("activities")

ACTIVITY_FILTERS = {
    "all": None,
    "commits": "commit",
    "pull_requests": "pull request",
    "issues": "issue",
}


def _utc_now():
    return datetime.now(timezone.utc)


def build_subject_items(subject, recent_activity) -> List[Dict[str, Any]]:
    """
    Turn provider activity into feed items tagged with the subject

    Args:
        subject (dict): Subject row
        recent_activity (list): Output of GitHubClient.fetch_recent_activity

    Returns:
        list of feed items
    """
    subject_id = str(subject["id"])
    items = []
    for index, activity in enumerate(recent_activity or []):
        try:
            timestamp = to_iso8601_z(parse_utc(activity.get("date")))
        except (TypeError, ValueError):
            timestamp = None
        items.append(
            {
                "id": f"github-{subject_id}-{index}",
                "subject_id": subject_id,
                "type": str(activity.get("type") or "unknown").lower(),
                "message": activity.get("message"),
                "repo": activity.get("repo"),
                "timestamp": timestamp,
                "source": "github",
                "user": {
                    "name": subject.get("name") or "Anonymous",
                    "github_username": subject.get("github_username"),
                    "avatar_url": subject.get("avatar_url"),
                },
            }
        )
    return items


def apply_filter(items, activity_filter) -> List[Dict[str, Any]]:
    wanted = ACTIVITY_FILTERS.get(activity_filter or "all")
    if wanted is None:
        return list(items)
    return [item for item in items if item.get("type") == wanted]


class ActivityFeedService:
    """
    Per-subject and global activity feeds served through the tiered cache
    """

    def __init__(
        self,
        session_factory=db_session,
        cache=None,
        github_client=None,
        now_fn=_utc_now,
        sleep_fn=time.sleep,
        max_items=GLOBAL_FEED_MAX_ITEMS,
        per_subject=RECENT_ACTIVITY_PER_SUBJECT,
        lock_wait_seconds=BUILD_LOCK_WAIT_SECONDS,
    ):
        self._session_factory = session_factory
        self._cache = cache or get_cache()
        self._github = github_client or GitHubClient()
        self._now = now_fn
        self._sleep = sleep_fn
        self.max_items = int(max_items)
        self.per_subject = int(per_subject)
        self.lock_wait_seconds = float(lock_wait_seconds)

    def _fetch_subject_items(self, subject):
        activity = self._github.fetch_recent_activity(subject["github_username"], limit=self.per_subject)
        return build_subject_items(subject, activity)

    def get_subject_feed(self, subject_id, limit=30) -> Dict[str, Any]:
        key = user_feed_key(subject_id)
        cached = self._cache.get(key)
        if isinstance(cached, list):
            return {"activities": cached[:limit], "total": len(cached), "cached": True}

        with self._session_factory() as session:
            subject = store.get_subject(session, subject_id)
        if subject is None:
            raise SubjectNotFound(subject_id)
        if not subject.get("github_username"):
            raise MissingUsername(subject_id, Provider.GITHUB.value)

        items = self._fetch_subject_items(subject)
        self._cache.set(key, items)
        return {"activities": items[:limit], "total": len(items), "cached": False}

    def _build_global_feed(self) -> List[Dict[str, Any]]:
        with self._session_factory() as session:
            subjects = store.list_subjects_with_username(session, Provider.GITHUB, limit=10_000)

        feed = []
        for subject in subjects:
            try:
                feed.extend(self._fetch_subject_items(subject))
            except (NotFound, RateLimited, UpstreamError) as exc:
                logger.warning(
                    "activities: skipping subject in global build",
                    extra={"subject_id": subject["id"], "error": type(exc).__name__},
                )
        return sorted(feed, key=lambda item: item.get("timestamp") or "", reverse=True)[: self.max_items]

    def _wait_for_global(self):
        deadline = time.monotonic() + self.lock_wait_seconds
        while time.monotonic() < deadline:
            self._sleep(0.2)
            cached = self._cache.get(GLOBAL_FEED_KEY)
            if isinstance(cached, list):
                return cached
        return None

    def get_global_feed(self, limit=50, offset=0, activity_filter="all") -> Dict[str, Any]:
        """
        Global feed across all subjects

        One caller rebuilds on a miss; concurrent callers wait briefly for
        that build and otherwise get an empty page flagged as building.

        Returns:
            dict with activities, total, has_more, cached, building, built_at
        """
        feed = self._cache.get(GLOBAL_FEED_KEY)
        cached = isinstance(feed, list)
        building = False

        if not cached:
            token = self._cache.try_acquire_build_lock(GLOBAL_FEED_KEY, ttl_seconds=BUILD_LOCK_TTL_SECONDS)
            if token:
                try:
                    started = time.monotonic()
                    feed = self._build_global_feed()
                    self._cache.set(GLOBAL_FEED_KEY, feed)
                    self._cache.set_meta(total=len(feed), built_at=self._now())
                    logger.info(
                        "activities: global feed rebuilt",
                        extra={"items": len(feed), "duration_seconds": round(time.monotonic() - started, 3)},
                    )
                finally:
                    self._cache.release_build_lock(GLOBAL_FEED_KEY, token)
            else:
                feed = self._wait_for_global()
                cached = feed is not None
                building = feed is None
                feed = feed or []

        filtered = apply_filter(feed, activity_filter)
        page = filtered[offset: offset + limit]
        meta = self._cache.get_meta() or {}
        return {
            "activities": page,
            "total": len(filtered),
            "has_more": offset + limit < len(filtered),
            "cached": cached,
            "building": building,
            "built_at": meta.get("built_at"),
        }

    def merge_subject_into_global(self, subject) -> bool:
        """
        Splice a freshly synced subject's items into the cached global feed

        No provider call is made when the global feed is not cached

        Returns:
            bool whether the global feed was updated
        """
        if not subject.get("github_username"):
            return False
        if not isinstance(self._cache.get(GLOBAL_FEED_KEY), list):
            return False

        items = self._fetch_subject_items(subject)
        merged = self._cache.merge_subject_items(GLOBAL_FEED_KEY, subject["id"], items, self.max_items)
        if merged is None:
            return False
        self._cache.set_meta(total=len(merged), built_at=self._now())
        return True
