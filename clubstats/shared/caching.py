"""Two-tier cache for activity feeds and leaderboard pages.

Key pattern (under CACHE_PREFIX, default "github_activities:"):
    user:{subject_id}
    global
    global_meta
    leaderboard:{dimension}:{period}
    build_lock:{key}
"""

import base64
import binascii
import gzip
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import redis
from redis import Redis
from redis.exceptions import RedisError

from clubstats.shared.config import (
    BUILD_LOCK_TTL_SECONDS,
    CACHE_PREFIX,
    CACHE_TTL_SECONDS,
    MEMORY_CACHE_TTL_SECONDS,
    REDIS_SOCKET_TIMEOUT_SECONDS,
    REDIS_URL,
)
from clubstats.shared.errors import CacheUnavailable
from clubstats.shared.snapshots import parse_utc, to_iso8601_z

_redis: Optional[Redis] = None
_cache = None
logger = logging.getLogger("caching")

GLOBAL_FEED_KEY = "global"
GLOBAL_META_KEY = "global_meta"

# base64 of the gzip magic bytes 1f 8b 08
_GZIP_B64_MAGIC = "H4sI"

RELEASE_LOCK_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
end
return 0
"""


def get_redis() -> Optional[Redis]:
    """
    Return a singleton Redis client

    Returns:
        redis.Redis client, or None when REDIS_URL is blank
    """
    global _redis
    if not REDIS_URL:
        return None
    if _redis is None:
        _redis = redis.Redis.from_url(
            REDIS_URL,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        )
    return _redis


def _enum_value(value) -> str:
    return str(getattr(value, "value", value)).lower()


def user_feed_key(subject_id) -> str:
    return f"user:{subject_id}"


def leaderboard_key(dimension, period) -> str:
    return f"leaderboard:{_enum_value(dimension)}:{_enum_value(period)}"


def encode_payload(payload) -> str:
    """
    Serialize a payload for the distributed tier

    gzip + base64 when compression succeeds, plain JSON otherwise

    Args:
        payload: JSON-serializable value

    Returns:
        str
    """
    raw = json.dumps(payload, default=str)
    try:
        return base64.b64encode(gzip.compress(raw.encode("utf-8"))).decode("ascii")
    except (OSError, ValueError) as exc:
        logger.warning("encode_payload compression failed error=%s; storing plain JSON", type(exc).__name__)
        return raw


def is_compressed(raw) -> bool:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="ignore")
    return isinstance(raw, str) and raw.startswith(_GZIP_B64_MAGIC)


def decode_payload(raw) -> Optional[Any]:
    """
    Decode a stored value

    Accepts gzip+base64 strings, plain JSON strings, and already-decoded
    dicts/lists. Anything else is a miss.

    Args:
        raw: Value read from the distributed tier

    Returns:
        decoded payload or None
    """
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(raw, str):
        return None

    if raw.startswith(_GZIP_B64_MAGIC):
        try:
            return json.loads(gzip.decompress(base64.b64decode(raw, validate=True)).decode("utf-8"))
        except (binascii.Error, OSError, EOFError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("decode_payload decompress failed error=%s; trying plain JSON", type(exc).__name__)

    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def _item_timestamp(item) -> datetime:
    try:
        parsed = parse_utc((item or {}).get("timestamp"))
    except (TypeError, ValueError):
        parsed = None
    return parsed or datetime.min.replace(tzinfo=timezone.utc)


def merge_subject_into_feed(feed, subject_id, items, cap) -> List[Dict[str, Any]]:
    """
    Replace one subject's items in a shared feed

    Items belonging to other subjects are kept as-is. The result is sorted by
    timestamp descending and capped.

    Args:
        feed (list): Existing feed items
        subject_id (str): Subject whose items are replaced
        items (list): Fresh items for subject_id
        cap (int): Maximum feed length

    Returns:
        list merged feed
    """
    subject_id = str(subject_id)
    kept = [item for item in (feed or []) if str((item or {}).get("subject_id")) != subject_id]
    merged = kept + list(items or [])
    merged.sort(key=_item_timestamp, reverse=True)
    return merged[: max(0, int(cap))]


@dataclass
class CacheEntry:
    key: str
    payload: Any
    compressed: bool
    built_at: float
    ttl_seconds: int
    expires_at: float


class TieredCache:
    """
    In-process memory tier in front of an optional Redis tier

    Redis failures degrade to memory-only behaviour and are never raised to
    callers. Construct once per process via get_cache() or inject in tests.
    """

    def __init__(
        self,
        redis_client=None,
        prefix=CACHE_PREFIX,
        memory_ttl_seconds=MEMORY_CACHE_TTL_SECONDS,
        ttl_seconds=CACHE_TTL_SECONDS,
        clock=time.monotonic,
    ):
        self._redis = redis_client
        self.prefix = prefix
        self.memory_ttl_seconds = int(memory_ttl_seconds)
        self.ttl_seconds = int(ttl_seconds)
        self._clock = clock
        self._memory: Dict[str, CacheEntry] = {}
        self._local_locks: Dict[str, tuple] = {}
        self._mutex = threading.Lock()

    def _full_key(self, key) -> str:
        return f"{self.prefix}{key}"

    def _redis_call(self, op_name, method_name, *args, **kwargs):
        if self._redis is None:
            raise CacheUnavailable("redis not configured")
        try:
            return getattr(self._redis, method_name)(*args, **kwargs)
        except RedisError as exc:
            raise CacheUnavailable(f"{op_name}: {type(exc).__name__}") from exc

    def _memory_get(self, key):
        with self._mutex:
            entry = self._memory.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._memory[key]
                return None
            return entry.payload

    def _memory_set(self, key, payload, compressed=False, ttl_seconds=None):
        ttl = self.memory_ttl_seconds if ttl_seconds is None else min(self.memory_ttl_seconds, int(ttl_seconds))
        if ttl <= 0:
            return
        now = self._clock()
        with self._mutex:
            self._memory[key] = CacheEntry(
                key=key,
                payload=payload,
                compressed=compressed,
                built_at=now,
                ttl_seconds=ttl,
                expires_at=now + ttl,
            )

    def _memory_delete(self, keys):
        with self._mutex:
            for key in keys:
                self._memory.pop(key, None)

    def get(self, key) -> Optional[Any]:
        """
        Read through memory then Redis

        Args:
            key (str): Unprefixed cache key

        Returns:
            payload or None on miss
        """
        payload = self._memory_get(key)
        if payload is not None:
            return payload

        if self._redis is None:
            return None

        try:
            raw = self._redis_call("get", "get", self._full_key(key))
        except CacheUnavailable as exc:
            logger.warning("cache get redis error key=%s error=%s", key, exc)
            return None

        payload = decode_payload(raw)
        if payload is None:
            return None

        # the memory copy must not outlive the distributed entry
        try:
            remaining = self._redis_call("ttl", "ttl", self._full_key(key))
        except CacheUnavailable as exc:
            logger.warning("cache ttl redis error key=%s error=%s", key, exc)
            return payload
        remaining = int(remaining) if remaining is not None else -2
        if remaining == -2:
            return payload
        self._memory_set(
            key,
            payload,
            compressed=is_compressed(raw),
            ttl_seconds=remaining if remaining >= 0 else None,
        )
        return payload

    def set(self, key, payload, ttl_seconds=None) -> None:
        """
        Write through both tiers

        Args:
            key (str): Unprefixed cache key
            payload: JSON-serializable value
            ttl_seconds (int): Distributed TTL override
        """
        self._memory_set(key, payload)

        if self._redis is None:
            return

        ttl = int(ttl_seconds or self.ttl_seconds)
        try:
            self._redis_call("set", "setex", self._full_key(key), ttl, encode_payload(payload))
        except CacheUnavailable as exc:
            logger.warning("cache set redis error key=%s error=%s", key, exc)

    def clear(self, key) -> None:
        self.clear_many([key])

    def clear_many(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return

        self._memory_delete(keys)

        if self._redis is None:
            return

        try:
            self._redis_call("clear_many", "delete", *[self._full_key(key) for key in keys])
        except CacheUnavailable as exc:
            logger.warning("cache clear redis error keys=%s error=%s", len(keys), exc)

    def clear_all(self) -> int:
        """
        Remove every entry under the cache prefix

        Administrative only; never called on the sync path

        Returns:
            int number of distributed keys removed
        """
        with self._mutex:
            self._memory.clear()
            self._local_locks.clear()

        if self._redis is None:
            return 0

        removed = 0
        try:
            batch = []
            for full_key in self._redis_call("clear_all", "scan_iter", match=f"{self.prefix}*", count=500):
                batch.append(full_key)
                if len(batch) >= 500:
                    removed += int(self._redis_call("clear_all", "delete", *batch) or 0)
                    batch = []
            if batch:
                removed += int(self._redis_call("clear_all", "delete", *batch) or 0)
        except (CacheUnavailable, RedisError) as exc:
            logger.warning("cache clear_all redis error=%s removed=%s", type(exc).__name__, removed)

        logger.info("cache cleared prefix=%s removed=%s", self.prefix, removed)
        return removed

    def try_acquire_build_lock(self, key, ttl_seconds=BUILD_LOCK_TTL_SECONDS) -> Optional[str]:
        """
        Try to become the single builder for a cache key

        Args:
            key (str): Unprefixed cache key being built
            ttl_seconds (int): Lock TTL for crash safety

        Returns:
            str lock token when acquired, None otherwise
        """
        lock_key = f"build_lock:{key}"
        token = str(uuid.uuid4())
        ttl_seconds = max(1, int(ttl_seconds))

        if self._redis is not None:
            try:
                acquired = self._redis_call(
                    "build_lock", "set", self._full_key(lock_key), token, nx=True, ex=ttl_seconds
                )
                return token if acquired else None
            except CacheUnavailable as exc:
                logger.warning("cache build lock redis error key=%s error=%s; using local lock", key, exc)

        now = self._clock()
        with self._mutex:
            held = self._local_locks.get(lock_key)
            if held is not None and held[1] > now:
                return None
            self._local_locks[lock_key] = (token, now + ttl_seconds)
        return token

    def release_build_lock(self, key, token) -> None:
        """
        Release a build lock held with token

        Never raises; best-effort cleanup
        """
        if not token:
            return
        lock_key = f"build_lock:{key}"

        with self._mutex:
            held = self._local_locks.get(lock_key)
            if held is not None and held[0] == token:
                del self._local_locks[lock_key]
                return

        if self._redis is None:
            return

        try:
            self._redis_call("release_build_lock", "eval", RELEASE_LOCK_LUA, 1, self._full_key(lock_key), token)
        except CacheUnavailable as exc:
            logger.warning("cache build lock release failed key=%s error=%s", key, exc)

    def merge_subject_items(self, key, subject_id, items, cap) -> Optional[List[Dict[str, Any]]]:
        """
        Splice one subject's items into a cached shared feed

        A feed that is not cached is left absent; the next reader rebuilds it

        Returns:
            merged list, or None when there was nothing cached to merge into
        """
        feed = self.get(key)
        if not isinstance(feed, list):
            return None

        merged = merge_subject_into_feed(feed, subject_id, items, cap)
        self.set(key, merged)
        return merged

    def get_meta(self) -> Optional[Dict[str, Any]]:
        meta = self.get(GLOBAL_META_KEY)
        return meta if isinstance(meta, dict) else None

    def set_meta(self, total, built_at=None) -> None:
        built_at = built_at or datetime.now(timezone.utc)
        self.set(GLOBAL_META_KEY, {"built_at": to_iso8601_z(built_at), "total": int(total)})


def get_cache() -> TieredCache:
    """
    Return the per-process TieredCache

    Returns:
        TieredCache bound to get_redis()
    """
    global _cache
    if _cache is None:
        _cache = TieredCache(redis_client=get_redis())
    return _cache
