"""
GitHub token pool and request throttling

Every configured token gets a lease-based concurrency limit, a cached view of
its primary rate-limit budget and a cooldown window taken from Retry-After.
The state lives in Redis so API and worker processes share it; without Redis
requests go out uncoordinated.
"""

import hashlib
import itertools
import logging
import random
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx
from redis.exceptions import RedisError

from clubstats.shared.caching import get_redis
from clubstats.shared.config import (
    GH_BACKOFF_BASE_SECONDS,
    GH_BACKOFF_CAP_SECONDS,
    GH_CONCURRENCY_PER_TOKEN,
    GH_COOLDOWN_MAX_WAIT_SECONDS,
    GH_MAX_RETRIES,
    GH_REDIS_PREFIX,
    GH_SEMAPHORE_ACQUIRE_TIMEOUT_SECONDS,
    GH_SEMAPHORE_TTL_SECONDS,
    GITHUB_API_URL,
    GITHUB_TOKENS,
    PROVIDER_TIMEOUT_SECONDS,
)

GITHUB_GRAPHQL_URL = f"{GITHUB_API_URL}/graphql"
DEFAULT_GITHUB_TIMEOUT = PROVIDER_TIMEOUT_SECONDS
GITHUB_USER_AGENT = "clubstats-sync"

LEASE_POLL_SECONDS = 0.2

logger = logging.getLogger("throttle")

# KEYS[1] lease zset; ARGV: now, limit, lease expiry, lease id, key ttl
_TAKE_LEASE_LUA = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
if redis.call('ZCARD', KEYS[1]) >= tonumber(ARGV[2]) then
  return 0
end
redis.call('ZADD', KEYS[1], ARGV[3], ARGV[4])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[5]))
return 1
"""

_token_cycle = itertools.cycle(GITHUB_TOKENS) if GITHUB_TOKENS else None
_token_cycle_lock = threading.Lock()


def next_github_token():
    """
    Round-robin over the configured GitHub tokens

    Returns:
        str token, or None when no token is configured (unauthenticated calls)
    """
    if _token_cycle is None:
        return None
    with _token_cycle_lock:
        return next(_token_cycle)


def token_fingerprint(token):
    """
    Stable, non-reversible id for a token, used in Redis keys and logs
    """
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()[:32]


def parse_retry_after(value):
    """
    Parse a Retry-After header value

    Args:
        value (str): Delta seconds or an HTTP date

    Returns:
        int seconds, 0 when absent or unparseable
    """
    if not value:
        return 0

    if str(value).strip().isdigit():
        return int(str(value).strip())

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    if retry_at is None:
        return 0
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0, int((retry_at - datetime.now(timezone.utc)).total_seconds()))


def retry_after_from_response(response):
    """
    Seconds until a rate-limited response may be retried

    Uses Retry-After first, then X-RateLimit-Reset when the primary budget is exhausted
    """
    seconds = parse_retry_after(response.headers.get("Retry-After"))
    if seconds > 0:
        return seconds

    if response.headers.get("X-RateLimit-Remaining") != "0":
        return 0
    try:
        reset_epoch = int(response.headers.get("X-RateLimit-Reset") or 0)
    except (TypeError, ValueError):
        return 0
    return max(0, reset_epoch - int(time.time())) if reset_epoch else 0


@dataclass
class Lease:
    token_id: str
    lease_id: str


class TokenThrottle:
    """
    Redis-coordinated limits for one GitHub token pool

    Args:
        redis_client: Redis client
        prefix (str): Key prefix
        concurrency (int): Concurrent requests allowed per token
        lease_ttl_seconds (int): Lifetime of a lease left behind by a dead process
        acquire_timeout_seconds (int): How long to wait for a free lease
        max_wait_seconds (int): Longest cooldown or budget reset the caller will sleep through
    """

    def __init__(
        self,
        redis_client,
        prefix=GH_REDIS_PREFIX,
        concurrency=GH_CONCURRENCY_PER_TOKEN,
        lease_ttl_seconds=GH_SEMAPHORE_TTL_SECONDS,
        acquire_timeout_seconds=GH_SEMAPHORE_ACQUIRE_TIMEOUT_SECONDS,
        max_wait_seconds=GH_COOLDOWN_MAX_WAIT_SECONDS,
        clock=time.time,
        sleep=time.sleep,
    ):
        self.redis = redis_client
        self.prefix = prefix
        self.concurrency = int(concurrency)
        self.lease_ttl_seconds = max(30, int(lease_ttl_seconds))
        self.acquire_timeout_seconds = max(1, int(acquire_timeout_seconds))
        self.max_wait_seconds = int(max_wait_seconds)
        self._clock = clock
        self._sleep = sleep

    def key(self, kind, token_id):
        return f"{self.prefix}{kind}:{token_id}"

    def acquire_lease(self, token_id) -> Lease:
        """
        Take one of the token's concurrency leases, polling until one frees up

        Raises:
            TimeoutError: No lease became free within acquire_timeout_seconds
        """
        lease_id = uuid.uuid4().hex
        deadline = self._clock() + self.acquire_timeout_seconds
        while True:
            now = self._clock()
            taken = self.redis.eval(
                _TAKE_LEASE_LUA,
                1,
                self.key("leases", token_id),
                now,
                self.concurrency,
                now + self.lease_ttl_seconds,
                lease_id,
                self.lease_ttl_seconds,
            )
            if int(taken or 0) == 1:
                return Lease(token_id=token_id, lease_id=lease_id)
            if now >= deadline:
                raise TimeoutError(
                    f"No free GitHub lease for token={token_id[:6]} after {self.acquire_timeout_seconds}s"
                )
            self._sleep(LEASE_POLL_SECONDS)

    def release(self, lease: Lease) -> None:
        try:
            self.redis.zrem(self.key("leases", lease.token_id), lease.lease_id)
        except RedisError as exc:
            logger.warning("throttle: lease release failed token=%s error=%s", lease.token_id[:6], type(exc).__name__)

    def wait_for_cooldown(self, token_id) -> None:
        key = self.key("cooldown", token_id)
        remaining = self.redis.ttl(key)
        while remaining is not None and remaining != -2:
            if remaining == -1:
                logger.warning("throttle: cooldown without TTL; repairing (token=%s)", token_id[:6])
                remaining = min(5, self.max_wait_seconds)
                self.redis.expire(key, remaining)
            elif remaining > self.max_wait_seconds:
                logger.warning("throttle: cooldown capped to %ss (token=%s)", self.max_wait_seconds, token_id[:6])
                remaining = self.max_wait_seconds
                self.redis.expire(key, remaining)

            logger.info("throttle: cooldown active for %s, ttl=%s", token_id[:6], remaining)
            self._sleep(max(1, min(5, remaining)))
            remaining = self.redis.ttl(key)

    def wait_for_budget(self, token_id) -> None:
        budget = self.redis.hgetall(self.key("budget", token_id)) or {}
        try:
            remaining = int(budget.get(b"remaining", -1))
            reset_epoch = int(budget.get(b"reset_epoch", 0))
        except (TypeError, ValueError):
            return

        now = int(self._clock())
        if remaining != 0 or reset_epoch <= now:
            return

        wait_seconds = reset_epoch - now + 1
        if wait_seconds > self.max_wait_seconds:
            logger.info("throttle: primary budget exhausted for %ss (token=%s)", wait_seconds, token_id[:6])
            return
        logger.info("throttle: waiting %ss for primary budget reset (token=%s)", wait_seconds, token_id[:6])
        self._sleep(wait_seconds)

    def before_request(self, github_token):
        """
        Wait out cooldowns and budget resets, then take a lease

        Returns:
            Lease, or None when Redis failed and the request should go out uncoordinated

        Raises:
            TimeoutError: No lease became free in time
        """
        token_id = token_fingerprint(github_token)
        try:
            self.wait_for_cooldown(token_id)
            self.wait_for_budget(token_id)
            return self.acquire_lease(token_id)
        except RedisError as exc:
            logger.warning("throttle: redis unavailable; proceeding uncoordinated error=%s", type(exc).__name__)
            return None

    def after_response(self, lease: Lease, response) -> None:
        """
        Record budget headers and any Retry-After cooldown, then release the lease

        Never raises
        """
        try:
            self._record_budget(lease.token_id, response)
            if response.status_code in (403, 429):
                self._record_cooldown(lease.token_id, response)
        except RedisError as exc:
            logger.warning("throttle: failed to record response token=%s error=%s", lease.token_id[:6], type(exc).__name__)
        finally:
            self.release(lease)

    def _record_budget(self, token_id, response) -> None:
        try:
            remaining = int(response.headers["X-RateLimit-Remaining"])
            reset_epoch = int(response.headers["X-RateLimit-Reset"])
        except (KeyError, TypeError, ValueError):
            return
        key = self.key("budget", token_id)
        self.redis.hset(key, mapping={"remaining": remaining, "reset_epoch": reset_epoch})
        self.redis.expire(key, max(0, reset_epoch - int(self._clock())) + 5)

    def _record_cooldown(self, token_id, response) -> None:
        seconds = parse_retry_after(response.headers.get("Retry-After"))
        if seconds <= 0:
            return
        self.redis.setex(self.key("cooldown", token_id), seconds, 1)
        logger.info("throttle: Retry-After cooldown %ss token=%s", seconds, token_id[:6])


def _current_throttle():
    redis_client = get_redis()
    if redis_client is None:
        return None
    return TokenThrottle(redis_client)


@contextmanager
def _http_client(timeout=DEFAULT_GITHUB_TIMEOUT):
    with httpx.Client(timeout=timeout) as client:
        yield client


def _backoff_seconds(attempt):
    return min(GH_BACKOFF_CAP_SECONDS, GH_BACKOFF_BASE_SECONDS * (2 ** attempt)) + random.random()


def _is_rate_limited(response):
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    return response.headers.get("X-RateLimit-Remaining") == "0" or bool(response.headers.get("Retry-After"))


def _retry_delay(response, attempt):
    """
    Seconds to sleep before retrying, or None when the response is final
    """
    if attempt >= GH_MAX_RETRIES:
        return None
    if _is_rate_limited(response):
        wait_seconds = parse_retry_after(response.headers.get("Retry-After"))
        if wait_seconds > GH_COOLDOWN_MAX_WAIT_SECONDS:
            return None
        return wait_seconds if wait_seconds > 0 else _backoff_seconds(attempt)
    if response.status_code >= 500:
        return _backoff_seconds(attempt)
    return None


def _send_once(throttle, github_token, method, url, headers, json_payload, params, timeout):
    lease = throttle.before_request(github_token) if throttle is not None else None
    response = None
    try:
        with _http_client(timeout=timeout) as client:
            response = client.request(method, url, headers=headers, json=json_payload, params=params)
    finally:
        if lease is not None:
            if response is not None:
                throttle.after_response(lease, response)
            else:
                throttle.release(lease)
    return response


def send_github_request(github_token, method, url, json_payload=None, params=None, timeout=DEFAULT_GITHUB_TIMEOUT):
    """
    Send a GitHub REST or GraphQL request with throttling and retries

    Rate-limited responses are retried after Retry-After or an exponential
    backoff; 5xx responses are retried with backoff.

    Args:
        github_token (str): API token, or None for unauthenticated calls
        method (str): HTTP method
        url (str): Absolute URL
        json_payload (dict): Optional JSON body
        params (dict): Optional query parameters
        timeout (float): HTTP client timeout per request

    Returns:
        httpx.Response

    Raises:
        PermissionError: When the token is rejected
        httpx.HTTPStatusError: For other 4xx/5xx responses once retries are exhausted
        httpx.HTTPError: For transport failures and timeouts
    """
    route = "graphql" if url == GITHUB_GRAPHQL_URL else "rest"
    token_id = token_fingerprint(github_token)
    headers = {"Accept": "application/vnd.github+json", "User-Agent": GITHUB_USER_AGENT}
    if github_token:
        headers["Authorization"] = f"bearer {github_token}"

    throttle = _current_throttle()
    for attempt in itertools.count():
        response = _send_once(throttle, github_token, method, url, headers, json_payload, params, timeout)

        if response.status_code == 401:
            raise PermissionError("GitHub token unauthorized")

        delay = _retry_delay(response, attempt)
        if delay is not None:
            logger.warning(
                "throttle: GitHub %s; retrying in %0.1fs (attempt=%s, route=%s, token=%s)",
                response.status_code,
                delay,
                attempt + 1,
                route,
                token_id[:6],
            )
            time.sleep(delay)
            continue

        if response.status_code >= 400 and response.status_code != 404:
            logger.error("throttle: GitHub HTTP %s for route=%s token=%s", response.status_code, route, token_id[:6])
        response.raise_for_status()
        return response


def send_github_graphql(github_token, json_payload, timeout=DEFAULT_GITHUB_TIMEOUT):
    return send_github_request(github_token, "POST", GITHUB_GRAPHQL_URL, json_payload=json_payload, timeout=timeout)
