import logging
import threading
import time
import uuid

from redis.exceptions import RedisError

from clubstats.shared.caching import RELEASE_LOCK_LUA, get_redis


logger = logging.getLogger("locks")

# Used when Redis is not configured; only serializes within one process
_local_locks = {}
_local_mutex = threading.Lock()


def _provider_label(provider):
    return str(getattr(provider, "value", provider)).lower()


def subject_lock_key(subject_id, provider):
    return f"cs:lock:sync:{subject_id}:{_provider_label(provider)}"


def _try_local_acquire(lock_key, lock_value, ttl_seconds):
    now = time.monotonic()
    with _local_mutex:
        held = _local_locks.get(lock_key)
        if held is not None and held[1] > now:
            return False
        _local_locks[lock_key] = (lock_value, now + ttl_seconds)
        return True


def acquire_subject_lock(subject_id, provider, ttl_seconds=300, wait_timeout_seconds=0):
    """
    Acquire a per-(subject, provider) sync lock

    Args:
        subject_id (str): Subject id
        provider (Provider): Provider being synced
        ttl_seconds (int): Lock TTL for crash safety
        wait_timeout_seconds (int): Max time to wait; 0 means fail fast

    Returns:
        str lock_value used for release

    Raises:
        TimeoutError: When lock cannot be acquired within wait_timeout_seconds
    """
    redis_client = get_redis()
    lock_key = subject_lock_key(subject_id, provider)
    lock_value = str(uuid.uuid4())

    wait_timeout_seconds = max(0, int(wait_timeout_seconds))
    ttl_seconds = max(1, int(ttl_seconds))

    deadline = time.monotonic() + float(wait_timeout_seconds)

    while True:
        if redis_client is None:
            acquired = _try_local_acquire(lock_key, lock_value, ttl_seconds)
        else:
            try:
                acquired = redis_client.set(lock_key, lock_value, nx=True, ex=ttl_seconds)
            except RedisError as exc:
                logger.warning(
                    "Sync lock redis error; falling back to process-local lock",
                    extra={"subject_id": subject_id, "error": type(exc).__name__},
                )
                redis_client = None
                acquired = _try_local_acquire(lock_key, lock_value, ttl_seconds)
        if acquired:
            return lock_value

        if time.monotonic() >= deadline:
            raise TimeoutError(
                f"Sync lock already held for subject_id={subject_id} provider={_provider_label(provider)}"
            )

        time.sleep(0.2)


def release_subject_lock(subject_id, provider, lock_value):
    """
    Release a per-(subject, provider) sync lock

    Never raises; best-effort cleanup
    """
    lock_key = subject_lock_key(subject_id, provider)

    with _local_mutex:
        held = _local_locks.get(lock_key)
        if held is not None and held[0] == lock_value:
            del _local_locks[lock_key]
            return

    redis_client = get_redis()
    if redis_client is None:
        return

    try:
        redis_client.eval(RELEASE_LOCK_LUA, 1, lock_key, lock_value)
    except RedisError as exc:
        logger.error(
            "Failed to release sync lock",
            extra={"subject_id": subject_id, "provider": _provider_label(provider), "error": type(exc).__name__},
            exc_info=True,
        )
        return
