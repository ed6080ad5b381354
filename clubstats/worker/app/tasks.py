import logging
import time
from contextlib import contextmanager

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded

from clubstats.shared.bootcamps import BootcampTracker
from clubstats.shared.config import SYNC_TASK_SOFT_TIME_LIMIT_SECONDS, SYNC_TASK_TIME_LIMIT_SECONDS
from clubstats.shared.errors import SyncError
from clubstats.shared.sync import SyncOrchestrator, SyncTrigger


logger = logging.getLogger("worker.tasks")

_MAX_ERROR_MESSAGE_CHARS = 500

_orchestrator = None
_tracker = None


def _truncate_error_message(value):
    """
    Clip an error message to _MAX_ERROR_MESSAGE_CHARS for logs and task results
    """
    return str(value or "").strip()[:_MAX_ERROR_MESSAGE_CHARS]


def _get_orchestrator():
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SyncOrchestrator()
    return _orchestrator


def _get_tracker():
    global _tracker
    if _tracker is None:
        _tracker = BootcampTracker()
    return _tracker


@contextmanager
def _task_run(task, name, **fields):
    """
    Log one task run with its Celery id and duration

    The yielded dict is merged into the closing log line, so tasks can
    report outcome counters there.

    Args:
        task: Bound Celery task
        name (str): Task name for log messages
        **fields: Extra context logged at start and finish
    """
    context = {"celery_task_id": getattr(getattr(task, "request", None), "id", None), **fields}
    outcome = {}
    started = time.monotonic()
    logger.info("%s started", name, extra=context)
    try:
        yield outcome
    except Exception:
        logger.exception("%s failed", name, extra=context)
        raise
    finally:
        duration = round(time.monotonic() - started, 3)
        logger.info("%s finished", name, extra={**context, **outcome, "duration_seconds": duration})


def _sync_error_result(subject_id, exc):
    """
    Map a known sync failure to a task result

    Known failures are outcomes rather than task errors: they are returned
    so the worker does not redeliver a sync that cannot succeed on retry.

    Args:
        subject_id (str): Subject id
        exc (SyncError): Failure raised by the orchestrator

    Returns:
        dict with status 'failed' and the error details
    """
    result = {
        "status": "failed",
        "subject_id": subject_id,
        "error_type": type(exc).__name__,
        "error": _truncate_error_message(exc),
        "retryable": bool(exc.retryable),
    }
    if getattr(exc, "retry_after_seconds", None) is not None:
        result["retry_after_seconds"] = exc.retry_after_seconds
    return result


@shared_task(
    name="sync_subject",
    bind=True,
    soft_time_limit=SYNC_TASK_SOFT_TIME_LIMIT_SECONDS,
    time_limit=SYNC_TASK_TIME_LIMIT_SECONDS,
)
def sync_subject(self, subject_id, provider=None, trigger=SyncTrigger.PASSIVE.value, triggered_by=None):
    """
    Celery wrapper around SyncOrchestrator.sync_subject

    Args:
        subject_id (str): Subject id
        provider (str): Optional provider name; None syncs every linked provider
        trigger (str): SyncTrigger value
        triggered_by (str): Optional origin label such as 'api' or 'scheduler.passive'

    Returns:
        dict sync result, or a failure dict for SyncError and the soft time limit
    """
    with _task_run(
        self, "sync_subject", subject_id=subject_id, provider=provider, trigger=trigger, triggered_by=triggered_by
    ) as outcome:
        try:
            result = _get_orchestrator().sync_subject(subject_id, provider=provider, trigger=trigger)
        except SyncError as exc:
            result = _sync_error_result(subject_id, exc)
            outcome["error_type"] = result["error_type"]
        except SoftTimeLimitExceeded:
            # the orchestrator has already marked the provider FAILED and released its lock
            result = {
                "status": "failed",
                "subject_id": subject_id,
                "error_type": "SoftTimeLimitExceeded",
                "error": f"sync exceeded {SYNC_TASK_SOFT_TIME_LIMIT_SECONDS}s",
                "retryable": True,
            }
            outcome["error_type"] = result["error_type"]
        outcome["status"] = result.get("status") if isinstance(result, dict) else None
        return result


@shared_task(name="sync_stale_subjects", bind=True)
def sync_stale_subjects(self, provider=None, trigger=SyncTrigger.PASSIVE.value, triggered_by=None):
    """
    Sync every subject whose snapshot is stale for trigger

    Returns:
        dict with synced, skipped, failed counts and errors
    """
    with _task_run(
        self, "sync_stale_subjects", provider=provider, trigger=trigger, triggered_by=triggered_by
    ) as outcome:
        summary = _get_orchestrator().sync_stale(provider=provider, trigger=trigger)
        summary["errors"] = [
            dict(error, error=_truncate_error_message(error.get("error"))) for error in summary["errors"]
        ]
        outcome.update(synced=summary.get("synced"), failed=summary.get("failed"))
        return summary


@shared_task(name="bootcamp_cycle", bind=True)
def bootcamp_cycle(self, triggered_by=None):
    """
    Advance bootcamp statuses and refresh every ACTIVE bootcamp

    Returns:
        list of {bootcamp_id, name, synced, errors}
    """
    with _task_run(self, "bootcamp_cycle", triggered_by=triggered_by) as outcome:
        results = _get_tracker().run_bootcamp_cycle()
        outcome["bootcamps"] = len(results)
        return results
