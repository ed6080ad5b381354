"""
Celery routing configuration shared across scheduler and workers
"""

CELERY_DEFAULT_QUEUE = "default"

CELERY_QUEUE_NAMES = (
    "default",
    "passive",
    "bootcamps",
)

CELERY_TASK_ROUTES = {
    "sync_subject": {"queue": "default"},
    "sync_stale_subjects": {"queue": "passive"},
    "bootcamp_cycle": {"queue": "bootcamps"},
}
