import copy

from celery import Celery
from kombu import Queue

from clubstats.shared.celery_config import (
    CELERY_DEFAULT_QUEUE,
    CELERY_QUEUE_NAMES,
    CELERY_TASK_ROUTES,
)
from clubstats.shared.config import REDIS_URL, validate_config


def create_celery(broker_url=None):
    """
    Build the worker Celery app

    Args:
        broker_url (str): Redis URL for broker and results; defaults to REDIS_URL

    Returns:
        Celery app
    """
    validate_config()
    broker_url = broker_url or REDIS_URL

    app = Celery(
        "clubstats-worker",
        broker=broker_url,
        backend=broker_url,
        include=["clubstats.worker.app.tasks"],
    )
    app.conf.update(
        task_default_queue=CELERY_DEFAULT_QUEUE,
        task_queues=tuple(Queue(name) for name in CELERY_QUEUE_NAMES),
        task_routes=copy.deepcopy(CELERY_TASK_ROUTES),
        # Redelivered syncs are safe: the subject lock serializes them
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
    )
    return app


celery_app = create_celery()


if __name__ == "__main__":
    celery_app.start()
