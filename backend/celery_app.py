"""
AskMatch Celery Application
Background workers for interest processing. Interest updates are
fire-and-forget: callers dispatch and move on, the worker owns retries.
"""
import time
from typing import Any

import structlog
from celery import Celery, Task
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from backend.core.config import settings
from backend.core.logging_config import configure_logging

configure_logging()
logger = structlog.get_logger().bind(module="celery")

INTEREST_TASK_MODULE = "backend.tasks.interests"

# Queue name -> (max priority, tasks routed there)
QUEUE_LAYOUT = {
    "high": (7, ["process_portfolio_interests"]),
    "normal": (3, ["process_note_interests"]),
}

interest_exchange = Exchange("interests", type="direct")

TASK_QUEUES = tuple(
    Queue(
        name,
        exchange=interest_exchange,
        routing_key=name,
        queue_arguments={"x-max-priority": max_priority},
    )
    for name, (max_priority, _) in QUEUE_LAYOUT.items()
)

TASK_ROUTES = {
    f"{INTEREST_TASK_MODULE}.{task_name}": {"queue": name}
    for name, (_, task_names) in QUEUE_LAYOUT.items()
    for task_name in task_names
}


def create_celery_app() -> Celery:
    """
    Build the Celery application from settings.

    Returns:
        Celery app with interest queues and routes registered.
    """
    app = Celery(
        "askmatch",
        broker=settings.celery_broker_url,
        backend=settings.celery_result_backend,
        include=[INTEREST_TASK_MODULE],
    )

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="normal",
        task_default_exchange=interest_exchange.name,
        task_default_routing_key="normal",
        task_default_retry_delay=10,
        task_max_retries=3,
        # A ledger update must not be lost when a worker dies mid-task
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_track_started=True,
        worker_concurrency=settings.celery_worker_concurrency,
        worker_prefetch_multiplier=1,
        result_expires=settings.celery_result_expires_seconds,
        timezone="UTC",
        enable_utc=True,
        broker_connection_retry_on_startup=True,
    )

    return app


celery_app = create_celery_app()


class InterestTask(Task):
    """Task base class that logs retries and terminal failures."""

    def on_retry(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        logger.warning(
            "task_retrying",
            task=self.name,
            task_id=task_id,
            attempt=self.request.retries + 1,
            error=str(exc),
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        logger.error(
            "task_gave_up",
            task=self.name,
            task_id=task_id,
            retries=self.request.retries,
            error=str(exc),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)


celery_app.Task = InterestTask


_started_at: dict[str, float] = {}


@task_prerun.connect
def record_task_start(task_id: str | None = None, **extra: Any) -> None:
    if task_id:
        _started_at[task_id] = time.time()


@task_postrun.connect
def log_task_latency(
    sender: Task | None = None,
    task_id: str | None = None,
    state: str | None = None,
    **extra: Any,
) -> None:
    started = _started_at.pop(task_id, None) if task_id else None
    if started is None:
        return
    logger.info(
        "task_finished",
        task=sender.name if sender else "unknown",
        task_id=task_id,
        state=state,
        latency_seconds=round(time.time() - started, 3),
    )


@task_failure.connect
def forget_failed_task(task_id: str | None = None, **extra: Any) -> None:
    if task_id:
        _started_at.pop(task_id, None)


__all__ = [
    "celery_app",
    "InterestTask",
]
