"""
Celery application for the ingestion workers.

Routing
───────
  documents.ingest    process_document, backfill_embeddings   (priority queue, one PDF per prefetch)
  documents.cleanup   delete_document_vectors, requeue_stale_documents,
                      backfill_skipped_embeddings
  system.health       health_check

Only ids travel through the broker; workers load file bytes from S3 and
document state from PostgreSQL. Beat runs requeue_stale_documents every
`celery_stale_scan_interval` seconds and backfill_skipped_embeddings every
`celery_backfill_scan_interval` seconds.
"""

from __future__ import annotations

import logging
import time

from celery import Celery
from celery.signals import setup_logging, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docsim.core.config import settings
from docsim.core.logging import configure_logging

logger = logging.getLogger(__name__)

INGEST_QUEUE = "documents.ingest"
CLEANUP_QUEUE = "documents.cleanup"
HEALTH_QUEUE = "system.health"

_documents = Exchange("documents", type="direct", durable=True)
_system = Exchange("system", type="direct", durable=True)


def _queue(name: str, exchange: Exchange, **arguments) -> Queue:
    return Queue(name, exchange=exchange, routing_key=name, durable=True, queue_arguments=arguments or None)


TASK_QUEUES = (
    _queue(INGEST_QUEUE, _documents, **{"x-max-priority": 10}),
    _queue(CLEANUP_QUEUE, _documents),
    _queue(HEALTH_QUEUE, _system),
)

TASK_ROUTES = {
    "docsim.workers.tasks.process_document":        {"queue": INGEST_QUEUE},
    "docsim.workers.tasks.delete_document_vectors": {"queue": CLEANUP_QUEUE},
    "docsim.workers.tasks.requeue_stale_documents": {"queue": CLEANUP_QUEUE},
    "docsim.workers.tasks.backfill_embeddings":     {"queue": INGEST_QUEUE},
    "docsim.workers.tasks.backfill_skipped_embeddings": {"queue": CLEANUP_QUEUE},
    "docsim.workers.tasks.health_check":            {"queue": HEALTH_QUEUE},
}


def create_celery_app() -> Celery:
    app = Celery("docsim", broker=settings.celery_broker_url, backend=settings.celery_result_backend)

    hard_limit = settings.celery_task_time_limit
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        result_expires=3600,

        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=INGEST_QUEUE,
        task_default_exchange=_documents.name,
        task_default_routing_key=INGEST_QUEUE,

        # A lost worker must not lose the document: ack after the run
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_max_tasks_per_child=50,

        task_time_limit=hard_limit,
        task_soft_time_limit=max(1, hard_limit - 300),

        enable_utc=True,
        beat_schedule={
            "requeue-stale-documents": {
                "task":     "docsim.workers.tasks.requeue_stale_documents",
                "schedule": float(settings.celery_stale_scan_interval),
                "options":  {"queue": CLEANUP_QUEUE},
            },
            "backfill-skipped-embeddings": {
                "task":     "docsim.workers.tasks.backfill_skipped_embeddings",
                "schedule": float(settings.celery_backfill_scan_interval),
                "options":  {"queue": CLEANUP_QUEUE},
            },
        },
    )
    app.autodiscover_tasks(["docsim.workers"])
    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Signals: logging setup and one start/end line per task
# ---------------------------------------------------------------------------

_started: dict[str, float] = {}


def _doc(kwargs) -> str:
    return (kwargs or {}).get("document_id", "-")


@setup_logging.connect
def on_setup_logging(**_):
    configure_logging()


@task_prerun.connect
def on_task_prerun(task_id=None, task=None, kwargs=None, **_):
    _started[task_id] = time.monotonic()
    logger.info("Task start | task=%s task_id=%s doc=%s", task.name, task_id, _doc(kwargs))


@task_postrun.connect
def on_task_postrun(task_id=None, task=None, kwargs=None, state=None, **_):
    started = _started.pop(task_id, None)
    elapsed = f"{time.monotonic() - started:.1f}" if started is not None else "-"
    logger.info(
        "Task end | task=%s task_id=%s doc=%s state=%s seconds=%s",
        task.name, task_id, _doc(kwargs), state, elapsed,
    )


@task_failure.connect
def on_task_failure(task_id=None, exception=None, kwargs=None, sender=None, **_):
    logger.error(
        "Task failed | task=%s task_id=%s doc=%s error=%s",
        getattr(sender, "name", "?"), task_id, _doc(kwargs), exception,
        exc_info=exception,
    )
