"""
Celery Application Factory

Runs the extraction pipeline outside the API process.
Broker: Redis by default (CELERY_BROKER_URL); result backend is optional since
document state lives in PostgreSQL.

Queue topology:
  documents.process  : extraction pipeline, one document per message
  documents.requeue  : beat-driven scanner for documents stuck in `pending`

Task payloads carry only the document id; the worker reloads everything else
from the database and S3.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docvault.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.process",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.process",
        durable=True,
    ),
    Queue(
        "documents.requeue",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.requeue",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docvault.workers.tasks.process_document":        {"queue": "documents.process"},
    "docvault.workers.tasks.requeue_stale_documents": {"queue": "documents.requeue"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docvault")

    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],

        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.process",
        task_default_exchange="documents",
        task_default_routing_key="documents.process",

        # ack only after the pipeline finished
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # OCR ceiling is 5 minutes; leave room for reformat + embedding
        task_soft_time_limit=540,
        task_time_limit=600,

        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "requeue-stale-pending-every-60s": {
                "task":     "docvault.workers.tasks.requeue_stale_documents",
                "schedule": 60,
                "options":  {"queue": "documents.requeue"},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docvault.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, (kwargs or {}).get("document_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, (kwargs or {}).get("document_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "-"), exception,
        exc_info=True,
    )
