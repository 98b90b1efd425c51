"""
Celery Application Factory

Runs embedding jobs outside the request path. The extraction subsystem
enqueues generate_document_embeddings when a document's text is ready;
a beat task picks up documents whose trigger was lost.

Queue topology:
  documents.embed    — embedding runs (one document per task)
  documents.retry    — stale-document scanner
  system.health      — internal health-check tasks

Task payloads carry document ids only. The worker reloads the document and
its tenant from the database.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docembed.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.embed",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.embed",
        durable=True,
    ),
    Queue(
        "documents.retry",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.retry",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docembed.workers.tasks.generate_document_embeddings": {"queue": "documents.embed"},
    "docembed.workers.tasks.requeue_stale_embeddings":     {"queue": "documents.retry"},
    "docembed.workers.tasks.health_check":                 {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docembed")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.embed",
        task_default_exchange="documents",
        task_default_routing_key="documents.embed",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,   # one run at a time per worker process

        # --- Timeouts ---
        task_soft_time_limit=600,
        task_time_limit=660,

        # --- Result TTL ---
        result_expires=3600,   # state lives in documents.embedding_status

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stale-document scanner) ---
        beat_schedule={
            "requeue-stale-embeddings-every-60s": {
                "task":     "docembed.workers.tasks.requeue_stale_embeddings",
                "schedule": 60,
                "options":  {"queue": "documents.retry"},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docembed.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: one log line per task transition
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
    )
