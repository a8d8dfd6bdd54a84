"""
Celery Application Configuration
"""

from celery import Celery

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "offer_index",
    # Without Redis nothing is ever enqueued; the in-memory transport only
    # keeps the app importable for the API and tests.
    broker=settings.redis_url or "memory://",
    backend=settings.redis_url,
    include=["workers.offer_index"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.offer_index_worker_concurrency,
    task_routes={
        "workers.offer_index.*": {"queue": settings.offer_index_queue},
    },
)

# ── Celery Beat Schedule ─────────────────────────────────────────
# Backstop: periodically sweep all loyalty programs to catch drift that
# change events missed. Only scheduled when a queue backend exists.
if settings.queue_enabled:
    celery_app.conf.beat_schedule = {
        "offer-index-backstop": {
            "task": "workers.offer_index.enqueue_backstop_rebuild",
            "schedule": float(settings.offer_index_backstop_interval_seconds),
            "options": {"queue": settings.offer_index_queue},
        },
    }
