from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery("dataplane_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "drain-event-queue": {
        "task": "app.tasks.drain_event_queue",
        "schedule": settings.dispatcher_poll_interval_seconds,
    },
    "cleanup-processed-events": {
        "task": "app.tasks.cleanup_processed_events",
        "schedule": 60 * 60,
    },
}


@celery_app.task(name="app.tasks.drain_event_queue")
def drain_event_queue_task() -> int:
    from app.hooks.dispatcher import build_dispatcher

    return build_dispatcher().drain_once().processed


@celery_app.task(name="app.tasks.cleanup_processed_events")
def cleanup_processed_events_task() -> int:
    from app.core.database import SessionLocal
    from app.hooks.service import hook_service

    with SessionLocal() as session:
        return hook_service.cleanup_processed_events(session, older_than_days=settings.processed_event_retention_days)
