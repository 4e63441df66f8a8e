from datetime import timedelta

from celery import Celery

from app.config import settings


def get_celery_config() -> dict:
    broker = settings.celery_broker_url or settings.redis_url
    backend = settings.celery_result_backend or settings.redis_url
    return {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": "UTC",
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
    }


def build_beat_schedule() -> dict:
    return {
        "queue_release_stale": {
            "task": "app.tasks.queue.release_stale_messages",
            "schedule": timedelta(minutes=5),
        },
        "queue_cleanup_completed": {
            "task": "app.tasks.queue.cleanup_completed_messages",
            "schedule": timedelta(hours=24),
        },
    }


celery_app = Celery("events")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["app.tasks"])
