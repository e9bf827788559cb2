from __future__ import annotations

from celery import Celery

from travel_flow.core.config import settings


def make_celery() -> Celery:
    app = Celery("travel_flow", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment in {"dev", "test"},
        task_eager_propagates=True,
        task_track_started=True,
        task_serializer="json",
        result_serializer="json",
    )
    app.autodiscover_tasks(["travel_flow.worker.tasks"])
    return app


celery_app = make_celery()
