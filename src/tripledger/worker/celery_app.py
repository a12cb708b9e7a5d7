from __future__ import annotations

from celery import Celery

from tripledger.core.config import settings


def make_celery() -> Celery:
    app = Celery("tripledger", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment in {"dev", "test"},
        task_eager_propagates=True,
        task_track_started=True,
        task_ignore_result=True,
    )
    app.autodiscover_tasks(["tripledger.worker.tasks"])
    return app


celery_app = make_celery()
