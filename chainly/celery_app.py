"""Celery application.

Workflow runs and the per-minute schedule check run as Celery tasks on a
Redis broker. Start the worker and the beat scheduler with:

    celery -A chainly.celery_app worker --loglevel=info
    celery -A chainly.celery_app beat
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from chainly.config import settings
from chainly.log import configure_logging

EXECUTE_WORKFLOW_TASK = "chainly.execute_workflow"
CHECK_SCHEDULES_TASK = "chainly.check_schedules"

celery_app = Celery(
    "chainly",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "check-schedules": {
            "task": CHECK_SCHEDULES_TASK,
            "schedule": crontab(),
        },
    },
)

celery_app.conf.include = ["chainly.worker"]


@setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    configure_logging()
