from datetime import timedelta

from celery import Celery
from celery.schedules import crontab

from dr_engine.config import settings
from dr_engine.logging import configure_logging

configure_logging()

celery_app = Celery("dr_engine")
celery_app.conf.update(
    broker_url=settings.celery_broker_url,
    result_backend=settings.celery_result_backend,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
celery_app.conf.beat_schedule = {
    "backup-scheduler-tick": {
        "task": "dr_engine.tasks.backups.run_scheduled_backups",
        "schedule": crontab(minute="*"),
    },
    "backup-retention-sweep": {
        "task": "dr_engine.tasks.backups.prune_expired_backups",
        "schedule": crontab(minute=15),
    },
    "health-snapshot": {
        "task": "dr_engine.tasks.health.capture_health_snapshot",
        "schedule": timedelta(seconds=settings.health_interval_seconds),
    },
    "health-snapshot-prune": {
        "task": "dr_engine.tasks.health.prune_health_snapshots",
        "schedule": crontab(minute=45, hour=3),
    },
    "recovery-test-tick": {
        "task": "dr_engine.tasks.recovery_tests.run_scheduled_recovery_tests",
        "schedule": crontab(minute="*/15"),
    },
}
celery_app.autodiscover_tasks(
    [
        "dr_engine.tasks.backups",
        "dr_engine.tasks.health",
        "dr_engine.tasks.failover",
        "dr_engine.tasks.recovery_tests",
    ],
    related_name=None,
)
