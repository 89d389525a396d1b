import os

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "prmanager.settings")

app = Celery("prmanager")
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()

app.conf.beat_schedule = {
    "process-webhook-queue": {
        "task": "core.tasks.process_webhook_queue",
        "schedule": crontab(minute="*/5"),
    },
    "sync-expired-subscriptions": {
        "task": "subscriptions.tasks.sync_expired_subscriptions",
        "schedule": crontab(hour="2", minute="30"),
    },
}
