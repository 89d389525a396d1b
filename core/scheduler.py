"""
Read-only view of the retry scheduler.

Beat persists its schedule in django_celery_beat's PeriodicTask table
(DatabaseScheduler syncs CELERY beat_schedule into it), so the status is a query
over those rows plus the webhook queue.
"""
import logging

from django.conf import settings
from django.db.models import Min
from django.utils import timezone
from django_celery_beat.models import PeriodicTask

from core.models import WebhookEvent, WebhookQueueItem
from prmanager.celery import app as celery_app

log = logging.getLogger("prmanager.core.scheduler")


def _next_run_at(task: PeriodicTask, now):
    if not task.enabled:
        return None
    try:
        return now + task.schedule.remaining_estimate(task.last_run_at or now)
    except Exception as e:
        log.warning(f"Cannot estimate next run for periodic task {task.name}: {e}")
        return None


def _job_status(name: str, entry: dict, task, now) -> dict:
    if task is None:
        # beat has not synced this entry into the database yet
        return {
            "name": name,
            "task": entry["task"],
            "enabled": False,
            "last_run_at": None,
            "next_run_at": None,
            "total_run_count": 0,
        }

    return {
        "name": name,
        "task": task.task,
        "enabled": task.enabled,
        "last_run_at": task.last_run_at,
        "next_run_at": _next_run_at(task, now),
        "total_run_count": task.total_run_count,
    }


def get_queue_stats(now=None) -> dict:
    now = now or timezone.now()
    queue = WebhookQueueItem.objects.all()

    return {
        "pending_retries": queue.count(),
        "due_now": queue.filter(next_retry__lte=now).count(),
        "next_retry_at": queue.aggregate(next_retry=Min("next_retry"))["next_retry"],
        "permanently_failed": WebhookEvent.objects.filter(
            processed=False,
            error_count__gte=settings.WEBHOOK_MAX_RETRY_ATTEMPTS,
        ).count(),
    }


def get_scheduler_status() -> dict:
    now = timezone.now()
    beat_schedule = celery_app.conf.beat_schedule or {}
    tasks = {task.name: task for task in PeriodicTask.objects.filter(name__in=list(beat_schedule))}

    jobs = [_job_status(name, entry, tasks.get(name), now) for name, entry in beat_schedule.items()]

    return {
        "running": any(job["enabled"] for job in jobs),
        "jobs": jobs,
        "queue": get_queue_stats(now),
    }


__all__ = (
    "get_queue_stats",
    "get_scheduler_status",
)
