from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "dealflow_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.tasks"],
)
celery_app.conf.beat_schedule = {
    "sweep-duration-automations": {
        "task": "app.tasks.sweep_duration_automations",
        "schedule": float(settings.automation_sweep_interval_seconds),
        "options": {"expires": settings.automation_sweep_interval_seconds},
    },
    "process-organization-automations": {
        "task": "app.tasks.process_organization_automations",
        "schedule": float(settings.automation_sweep_interval_seconds),
        "options": {"expires": settings.automation_sweep_interval_seconds},
    },
}
celery_app.conf.task_default_queue = "automations"
