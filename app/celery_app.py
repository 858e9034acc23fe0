from celery import Celery
from app.config import settings

# Broker / backend come from settings so workers read the same environment as the API
celery_app = Celery(
    "vmorch",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND
)

celery_app.conf.broker_connection_retry_on_startup = True

celery_app.conf.task_routes = {
    "app.tasks.*": {"queue": "celery"}
}

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    # A redelivered provisioning task must not run twice; ack before running
    task_acks_late=False,
)

# Periodic sweep is opt-in; an external cron hitting /cron/health-check works too
if settings.HEALTH_SWEEP_INTERVAL_SECONDS > 0:
    celery_app.conf.beat_schedule = {
        "vm-health-sweep": {
            "task": "app.tasks.vm_tasks.health_sweep_task",
            "schedule": float(settings.HEALTH_SWEEP_INTERVAL_SECONDS),
        },
    }

# Auto-discover tasks so that @celery_app.task decorators in app/tasks/ get registered
celery_app.autodiscover_tasks(['app.tasks'])

# Explicitly import tasks to ensure they are registered
import app.tasks.vm_tasks  # noqa: F401, E402
