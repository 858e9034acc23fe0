from app.celery_app import celery_app as app  # noqa: F401

# celery -A celery_worker worker -l info
# celery -A celery_worker beat -l info   (only with HEALTH_SWEEP_INTERVAL_SECONDS > 0)
