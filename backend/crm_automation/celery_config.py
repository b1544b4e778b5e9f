from celery import Celery

from crm_automation import config

celery_app = Celery(
    "crm_automation_tasks",
    broker=config.CELERY_BROKER_URL,
    backend=config.CELERY_RESULT_BACKEND,
    include=["crm_automation.tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_ignore_result=False,
    task_default_retry_delay=60,
    worker_max_tasks_per_child=1000,
    result_expires=3600,
    broker_connection_retry_on_startup=True,
    result_backend_transport_options={
        "retry_on_timeout": True,
        "max_retries": 3,
    },
)
