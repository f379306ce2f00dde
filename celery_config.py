from celery import Celery
from config import config

# A broker (Redis/Valkey or RabbitMQ) must be reachable for workers and producers
BROKER_URL = config.celery_broker_url
BACKEND_URL = config.celery_backend_url

celery_app = Celery(
    "participation_tasks",
    broker=BROKER_URL,
    backend=BACKEND_URL,
    include=["celery_tasks.participation_tasks"]
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Ingestion is idempotent, acknowledge after the task ran so a worker crash redelivers
    task_acks_late=True,

    # === Producer-Side (Sending Message) Retry Settings ===
    # Retries publishing when the client cannot connect to the broker.
    task_publish_retry=True,
    task_publish_retry_policy={
        'max_retries': 10,
        'interval_start': 0.5,
        'interval_step': 0.5,
        'interval_max': 5,
    },
)

celery_app.conf.task_routes = {
    'celery_tasks.participation_tasks.*': {'queue': 'ingestion'},
}
