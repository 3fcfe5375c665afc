"""
Configuración de Celery para tareas asíncronas

Persistencia de escaneos, alertas de seguridad y poda del ledger de replay.
"""
from celery import Celery
from celery.schedules import crontab
from kombu import Queue, Exchange
import os
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

REDIS_URL = settings.REDIS_URL
REDIS_MAX_CONNECTIONS = int(os.getenv("CELERY_REDIS_MAX_CONNECTIONS", "50"))

celery_app = Celery(
    "ticketgate",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=[
        "services.notifications.tasks.outcome_tasks",
    ]
)

default_exchange = Exchange("default", type="direct")
priority_exchange = Exchange("priority", type="direct")

celery_app.conf.task_queues = (
    # Alertas de seguridad (replays, firmas inválidas, tickets reusados)
    Queue("high_priority", priority_exchange, routing_key="high"),
    # Registro de escaneos
    Queue("default", default_exchange, routing_key="default"),
    # Mantenimiento (poda del ledger)
    Queue("low_priority", default_exchange, routing_key="low"),
)

celery_app.conf.task_routes = {
    "raise_security_alert": {"queue": "high_priority"},
    "record_scan_outcome": {"queue": "default"},
    "prune_replay_ledger": {"queue": "low_priority"},
}

celery_app.conf.beat_schedule = {
    "prune-replay-ledger-hourly": {
        "task": "prune_replay_ledger",
        "schedule": crontab(minute=15),
    },
}

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    timezone="UTC",
    enable_utc=True,

    task_track_started=True,

    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,

    # Bajo prefetch = mejor distribución de carga entre workers
    worker_prefetch_multiplier=1,

    broker_pool_limit=REDIS_MAX_CONNECTIONS,
    redis_max_connections=REDIS_MAX_CONNECTIONS,

    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,

    broker_heartbeat=30,

    # ACK late: confirmar tarea solo cuando termina (previene pérdida de tareas)
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,

    worker_concurrency=4,
    worker_max_tasks_per_child=1000,

    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    # Protección contra flooding de alertas durante un ataque de replay
    task_annotations={
        "raise_security_alert": {"rate_limit": "600/m"},
    },
)

logger.info(
    "Celery configurado - Broker: %s, Pool limit: %d, Concurrency: %d",
    REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL,
    REDIS_MAX_CONNECTIONS,
    celery_app.conf.worker_concurrency
)
