"""Tareas asíncronas para persistir resultados de escaneo y alertas de seguridad"""
from typing import Dict, Optional
from datetime import datetime
import logging
import asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from shared.cache.celery_app import celery_app
from shared.database.models import ScanLog
from services.notifications.models.outcomes import CallbackOutcome, VerificationOutcome

logger = logging.getLogger(__name__)

# Resultados que disparan alerta de seguridad
ALERT_VERIFICATION_STATUSES = {"already_used", "invalid"}
ALERT_CALLBACK_DECISIONS = {"replay", "invalid_signature", "stale_timestamp"}


def run_async(coro):
    """Helper para ejecutar coroutines en contexto síncrono de Celery"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def persist_scan_log(db: AsyncSession, outcome: VerificationOutcome) -> ScanLog:
    """Guardar un intento de escaneo en ticket_scans"""
    scan = ScanLog(
        ticket_id=outcome.ticket_id,
        ticket_number=outcome.ticket_number,
        event_id=outcome.event_id,
        scanner_id=outcome.scanner_id,
        verdict=outcome.status,
        scanned_at=outcome.occurred_at,
    )
    db.add(scan)
    await db.commit()
    return scan


async def _record_with_engine(outcome: VerificationOutcome):
    # Cada tarea corre en su propio event loop: engine propio, descartado al final
    from app.core.config import settings
    from shared.database.connection import make_async_engine

    engine, session_maker = make_async_engine(settings.DATABASE_URL)
    try:
        async with session_maker() as db:
            await persist_scan_log(db, outcome)
    finally:
        await engine.dispose()


async def _prune_with_engine(older_than: datetime) -> int:
    from app.core.config import settings
    from shared.database.connection import make_async_engine
    from services.ticket_purchase.services.replay_ledger import SqlReplayLedger

    engine, session_maker = make_async_engine(settings.DATABASE_URL)
    try:
        async with session_maker() as db:
            return await SqlReplayLedger(db).prune(older_than)
    finally:
        await engine.dispose()


@celery_app.task(
    name="record_scan_outcome",
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
)
def record_scan_outcome_task(self, outcome_data: Dict):
    """Tarea Celery para registrar un intento de escaneo"""
    outcome = VerificationOutcome.model_validate(outcome_data)
    run_async(_record_with_engine(outcome))
    logger.info(f"[CELERY] Escaneo registrado - evento {outcome.event_id}, veredicto {outcome.status}")
    return {"status": "recorded", "verdict": outcome.status}


@celery_app.task(name="raise_security_alert")
def raise_security_alert_task(outcome_data: Dict):
    """
    Tarea Celery para alertas de seguridad

    Deja la alerta en el log de seguridad; el canal de notificación
    (correo, pager) se engancha sobre este logger.
    """
    kind = outcome_data.get("kind")
    if kind == "callback":
        outcome = CallbackOutcome.model_validate(outcome_data)
        logger.warning(
            f"[ALERTA] Callback rechazado ({outcome.decision}) - orden: {outcome.order_id or '-'}, "
            f"origen: {outcome.source}, fingerprint: {outcome.fingerprint or '-'}"
        )
    else:
        outcome = VerificationOutcome.model_validate(outcome_data)
        logger.warning(
            f"[ALERTA] Escaneo {outcome.status} - ticket: {outcome.ticket_number or '-'}, "
            f"evento: {outcome.event_id}, scanner: {outcome.scanner_id}"
        )
    return {"status": "alerted", "kind": kind}


@celery_app.task(name="prune_replay_ledger")
def prune_replay_ledger_task():
    """Tarea periódica (beat): podar el ledger de replay"""
    from app.core.config import settings
    from services.ticket_purchase.services.replay_ledger import retention_cutoff

    if settings.REPLAY_LEDGER_BACKEND != "sql":
        # En Redis las keys expiran con su TTL
        return {"status": "skipped", "removed": 0}

    removed = run_async(_prune_with_engine(retention_cutoff()))
    return {"status": "pruned", "removed": removed}


def enqueue_outcome(outcome):
    """Encolar las tareas que corresponden a un resultado (publish bloqueante al broker)"""
    data = outcome.model_dump(mode="json")
    if isinstance(outcome, VerificationOutcome):
        record_scan_outcome_task.delay(data)
        if outcome.status in ALERT_VERIFICATION_STATUSES:
            raise_security_alert_task.delay(data)
    elif isinstance(outcome, CallbackOutcome) and outcome.decision in ALERT_CALLBACK_DECISIONS:
        raise_security_alert_task.delay(data)


def _log_enqueue_failure(future: asyncio.Future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error(f"Error encolando tareas de resultado: {type(error).__name__}: {error}")


def celery_outcome_subscriber(outcome) -> Optional[asyncio.Future]:
    """
    Suscriptor del outcome bus que encola las tareas

    Dentro del event loop de la API el encolado corre en el executor por
    defecto y el request no espera al broker. Fuera de un loop (workers,
    scripts) encola directamente y los errores los registra el bus.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        enqueue_outcome(outcome)
        return None

    future = loop.run_in_executor(None, enqueue_outcome, outcome)
    future.add_done_callback(_log_enqueue_failure)
    return future
