"""Rutas de callbacks de la pasarela de pago (webhook JSON y redirect form)"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict
import logging
from shared.database.connection import get_db
from shared.utils.errors import StoreTimeoutError, StoreUnavailableError
from shared.utils.http_errors import store_error_to_http
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.ticket_purchase.models.purchase import (
    CallbackDecisionKind,
    CallbackEnvelope,
    CallbackResponse,
    CallbackSource
)
from services.ticket_purchase.services.callback_guard import CallbackGuard
from services.ticket_purchase.services.payment_service import PaymentService
from services.ticket_purchase.services.replay_ledger import get_replay_ledger

logger = logging.getLogger(__name__)

router = APIRouter()

_MESSAGES = {
    CallbackDecisionKind.ACCEPT: "Callback procesado",
    CallbackDecisionKind.REPLAY: "Callback ya procesado",
    CallbackDecisionKind.INVALID_SIGNATURE: "Firma inválida",
    CallbackDecisionKind.STALE_TIMESTAMP: "Callback fuera de la ventana de tiempo",
}


def _parse_envelope(data: Dict[str, Any], source: CallbackSource) -> CallbackEnvelope:
    try:
        return CallbackEnvelope.model_validate({**data, "source": source})
    except ValidationError as e:
        logger.warning(f"Callback malformado ({source.value}): {e.error_count()} errores")
        # Sin el input rechazado (puede no ser UTF-8 válido)
        detail = [
            {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
            for error in e.errors(include_url=False, include_input=False, include_context=False)
        ]
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


async def _handle_callback(db: AsyncSession, envelope: CallbackEnvelope) -> JSONResponse:
    """Redirect y webhook pasan por el mismo guard: firma, frescura, admisión única"""
    guard = CallbackGuard(ledger=get_replay_ledger(db))

    try:
        decision = await guard.admit(envelope)
        apply_result = None
        if decision.accepted:
            apply_result = await PaymentService().apply_callback(db, envelope)
        elif decision.decision == CallbackDecisionKind.REPLAY:
            apply_result = await PaymentService().apply_replayed(db, envelope, decision.original_outcome)
    except (StoreUnavailableError, StoreTimeoutError) as e:
        logger.error(f"Error de datastore procesando callback de orden {envelope.order_id}: {e}")
        raise store_error_to_http(e)

    if decision.accepted:
        response_status = "ok"
    elif decision.decision == CallbackDecisionKind.REPLAY:
        response_status = "replay"
    else:
        response_status = "error"

    response = CallbackResponse(
        status=response_status,
        decision=decision.decision,
        message=apply_result.message if apply_result else _MESSAGES[decision.decision],
        order_id=envelope.order_id,
        order_status=apply_result.order_status if apply_result else None,
        original_outcome=decision.original_outcome
    )
    return JSONResponse(status_code=decision.http_status, content=response.model_dump(mode="json"))


@router.post("/webhook", response_model=CallbackResponse)
@limiter.limit(RATE_LIMITS["callback"])
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Webhook server-to-server de la pasarela (JSON)

    200 accept, 409 replay, 400 firma/timestamp, 422 malformado
    """
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Body JSON inválido")
    if not isinstance(data, dict):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Body JSON inválido")

    return await _handle_callback(db, _parse_envelope(data, CallbackSource.WEBHOOK))


@router.post("/callback", response_model=CallbackResponse)
@limiter.limit(RATE_LIMITS["callback"])
async def payment_redirect_callback(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """Redirect del navegador al volver de la pasarela (form-encoded)"""
    form = await request.form()
    return await _handle_callback(db, _parse_envelope(dict(form), CallbackSource.REDIRECT))
