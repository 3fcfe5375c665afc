"""Rutas de validación de tickets"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict
import logging
from shared.database.connection import get_db
from shared.auth.dependencies import get_current_scanner
from shared.utils.errors import StoreTimeoutError, StoreUnavailableError
from shared.utils.http_errors import store_error_to_http
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.ticket_validation.models.ticket import (
    ManualValidationRequest,
    ScanningContext,
    TicketValidationRequest,
    VerificationVerdict
)
from services.ticket_validation.services.ticket_service import TicketVerifier

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/validate", response_model=VerificationVerdict)
@limiter.limit(RATE_LIMITS["scan"])
async def validate_ticket(
    request: Request,  # Necesario para rate limiter
    validation_request: TicketValidationRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_scanner)
):
    """
    Validar el token QR escaneado y hacer check-in

    Todos los veredictos de negocio (already_used, wrong_event, ...) responden 200.
    Requiere autenticación de scanner/admin
    """
    context = ScanningContext(event_id=validation_request.event_id, scanner_id=current_user["user_id"])
    try:
        return await TicketVerifier().consume(db, validation_request.token, context)
    except (StoreUnavailableError, StoreTimeoutError) as e:
        logger.error(f"Error de datastore validando ticket en evento {context.event_id}: {e}")
        raise store_error_to_http(e)


@router.post("/validate/manual", response_model=VerificationVerdict)
@limiter.limit(RATE_LIMITS["scan"])
async def validate_ticket_manual(
    request: Request,
    validation_request: ManualValidationRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_scanner)
):
    """Check-in manual por número de ticket o booking id (cuando el QR no se puede leer)"""
    context = ScanningContext(event_id=validation_request.event_id, scanner_id=current_user["user_id"])
    try:
        return await TicketVerifier().consume_manual(db, validation_request.identifier, context)
    except (StoreUnavailableError, StoreTimeoutError) as e:
        logger.error(f"Error de datastore en check-in manual, evento {context.event_id}: {e}")
        raise store_error_to_http(e)


@router.get("/{ticket_id}")
async def get_ticket(
    ticket_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_scanner)
):
    """Obtener información de un ticket por ID"""
    try:
        ticket = await TicketVerifier().get_ticket_by_id(db, ticket_id)
    except (StoreUnavailableError, StoreTimeoutError) as e:
        logger.error(f"Error de datastore consultando ticket {ticket_id}: {e}")
        raise store_error_to_http(e)

    if not ticket:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Ticket no encontrado"
        )

    return {
        "id": ticket.id,
        "event_id": ticket.event_id,
        "booking_id": ticket.booking_id,
        "ticket_number": ticket.ticket_number,
        "ticket_type": ticket.ticket_type,
        "holder_name": ticket.holder_name,
        "seat": ticket.seat,
        "status": ticket.status,
        "issued_at": ticket.issued_at.isoformat() if ticket.issued_at else None,
        "used_at": ticket.used_at.isoformat() if ticket.used_at else None,
        "used_by": ticket.used_by
    }
