"""Rutas de emisión y administración de tickets (solo admin)"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict
import logging
from shared.database.connection import get_db
from shared.auth.dependencies import get_current_admin
from shared.utils.errors import StoreTimeoutError, StoreUnavailableError
from shared.utils.http_errors import store_error_to_http
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.ticket_purchase.models.tickets import IssuedTicket, IssueTicketRequest, TicketStatusResponse
from services.ticket_purchase.services.issuance_service import TicketIssuer

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/issue", response_model=IssuedTicket, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMITS["admin"])
async def issue_ticket(
    request: Request,
    issue_request: IssueTicketRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """Emitir un ticket y retornar su token QR"""
    try:
        return await TicketIssuer().issue(db, issue_request)
    except (StoreUnavailableError, StoreTimeoutError) as e:
        logger.error(f"Error de datastore emitiendo ticket para booking {issue_request.booking_id}: {e}")
        raise store_error_to_http(e)


@router.post("/{ticket_id}/cancel", response_model=TicketStatusResponse)
@limiter.limit(RATE_LIMITS["admin"])
async def cancel_ticket(
    request: Request,
    ticket_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """Cancelar un ticket sin usar"""
    try:
        result = await TicketIssuer().cancel(db, ticket_id)
    except (StoreUnavailableError, StoreTimeoutError) as e:
        raise store_error_to_http(e)

    if not result.success and result.status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.message)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.message)
    return result


@router.post("/{ticket_id}/reissue", response_model=IssuedTicket)
@limiter.limit(RATE_LIMITS["admin"])
async def reissue_ticket(
    request: Request,
    ticket_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """Reemitir el token de un ticket sin usar; el token anterior queda revocado"""
    try:
        issued = await TicketIssuer().reissue_token(db, ticket_id)
    except (StoreUnavailableError, StoreTimeoutError) as e:
        raise store_error_to_http(e)

    if issued is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Ticket inexistente o ya no está sin usar"
        )
    return issued
