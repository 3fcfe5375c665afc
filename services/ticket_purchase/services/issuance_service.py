"""Emisión, reemisión y cancelación de tickets"""
import logging
import re
import secrets
import string
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from shared.database.models import Ticket, TicketStatus
from shared.utils.retry import run_store_operation
from services.ticket_purchase.models.tickets import IssuedTicket, IssueTicketRequest, TicketStatusResponse
from services.ticket_validation.services.token_codec import TokenCodec, get_token_codec

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_ticket_number(event_id: str) -> str:
    """Número de ticket legible: <EVNT>-<tiempo base36>-<aleatorio>"""
    prefix = re.sub(r"[^A-Za-z0-9]", "", event_id).upper()[:4] or "TKT"
    random_part = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}-{_base36(int(time.time() * 1000))}-{random_part}"


class TicketIssuer:
    MAX_NUMBER_ATTEMPTS = 3

    def __init__(
        self,
        codec: Optional[TokenCodec] = None,
        store_timeout: Optional[float] = None,
        store_retries: Optional[int] = None
    ):
        self.codec = codec or get_token_codec()
        self.store_timeout = store_timeout if store_timeout is not None else settings.STORE_TIMEOUT_SECONDS
        self.store_retries = store_retries if store_retries is not None else settings.STORE_RETRY_ATTEMPTS

    async def issue(
        self,
        db: AsyncSession,
        request: IssueTicketRequest,
        now: Optional[datetime] = None
    ) -> IssuedTicket:
        """Crear el ticket (unused) y retornar su token QR"""
        issued_at = now or datetime.now(timezone.utc)

        for attempt in range(self.MAX_NUMBER_ATTEMPTS):
            ticket = Ticket(
                event_id=request.event_id,
                booking_id=request.booking_id,
                ticket_number=generate_ticket_number(request.event_id),
                ticket_type=request.ticket_type,
                holder_name=request.holder_name,
                seat=request.seat,
                event_name=request.event_name,
                event_date=request.event_date,
                status=TicketStatus.UNUSED,
                issued_at=issued_at,
            )
            ticket.id = str(uuid.uuid4())
            payload = self.codec.new_payload(
                ticket_id=ticket.id,
                ticket_number=ticket.ticket_number,
                ticket_type=ticket.ticket_type,
                event_id=ticket.event_id,
                booking_id=ticket.booking_id,
                event_date=request.event_date,
                issued_at=issued_at
            )
            ticket.token_nonce = payload.nonce

            async def insert():
                db.add(ticket)
                await db.commit()

            try:
                await run_store_operation(db, insert, self.store_timeout, self.store_retries)
            except IntegrityError:
                # Colisión de ticket_number (improbable): generar otro
                await db.rollback()
                logger.warning(f"Colisión de número de ticket {ticket.ticket_number}, reintento {attempt + 1}")
                continue

            logger.info(f"Ticket {ticket.ticket_number} emitido para booking {request.booking_id}")
            return IssuedTicket(
                ticket_id=ticket.id,
                ticket_number=ticket.ticket_number,
                token=self.codec.encode(payload),
                expires_at=datetime.fromtimestamp(payload.exp, tz=timezone.utc)
            )

        raise RuntimeError("No se pudo generar un número de ticket único")

    async def _load_ticket(self, db: AsyncSession, ticket_id: str) -> Optional[Ticket]:
        async def lookup():
            found = await db.get(Ticket, ticket_id, populate_existing=True)
            await db.commit()
            return found

        return await run_store_operation(db, lookup, self.store_timeout, self.store_retries)

    async def reissue_token(
        self,
        db: AsyncSession,
        ticket_id: str,
        now: Optional[datetime] = None
    ) -> Optional[IssuedTicket]:
        """
        Emitir un token nuevo para un ticket sin usar

        El nonce nuevo revoca el token anterior. Retorna None si el ticket
        no existe o ya no está unused.
        """
        ticket = await self._load_ticket(db, ticket_id)
        if ticket is None or ticket.status != TicketStatus.UNUSED:
            return None

        payload = self.codec.new_payload(
            ticket_id=ticket.id,
            ticket_number=ticket.ticket_number,
            ticket_type=ticket.ticket_type,
            event_id=ticket.event_id,
            booking_id=ticket.booking_id,
            event_date=ticket.event_date,
            issued_at=now
        )
        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket_id, Ticket.status == TicketStatus.UNUSED)
            .values(token_nonce=payload.nonce)
            .returning(Ticket.id)
            .execution_options(synchronize_session=False)
        )

        async def replace_nonce():
            result = await db.execute(stmt)
            row = result.first()
            await db.commit()
            return row

        row = await run_store_operation(db, replace_nonce, self.store_timeout, self.store_retries)
        if row is None:
            return None

        logger.info(f"Token reemitido para ticket {ticket.ticket_number}, token anterior revocado")
        return IssuedTicket(
            ticket_id=ticket.id,
            ticket_number=ticket.ticket_number,
            token=self.codec.encode(payload),
            expires_at=datetime.fromtimestamp(payload.exp, tz=timezone.utc)
        )

    async def cancel(
        self,
        db: AsyncSession,
        ticket_id: str,
        now: Optional[datetime] = None
    ) -> TicketStatusResponse:
        """Cancelar un ticket; solo unused -> cancelled"""
        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket_id, Ticket.status == TicketStatus.UNUSED)
            .values(status=TicketStatus.CANCELLED, cancelled_at=now or datetime.now(timezone.utc))
            .returning(Ticket.status)
            .execution_options(synchronize_session=False)
        )

        async def transition():
            result = await db.execute(stmt)
            row = result.first()
            await db.commit()
            return row

        row = await run_store_operation(db, transition, self.store_timeout, self.store_retries)
        if row is not None:
            logger.info(f"Ticket {ticket_id} cancelado")
            return TicketStatusResponse(
                success=True,
                ticket_id=ticket_id,
                status=row.status,
                message="Ticket cancelado"
            )

        ticket = await self._load_ticket(db, ticket_id)
        if ticket is None:
            return TicketStatusResponse(success=False, ticket_id=ticket_id, message="Ticket no encontrado")
        return TicketStatusResponse(
            success=False,
            ticket_id=ticket_id,
            status=ticket.status,
            message=f"Ticket en estado {ticket.status}, no se puede cancelar"
        )
