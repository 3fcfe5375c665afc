"""Servicio de validación de tickets (check-in en la puerta)"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from typing import Dict, Optional
from datetime import datetime, timezone
import logging

from app.core.config import settings
from shared.database.models import Ticket, TicketStatus
from shared.utils.errors import TokenDecodeError, TokenExpiredError
from shared.utils.retry import run_store_operation
from services.notifications.models.outcomes import VerificationOutcome
from services.notifications.services.outcome_bus import OutcomeBus, outcome_bus
from services.ticket_validation.models.ticket import (
    ScanningContext,
    TicketInfo,
    VerificationStatus,
    VerificationVerdict
)
from services.ticket_validation.services.token_codec import TokenCodec, get_token_codec, token_expiry

logger = logging.getLogger(__name__)

_MESSAGES = {
    VerificationStatus.SUCCESS: "Ticket válido, acceso permitido",
    VerificationStatus.ALREADY_USED: "Ticket ya utilizado",
    VerificationStatus.INVALID: "Ticket inválido",
    VerificationStatus.WRONG_EVENT: "Ticket no corresponde a este evento",
    VerificationStatus.EXPIRED: "Ticket vencido",
}

_RETURNING = (
    Ticket.id,
    Ticket.ticket_number,
    Ticket.ticket_type,
    Ticket.event_id,
    Ticket.event_name,
    Ticket.booking_id,
    Ticket.holder_name,
    Ticket.seat,
    Ticket.used_at,
    Ticket.used_by,
)


def _ticket_info(row) -> TicketInfo:
    """Construir TicketInfo desde un Ticket o una fila RETURNING"""
    return TicketInfo(
        ticket_id=row.id,
        ticket_number=row.ticket_number,
        ticket_type=row.ticket_type,
        event_id=row.event_id,
        event_name=row.event_name,
        booking_id=row.booking_id,
        holder_name=row.holder_name,
        seat=row.seat,
    )


class TicketVerifier:
    """
    Consume tickets exactamente una vez

    La transición unused -> used es un único UPDATE condicional; ningún
    lock en proceso participa, así que varias instancias pueden escanear
    en paralelo y solo una observa la fila actualizada.
    """

    def __init__(
        self,
        codec: Optional[TokenCodec] = None,
        bus: Optional[OutcomeBus] = None,
        store_timeout: Optional[float] = None,
        store_retries: Optional[int] = None
    ):
        self.codec = codec or get_token_codec()
        self.bus = bus or outcome_bus
        self.store_timeout = store_timeout if store_timeout is not None else settings.STORE_TIMEOUT_SECONDS
        self.store_retries = store_retries if store_retries is not None else settings.STORE_RETRY_ATTEMPTS

    async def consume(
        self,
        db: AsyncSession,
        raw_token: str,
        context: ScanningContext,
        now: Optional[datetime] = None
    ) -> VerificationVerdict:
        """
        Validar un token escaneado y marcar el ticket como usado

        Returns:
            VerificationVerdict (success, already_used, invalid, wrong_event, expired)
        """
        try:
            payload = self.codec.decode(raw_token, now=now)
        except TokenExpiredError as e:
            logger.info(f"Token vencido (expiró {e.expired_at})")
            return self._verdict(VerificationStatus.EXPIRED, context)
        except TokenDecodeError as e:
            logger.warning(f"Token rechazado en evento {context.event_id}: {e}")
            return self._verdict(VerificationStatus.INVALID, context)

        if payload.eid != context.event_id:
            return self._verdict(
                VerificationStatus.WRONG_EVENT,
                context,
                ticket_number=payload.tno,
                ticket_id=payload.tid
            )

        return await self._check_in(
            db,
            context,
            ticket_id=payload.tid,
            expected={
                "ticket_number": payload.tno,
                "event_id": payload.eid,
                "booking_id": payload.bid,
                "token_nonce": payload.nonce,
            },
            now=now
        )

    async def consume_manual(
        self,
        db: AsyncSession,
        identifier: str,
        context: ScanningContext,
        now: Optional[datetime] = None
    ) -> VerificationVerdict:
        """
        Check-in manual por número de ticket (o booking id con un único ticket)

        El número de ticket es la identidad autoritativa; el booking id solo
        se acepta si resuelve a exactamente un ticket del evento escaneado.
        """
        identifier = (identifier or "").strip()
        if not identifier:
            return self._verdict(VerificationStatus.INVALID, context, manual=True)

        async def lookup():
            result = await db.execute(
                select(Ticket)
                .where(Ticket.ticket_number == identifier)
                .execution_options(populate_existing=True)
            )
            found = result.scalar_one_or_none()
            if found is None:
                result = await db.execute(
                    select(Ticket)
                    .where(Ticket.booking_id == identifier, Ticket.event_id == context.event_id)
                    .limit(2)
                    .execution_options(populate_existing=True)
                )
                candidates = result.scalars().all()
                found = candidates if len(candidates) > 1 else (candidates[0] if candidates else None)
            await db.commit()
            return found

        ticket = await run_store_operation(db, lookup, self.store_timeout, self.store_retries)

        if ticket is None:
            return self._verdict(VerificationStatus.INVALID, context, manual=True)
        if isinstance(ticket, list):
            return self._verdict(
                VerificationStatus.INVALID,
                context,
                manual=True,
                message="El booking tiene varios tickets, ingrese el número de ticket"
            )
        if ticket.event_id != context.event_id:
            return self._verdict(
                VerificationStatus.WRONG_EVENT,
                context,
                manual=True,
                ticket_id=ticket.id,
                ticket_number=ticket.ticket_number
            )
        if ticket.status == TicketStatus.UNUSED:
            # Misma vigencia que el token QR del ticket
            expires = token_expiry(ticket.event_date, ticket.issued_at)
            if expires < int((now or datetime.now(timezone.utc)).timestamp()):
                return self._verdict(
                    VerificationStatus.EXPIRED,
                    context,
                    manual=True,
                    ticket_id=ticket.id,
                    ticket_number=ticket.ticket_number
                )

        return await self._check_in(
            db,
            context,
            ticket_id=ticket.id,
            expected={"event_id": context.event_id},
            now=now,
            manual=True
        )

    async def _check_in(
        self,
        db: AsyncSession,
        context: ScanningContext,
        ticket_id: str,
        expected: Dict[str, str],
        now: Optional[datetime] = None,
        manual: bool = False
    ) -> VerificationVerdict:
        used_at = now or datetime.now(timezone.utc)
        criteria = [getattr(Ticket, column) == value for column, value in expected.items()]

        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket_id, *criteria, Ticket.status == TicketStatus.UNUSED)
            .values(status=TicketStatus.USED, used_at=used_at, used_by=context.scanner_id)
            .returning(*_RETURNING)
            .execution_options(synchronize_session=False)
        )

        async def transition():
            result = await db.execute(stmt)
            row = result.first()
            await db.commit()
            return row

        row = await run_store_operation(db, transition, self.store_timeout, self.store_retries)

        if row is not None:
            logger.info(f"Check-in exitoso - ticket {row.ticket_number} por scanner {context.scanner_id}")
            return self._verdict(
                VerificationStatus.SUCCESS,
                context,
                manual=manual,
                ticket=_ticket_info(row),
                used_at=row.used_at,
                used_by=row.used_by
            )

        # Perdió la carrera, o el ticket no existe / no coincide con el token
        async def lookup():
            result = await db.execute(
                select(Ticket).where(Ticket.id == ticket_id).execution_options(populate_existing=True)
            )
            found = result.scalar_one_or_none()
            await db.commit()
            return found

        ticket = await run_store_operation(db, lookup, self.store_timeout, self.store_retries)

        if ticket is None:
            return self._verdict(VerificationStatus.INVALID, context, manual=manual, ticket_id=ticket_id)

        if any(getattr(ticket, column) != value for column, value in expected.items()):
            logger.warning(f"Token no coincide con ticket {ticket.ticket_number} (revocado o alterado)")
            return self._verdict(
                VerificationStatus.INVALID,
                context,
                manual=manual,
                ticket_id=ticket.id,
                ticket_number=ticket.ticket_number,
                message="Token revocado o no corresponde al ticket"
            )

        if ticket.status == TicketStatus.USED:
            logger.warning(
                f"Ticket {ticket.ticket_number} ya utilizado el {ticket.used_at} por {ticket.used_by}"
            )
            return self._verdict(
                VerificationStatus.ALREADY_USED,
                context,
                manual=manual,
                ticket=_ticket_info(ticket),
                used_at=ticket.used_at,
                used_by=ticket.used_by
            )

        if ticket.status == TicketStatus.CANCELLED:
            return self._verdict(
                VerificationStatus.INVALID,
                context,
                manual=manual,
                ticket=_ticket_info(ticket),
                message="Ticket cancelado"
            )

        return self._verdict(
            VerificationStatus.INVALID,
            context,
            manual=manual,
            ticket_id=ticket.id,
            ticket_number=ticket.ticket_number,
            message="Ticket en estado inválido, intente nuevamente"
        )

    def _verdict(
        self,
        status: VerificationStatus,
        context: ScanningContext,
        manual: bool = False,
        ticket: Optional[TicketInfo] = None,
        ticket_id: Optional[str] = None,
        ticket_number: Optional[str] = None,
        used_at: Optional[datetime] = None,
        used_by: Optional[str] = None,
        message: Optional[str] = None
    ) -> VerificationVerdict:
        verdict = VerificationVerdict(
            verified=status == VerificationStatus.SUCCESS,
            status=status,
            message=message or _MESSAGES[status],
            ticket=ticket,
            used_at=used_at,
            used_by=used_by
        )

        self.bus.publish(VerificationOutcome(
            status=status.value,
            event_id=context.event_id,
            scanner_id=context.scanner_id,
            ticket_id=ticket.ticket_id if ticket else ticket_id,
            ticket_number=ticket.ticket_number if ticket else ticket_number,
            manual=manual,
            occurred_at=datetime.now(timezone.utc)
        ))
        return verdict

    async def get_ticket_by_id(
        self,
        db: AsyncSession,
        ticket_id: str
    ) -> Optional[Ticket]:
        """Obtener ticket por ID"""
        stmt = select(Ticket).where(Ticket.id == ticket_id).execution_options(populate_existing=True)

        async def lookup():
            result = await db.execute(stmt)
            found = result.scalar_one_or_none()
            await db.commit()
            return found

        return await run_store_operation(db, lookup, self.store_timeout, self.store_retries)
