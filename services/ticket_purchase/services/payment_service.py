"""Aplicación de callbacks de pago admitidos sobre las órdenes"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from shared.database.models import Order, OrderStatus
from shared.utils.retry import run_store_operation
from services.ticket_purchase.models.purchase import CallbackEnvelope, PaymentApplyResult

logger = logging.getLogger(__name__)

# Estado reportado por la pasarela -> estado de la orden
STATUS_MAPPING = {
    "charged": OrderStatus.COMPLETED,
    "success": OrderStatus.COMPLETED,
    "approved": OrderStatus.COMPLETED,
    "completed": OrderStatus.COMPLETED,
    "failed": OrderStatus.FAILED,
    "rejected": OrderStatus.FAILED,
    "cancelled": OrderStatus.CANCELLED,
    "canceled": OrderStatus.CANCELLED,
    "refunded": OrderStatus.REFUNDED,
    "pending": OrderStatus.PENDING,
}

# Estados desde los que se permite cada transición
ALLOWED_FROM = {
    OrderStatus.COMPLETED: (OrderStatus.PENDING,),
    OrderStatus.FAILED: (OrderStatus.PENDING,),
    OrderStatus.CANCELLED: (OrderStatus.PENDING,),
    OrderStatus.REFUNDED: (OrderStatus.COMPLETED,),
}


def map_status(provider_status: Optional[str]) -> Optional[str]:
    if not provider_status:
        return None
    return STATUS_MAPPING.get(provider_status.strip().lower())


def _to_decimal(value) -> Optional[Decimal]:
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


class PaymentService:
    def __init__(self, store_timeout: Optional[float] = None, store_retries: Optional[int] = None):
        self.store_timeout = store_timeout if store_timeout is not None else settings.STORE_TIMEOUT_SECONDS
        self.store_retries = store_retries if store_retries is not None else settings.STORE_RETRY_ATTEMPTS

    async def _load_order(self, db: AsyncSession, order_id: str) -> Optional[Order]:
        async def load_order():
            result = await db.execute(
                select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
            )
            found = result.scalar_one_or_none()
            await db.commit()
            return found

        return await run_store_operation(db, load_order, self.store_timeout, self.store_retries)

    async def apply_replayed(
        self,
        db: AsyncSession,
        envelope: CallbackEnvelope,
        original_outcome: Optional[dict],
        now: Optional[datetime] = None
    ) -> Optional[PaymentApplyResult]:
        """
        Completar un callback repetido cuya primera entrega no alcanzó la orden

        El fingerprint se admite antes de tocar la orden; si la aplicación
        falló (datastore caído), la orden sigue en su estado de origen y el
        reintento de la pasarela llega como replay. En ese caso se aplica
        aquí; con la orden ya en estado final retorna None.
        """
        target = map_status((original_outcome or {}).get("status"))
        if target is None or target == OrderStatus.PENDING:
            return None

        order = await self._load_order(db, envelope.order_id)
        if order is None or order.status not in ALLOWED_FROM[target]:
            return None

        logger.warning(
            f"Orden {order.id} sigue en {order.status} tras callback admitido, aplicando '{envelope.status}'"
        )
        return await self.apply_callback(db, envelope, now)

    async def apply_callback(
        self,
        db: AsyncSession,
        envelope: CallbackEnvelope,
        now: Optional[datetime] = None
    ) -> PaymentApplyResult:
        """
        Aplicar el estado de un callback ya admitido por CallbackGuard

        La transición es un UPDATE condicional sobre el estado actual,
        así que un callback tardío nunca pisa un estado final.
        """
        target = map_status(envelope.status)
        if target is None:
            logger.warning(f"Estado de pago desconocido '{envelope.status}' para orden {envelope.order_id}")
            return PaymentApplyResult(
                order_id=envelope.order_id,
                applied=False,
                message=f"Estado desconocido: {envelope.status}"
            )

        order = await self._load_order(db, envelope.order_id)
        if order is None:
            logger.warning(f"Callback para orden inexistente {envelope.order_id}")
            return PaymentApplyResult(order_id=envelope.order_id, applied=False, message="Orden no encontrada")

        if target == OrderStatus.PENDING:
            return PaymentApplyResult(
                order_id=order.id,
                applied=False,
                order_status=order.status,
                message="Pago pendiente, esperando confirmación"
            )

        if target == OrderStatus.COMPLETED:
            amount = _to_decimal(envelope.amount)
            if amount is None or amount != _to_decimal(order.total):
                logger.warning(
                    f"Monto no coincide para orden {order.id}: callback {envelope.amount}, orden {order.total}"
                )
                return PaymentApplyResult(
                    order_id=order.id,
                    applied=False,
                    order_status=order.status,
                    message="Monto no coincide con la orden"
                )
            if envelope.currency.upper() != (order.currency or "").upper():
                logger.warning(
                    f"Moneda no coincide para orden {order.id}: callback {envelope.currency}, orden {order.currency}"
                )
                return PaymentApplyResult(
                    order_id=order.id,
                    applied=False,
                    order_status=order.status,
                    message="Moneda no coincide con la orden"
                )

        values = {"status": target, "payment_provider": settings.PAYMENT_PROVIDER}
        if envelope.payment_id:
            values["payment_reference"] = envelope.payment_id
        if target == OrderStatus.COMPLETED:
            values["paid_at"] = now or datetime.now(timezone.utc)

        stmt = (
            update(Order)
            .where(Order.id == order.id, Order.status.in_(ALLOWED_FROM[target]))
            .values(**values)
            .returning(Order.status)
            .execution_options(synchronize_session=False)
        )

        async def transition():
            result = await db.execute(stmt)
            row = result.first()
            await db.commit()
            return row

        row = await run_store_operation(db, transition, self.store_timeout, self.store_retries)
        if row is None:
            logger.info(f"Orden {order.id} ya en estado {order.status}, callback '{envelope.status}' sin efecto")
            return PaymentApplyResult(
                order_id=order.id,
                applied=False,
                order_status=order.status,
                message=f"Orden en estado {order.status}, transición no permitida"
            )

        logger.info(f"Orden {order.id} actualizada a {row.status}")
        return PaymentApplyResult(
            order_id=order.id,
            applied=True,
            order_status=row.status,
            message=f"Orden actualizada a {row.status}"
        )
