import pytest

from shared.database.models import Order, OrderStatus
from services.ticket_purchase.models.purchase import CallbackEnvelope
from services.ticket_purchase.services.payment_service import PaymentService, map_status

from conftest import add_order, signed_callback


def _envelope(**fields):
    return CallbackEnvelope.model_validate(signed_callback(**fields))


async def _order(session_factory, order_id):
    async with session_factory() as session:
        return await session.get(Order, order_id)


@pytest.mark.parametrize("provider_status,expected", [
    ("CHARGED", OrderStatus.COMPLETED),
    ("success", OrderStatus.COMPLETED),
    ("approved", OrderStatus.COMPLETED),
    ("failed", OrderStatus.FAILED),
    ("rejected", OrderStatus.FAILED),
    ("cancelled", OrderStatus.CANCELLED),
    ("refunded", OrderStatus.REFUNDED),
    ("pending", OrderStatus.PENDING),
    ("weird", None),
])
def test_map_status(provider_status, expected):
    assert map_status(provider_status) == expected


@pytest.mark.asyncio
async def test_charged_completes_pending_order(session_factory, db):
    await add_order(db, "ORD-1")
    result = await PaymentService().apply_callback(db, _envelope(order_id="ORD-1", payment_id="pay_42"))

    assert result.applied is True
    assert result.order_status == OrderStatus.COMPLETED
    order = await _order(session_factory, "ORD-1")
    assert order.status == OrderStatus.COMPLETED
    assert order.payment_reference == "pay_42"
    assert order.paid_at is not None


@pytest.mark.asyncio
async def test_late_failure_does_not_overwrite_completed(session_factory, db):
    await add_order(db, "ORD-1")
    service = PaymentService()
    await service.apply_callback(db, _envelope(order_id="ORD-1"))

    result = await service.apply_callback(db, _envelope(order_id="ORD-1", status="failed", payment_id="pay_002"))
    assert result.applied is False
    assert (await _order(session_factory, "ORD-1")).status == OrderStatus.COMPLETED


@pytest.mark.asyncio
async def test_refund_only_after_completion(session_factory, db):
    await add_order(db, "ORD-1")
    service = PaymentService()

    early = await service.apply_callback(db, _envelope(order_id="ORD-1", status="refunded"))
    assert early.applied is False

    await service.apply_callback(db, _envelope(order_id="ORD-1"))
    refund = await service.apply_callback(db, _envelope(order_id="ORD-1", status="refunded", payment_id="pay_003"))
    assert refund.applied is True
    assert (await _order(session_factory, "ORD-1")).status == OrderStatus.REFUNDED


@pytest.mark.asyncio
async def test_amount_or_currency_mismatch_is_not_applied(session_factory, db):
    await add_order(db, "ORD-1", total="150.00", currency="INR")
    service = PaymentService()

    wrong_amount = await service.apply_callback(db, _envelope(order_id="ORD-1", amount="1.00"))
    assert wrong_amount.applied is False
    assert "Monto" in wrong_amount.message

    wrong_currency = await service.apply_callback(db, _envelope(order_id="ORD-1", currency="USD"))
    assert wrong_currency.applied is False
    assert "Moneda" in wrong_currency.message

    assert (await _order(session_factory, "ORD-1")).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_equivalent_amount_format_is_accepted(db):
    await add_order(db, "ORD-1", total="150.00")
    result = await PaymentService().apply_callback(db, _envelope(order_id="ORD-1", amount="150"))
    assert result.applied is True


@pytest.mark.asyncio
async def test_pending_and_unknown_orders(db):
    await add_order(db, "ORD-1")
    service = PaymentService()

    pending = await service.apply_callback(db, _envelope(order_id="ORD-1", status="pending"))
    assert pending.applied is False
    assert pending.order_status == OrderStatus.PENDING

    missing = await service.apply_callback(db, _envelope(order_id="ORD-404"))
    assert missing.applied is False
    assert missing.message == "Orden no encontrada"


@pytest.mark.asyncio
async def test_replayed_callback_applies_only_while_order_pending(session_factory, db):
    await add_order(db, "ORD-7")
    service = PaymentService()
    envelope = _envelope(order_id="ORD-7")

    resumed = await service.apply_replayed(db, envelope, {"status": "CHARGED", "payment_id": "pay_001"})
    assert resumed.applied is True
    assert (await _order(session_factory, "ORD-7")).status == OrderStatus.COMPLETED

    assert await service.apply_replayed(db, envelope, {"status": "CHARGED", "payment_id": "pay_001"}) is None
    assert await service.apply_replayed(db, envelope, {"status": "pending"}) is None
    assert await service.apply_replayed(db, envelope, None) is None
