"""Fixtures compartidas: SQLite por test, codec con secret fijo, bus aislado"""
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite:///./test-default.db")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("QR_SECRET", "test-qr-secret")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("REPLAY_LEDGER_BACKEND", "sql")
os.environ.setdefault("CELERY_OUTCOMES_ENABLED", "false")

import pytest
import pytest_asyncio

from shared.database.connection import create_schema, make_async_engine
from shared.database.models import Order, OrderStatus, Ticket, TicketStatus
from shared.utils import signer
from services.notifications.services.outcome_bus import OutcomeBus
from services.ticket_validation.services.token_codec import TokenCodec

WEBHOOK_SECRET = "test-webhook-secret"
EVENT_ID = "evt-rock-2026"
OTHER_EVENT_ID = "evt-jazz-2026"


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Base SQLite en archivo (varias conexiones, como varias instancias de la API)"""
    engine, session_maker = make_async_engine(f"sqlite:///{tmp_path / 'gate.db'}")
    await create_schema(engine)
    try:
        yield session_maker
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec("test-qr-secret")


class RecordingBus(OutcomeBus):
    def __init__(self):
        super().__init__()
        self.outcomes: List = []
        self.subscribe(self.outcomes.append)


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


async def add_ticket(
    session,
    codec: TokenCodec,
    ticket_number: str = "EVTR-1-AAAAAA",
    event_id: str = EVENT_ID,
    booking_id: str = "BK-1001",
    event_date: Optional[datetime] = None,
    status: str = TicketStatus.UNUSED,
):
    """Insertar un ticket y retornar (ticket_id, token)"""
    ticket = Ticket(
        event_id=event_id,
        booking_id=booking_id,
        ticket_number=ticket_number,
        ticket_type="general",
        holder_name="Ana Pérez",
        seat="A-12",
        event_name="Rock Fest",
        event_date=event_date,
        status=status,
        token_nonce="pending",
    )
    ticket.id = f"tkt-{ticket_number}"
    payload = codec.new_payload(
        ticket_id=ticket.id,
        ticket_number=ticket_number,
        ticket_type="general",
        event_id=event_id,
        booking_id=booking_id,
        event_date=event_date,
    )
    ticket.token_nonce = payload.nonce
    session.add(ticket)
    await session.commit()
    return ticket.id, codec.encode(payload)


async def add_order(session, order_id: str = "ORD-1", total: str = "150.00", currency: str = "INR",
                    status: str = OrderStatus.PENDING):
    order = Order(id=order_id, total=Decimal(total), currency=currency, status=status)
    session.add(order)
    await session.commit()
    return order


def signed_callback(
    order_id: str = "ORD-1",
    status: str = "CHARGED",
    amount: str = "150.00",
    currency: str = "INR",
    payment_id: str = "pay_001",
    timestamp: Optional[int] = None,
    secret: str = WEBHOOK_SECRET,
) -> dict:
    """Callback firmado como lo haría la pasarela"""
    if timestamp is None:
        timestamp = int(datetime.now(timezone.utc).timestamp())
    fields = {
        "amount": amount,
        "currency": currency,
        "order_id": order_id,
        "payment_id": payment_id,
        "status": status,
        "timestamp": timestamp,
    }
    fields["signature"] = signer.sign(signer.canonicalize(fields), secret)
    return fields


def past(**kwargs) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**kwargs)
