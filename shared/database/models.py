"""Modelos SQLAlchemy del motor de validación y callbacks"""
from sqlalchemy import Column, String, DateTime, Numeric, Text, Index
from sqlalchemy.sql import func
import uuid
from shared.database.connection import Base


def _uuid_str() -> str:
    return str(uuid.uuid4())


class TicketStatus:
    UNUSED = "unused"
    USED = "used"
    CANCELLED = "cancelled"


class OrderStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Ticket(Base):
    __tablename__ = "tickets"

    # IDs como string para ser portables entre Postgres y SQLite
    id = Column(String(36), primary_key=True, default=_uuid_str)
    event_id = Column(String(64), nullable=False, index=True)
    booking_id = Column(String(64), nullable=False, index=True)  # Índice secundario, no único
    ticket_number = Column(String(64), unique=True, nullable=False, index=True)
    ticket_type = Column(String, nullable=False, server_default="general")
    holder_name = Column(String, nullable=True)
    seat = Column(String, nullable=True)
    event_name = Column(String, nullable=True)
    event_date = Column(DateTime(timezone=True), nullable=True)
    token_nonce = Column(String(64), nullable=False)  # Nonce del token vigente
    status = Column(String(16), nullable=False, server_default=TicketStatus.UNUSED)  # unused, used, cancelled
    issued_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)  # Solo en unused -> used
    used_by = Column(String(64), nullable=True)  # Scanner que hizo el check-in
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ReplayRecord(Base):
    """
    Registro de callbacks ya admitidos

    La PK sobre fingerprint es la que garantiza un único ganador.
    Nunca se actualiza; se poda después de REPLAY_RETENTION_SECONDS.
    """
    __tablename__ = "replay_records"

    fingerprint = Column(String(64), primary_key=True)
    source = Column(String(16), nullable=False)  # redirect, webhook
    order_id = Column(String(64), nullable=True)
    outcome = Column(Text, nullable=True)  # JSON con el resultado admitido
    first_seen_at = Column(DateTime(timezone=True), nullable=False, index=True)


class Order(Base):
    """Orden de compra (tabla de la capa de persistencia, columnas mínimas)"""
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, default=_uuid_str)
    status = Column(String(16), nullable=False, server_default=OrderStatus.PENDING)
    total = Column(Numeric(12, 2), nullable=False, server_default="0")
    currency = Column(String(8), nullable=False, server_default="INR")
    payment_provider = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ScanLog(Base):
    """Intentos de escaneo (uno por verificación, exitosa o no)"""
    __tablename__ = "ticket_scans"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    ticket_id = Column(String(36), nullable=True)
    ticket_number = Column(String(64), nullable=True)
    event_id = Column(String(64), nullable=False)
    scanner_id = Column(String(64), nullable=False)
    verdict = Column(String(16), nullable=False)
    scanned_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_ticket_scans_event_verdict", "event_id", "verdict"),
    )
