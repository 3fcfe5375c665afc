"""Eventos emitidos por el motor de validación y callbacks"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class VerificationOutcome(BaseModel):
    kind: str = "verification"
    status: str
    event_id: str
    scanner_id: str
    ticket_id: Optional[str] = None
    ticket_number: Optional[str] = None
    manual: bool = False
    occurred_at: datetime


class CallbackOutcome(BaseModel):
    kind: str = "callback"
    decision: str  # accept, replay, invalid_signature, stale_timestamp
    source: str  # redirect, webhook
    order_id: Optional[str] = None
    fingerprint: Optional[str] = None
    occurred_at: datetime
