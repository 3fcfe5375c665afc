"""Modelos Pydantic para validación de tickets"""
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class TicketTokenPayloadV2(BaseModel):
    """
    Payload cifrado dentro del token QR (formato EVTKT2)

    `v` es el tag de versión; campos extra o faltantes invalidan el token.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    v: Literal[2] = 2
    tid: str  # ticket id
    tno: str  # ticket number (identidad canónica)
    typ: str  # ticket type
    eid: str  # event id
    bid: str  # booking id
    iat: int  # emitido (epoch segundos)
    exp: int  # expira (epoch segundos)
    nonce: str  # nonce aleatorio por encode


# Alias del payload vigente
TicketTokenPayload = TicketTokenPayloadV2


class ScanningContext(BaseModel):
    event_id: str
    scanner_id: str


class VerificationStatus(str, Enum):
    SUCCESS = "success"
    ALREADY_USED = "already_used"
    INVALID = "invalid"
    WRONG_EVENT = "wrong_event"
    EXPIRED = "expired"


class TicketInfo(BaseModel):
    ticket_id: str
    ticket_number: str
    ticket_type: Optional[str] = None
    event_id: str
    event_name: Optional[str] = None
    booking_id: Optional[str] = None
    holder_name: Optional[str] = None
    seat: Optional[str] = None


class VerificationVerdict(BaseModel):
    verified: bool
    status: VerificationStatus
    message: str
    ticket: Optional[TicketInfo] = None
    used_at: Optional[datetime] = None
    used_by: Optional[str] = None


class TicketValidationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)
    event_id: str


class ManualValidationRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=128)  # ticket number o booking id
    event_id: str
