"""Modelos Pydantic para callbacks de pago"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Campos firmados por la pasarela (conjunto fijo y documentado)
SIGNED_FIELDS = ("amount", "currency", "order_id", "payment_id", "status", "timestamp")


class CallbackSource(str, Enum):
    REDIRECT = "redirect"
    WEBHOOK = "webhook"


class CallbackEnvelope(BaseModel):
    """Datos crudos del callback (redirect del navegador o webhook server-to-server)"""
    model_config = ConfigDict(extra="ignore")

    order_id: str = Field(..., min_length=1, max_length=64)
    status: str = Field(..., min_length=1, max_length=32)
    amount: str  # Como string: la firma se calcula sobre el texto recibido
    currency: str = Field(..., min_length=1, max_length=8)
    timestamp: int  # epoch en segundos (se aceptan milisegundos)
    signature: str = Field(..., min_length=1, max_length=256)
    payment_id: Optional[str] = None
    webhook_id: Optional[str] = None
    source: CallbackSource = CallbackSource.WEBHOOK

    @field_validator("amount", "payment_id", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("order_id", "status", "amount", "currency", "signature", "payment_id", "webhook_id")
    @classmethod
    def _encodable(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                value.encode("utf-8")
            except UnicodeEncodeError:
                raise ValueError("Texto no es UTF-8 válido")
        return value

    def signed_fields(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in SIGNED_FIELDS}

    def timestamp_seconds(self) -> int:
        # Pasarelas que envían milisegundos (Date.now())
        if self.timestamp > 10 ** 11:
            return self.timestamp // 1000
        return self.timestamp


class CallbackDecisionKind(str, Enum):
    ACCEPT = "accept"
    REPLAY = "replay"
    INVALID_SIGNATURE = "invalid_signature"
    STALE_TIMESTAMP = "stale_timestamp"


# Equivalente HTTP de cada decisión
DECISION_STATUS_CODES = {
    CallbackDecisionKind.ACCEPT: 200,
    CallbackDecisionKind.REPLAY: 409,
    CallbackDecisionKind.INVALID_SIGNATURE: 400,
    CallbackDecisionKind.STALE_TIMESTAMP: 400,
}


class CallbackDecision(BaseModel):
    decision: CallbackDecisionKind
    fingerprint: Optional[str] = None
    first_seen_at: Optional[datetime] = None
    original_outcome: Optional[Dict[str, Any]] = None

    @property
    def accepted(self) -> bool:
        return self.decision == CallbackDecisionKind.ACCEPT

    @property
    def http_status(self) -> int:
        return DECISION_STATUS_CODES[self.decision]


class PaymentApplyResult(BaseModel):
    order_id: str
    applied: bool
    order_status: Optional[str] = None
    message: str


class CallbackResponse(BaseModel):
    status: str  # ok, replay, error
    decision: CallbackDecisionKind
    message: str
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    original_outcome: Optional[Dict[str, Any]] = None
