"""
Guardia de callbacks de pago: firma, frescura y admisión única

El mismo admit() atiende el redirect del navegador y el webhook
server-to-server; el ledger de replay decide cuál llega primero.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from app.core.config import settings
from services.notifications.models.outcomes import CallbackOutcome
from services.notifications.services.outcome_bus import OutcomeBus, outcome_bus
from services.ticket_purchase.models.purchase import (
    CallbackDecision,
    CallbackDecisionKind,
    CallbackEnvelope
)
from shared.utils import signer

logger = logging.getLogger(__name__)


def callback_fingerprint(envelope: CallbackEnvelope) -> str:
    """Llave de replay: hash(order_id, signature)"""
    return signer.fingerprint({"order_id": envelope.order_id, "signature": envelope.signature})


class CallbackGuard:
    def __init__(
        self,
        ledger,
        secret: Optional[str] = None,
        window_seconds: Optional[int] = None,
        clock_skew_seconds: Optional[int] = None,
        bus: Optional[OutcomeBus] = None
    ):
        self.ledger = ledger
        self.secret = secret or settings.PAYMENT_WEBHOOK_SECRET
        self.window_seconds = window_seconds if window_seconds is not None else settings.CALLBACK_WINDOW_SECONDS
        self.clock_skew_seconds = (
            clock_skew_seconds if clock_skew_seconds is not None else settings.CALLBACK_CLOCK_SKEW_SECONDS
        )
        self.bus = bus or outcome_bus

    def verify_signature(self, envelope: CallbackEnvelope) -> bool:
        canonical = signer.canonicalize(envelope.signed_fields())
        return signer.verify(canonical, envelope.signature, self.secret)

    def is_fresh(self, envelope: CallbackEnvelope, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        age = int(now.timestamp()) - envelope.timestamp_seconds()
        if age < 0:
            return -age <= self.clock_skew_seconds
        return age <= self.window_seconds

    async def admit(self, envelope: CallbackEnvelope, now: Optional[datetime] = None) -> CallbackDecision:
        """
        Decidir si un callback se procesa

        Returns:
            CallbackDecision: accept, replay, invalid_signature o stale_timestamp

        Raises:
            StoreUnavailableError / StoreTimeoutError desde el ledger
        """
        if not self.verify_signature(envelope):
            logger.warning(f"Firma inválida en callback de orden {envelope.order_id} ({envelope.source.value})")
            return self._decide(CallbackDecision(decision=CallbackDecisionKind.INVALID_SIGNATURE), envelope)

        if not self.is_fresh(envelope, now):
            logger.warning(
                f"Callback fuera de ventana para orden {envelope.order_id}: timestamp {envelope.timestamp}"
            )
            return self._decide(CallbackDecision(decision=CallbackDecisionKind.STALE_TIMESTAMP), envelope)

        fingerprint = callback_fingerprint(envelope)
        result = await self.ledger.admit_once(
            fingerprint,
            source=envelope.source.value,
            order_id=envelope.order_id,
            outcome={"status": envelope.status, "payment_id": envelope.payment_id},
            now=now
        )

        if not result.admitted:
            logger.warning(
                f"Replay detectado para orden {envelope.order_id} "
                f"(primera vez: {result.first_seen_at}, origen actual: {envelope.source.value})"
            )
            return self._decide(
                CallbackDecision(
                    decision=CallbackDecisionKind.REPLAY,
                    fingerprint=fingerprint,
                    first_seen_at=result.first_seen_at,
                    original_outcome=result.outcome
                ),
                envelope
            )

        logger.info(f"Callback admitido para orden {envelope.order_id} ({envelope.source.value})")
        return self._decide(
            CallbackDecision(
                decision=CallbackDecisionKind.ACCEPT,
                fingerprint=fingerprint,
                first_seen_at=result.first_seen_at
            ),
            envelope
        )

    def _decide(self, decision: CallbackDecision, envelope: CallbackEnvelope) -> CallbackDecision:
        self.bus.publish(CallbackOutcome(
            decision=decision.decision.value,
            source=envelope.source.value,
            order_id=envelope.order_id,
            fingerprint=decision.fingerprint,
            occurred_at=datetime.now(timezone.utc)
        ))
        return decision
