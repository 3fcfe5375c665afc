"""Bus en proceso para publicar resultados de verificación y callbacks"""
import logging
from typing import Callable, List, Union

from services.notifications.models.outcomes import CallbackOutcome, VerificationOutcome

logger = logging.getLogger(__name__)

Outcome = Union[VerificationOutcome, CallbackOutcome]
Subscriber = Callable[[Outcome], None]


class OutcomeBus:
    """
    Los suscriptores (logs, alertas, persistencia de escaneos) viven fuera del core.

    Un suscriptor que falla no afecta el veredicto ya decidido.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber):
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber):
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def publish(self, outcome: Outcome):
        for subscriber in list(self._subscribers):
            try:
                subscriber(outcome)
            except Exception:
                logger.exception(f"Suscriptor {getattr(subscriber, '__name__', subscriber)} falló procesando {outcome.kind}")


def log_outcome(outcome: Outcome):
    """Suscriptor por defecto: deja traza de cada resultado"""
    if isinstance(outcome, VerificationOutcome):
        level = logging.INFO if outcome.status == "success" else logging.WARNING
        logger.log(
            level,
            f"[SCAN] {outcome.status} - ticket: {outcome.ticket_number or '-'}, "
            f"evento: {outcome.event_id}, scanner: {outcome.scanner_id}, manual: {outcome.manual}"
        )
    else:
        level = logging.INFO if outcome.decision == "accept" else logging.WARNING
        logger.log(
            level,
            f"[CALLBACK] {outcome.decision} - orden: {outcome.order_id or '-'}, origen: {outcome.source}"
        )


outcome_bus = OutcomeBus()
outcome_bus.subscribe(log_outcome)
