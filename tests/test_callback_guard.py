import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from services.ticket_purchase.models.purchase import CallbackDecisionKind, CallbackEnvelope, CallbackSource
from services.ticket_purchase.services.callback_guard import CallbackGuard, callback_fingerprint
from services.ticket_purchase.services.replay_ledger import SqlReplayLedger

from conftest import WEBHOOK_SECRET, signed_callback


def _guard(db, bus, **kwargs):
    return CallbackGuard(ledger=SqlReplayLedger(db), secret=WEBHOOK_SECRET, bus=bus, **kwargs)


def _envelope(source=CallbackSource.WEBHOOK, **fields):
    return CallbackEnvelope.model_validate({**signed_callback(**fields), "source": source})


@pytest.mark.asyncio
async def test_accept_then_identical_resend_is_replay(db, bus):
    guard = _guard(db, bus)
    envelope = _envelope(order_id="ORD123")

    first = await guard.admit(envelope)
    assert first.decision == CallbackDecisionKind.ACCEPT
    assert first.http_status == 200

    second = await guard.admit(envelope.model_copy())
    assert second.decision == CallbackDecisionKind.REPLAY
    assert second.http_status == 409
    assert second.original_outcome["status"] == "CHARGED"
    assert second.fingerprint == first.fingerprint

    assert [o.decision for o in bus.outcomes] == ["accept", "replay"]


@pytest.mark.asyncio
async def test_redirect_and_webhook_for_same_payment_admit_once(db, bus):
    guard = _guard(db, bus)
    fields = signed_callback(order_id="ORD123")
    webhook = CallbackEnvelope.model_validate({**fields, "source": "webhook"})
    redirect = CallbackEnvelope.model_validate({**fields, "source": "redirect"})

    assert (await guard.admit(redirect)).accepted
    assert (await guard.admit(webhook)).decision == CallbackDecisionKind.REPLAY


@pytest.mark.asyncio
async def test_changed_order_id_with_old_signature_is_invalid(db, bus):
    fields = signed_callback(order_id="ORD123")
    fields["order_id"] = "ORD124"
    decision = await _guard(db, bus).admit(CallbackEnvelope.model_validate(fields))
    assert decision.decision == CallbackDecisionKind.INVALID_SIGNATURE
    assert decision.http_status == 400


@pytest.mark.asyncio
async def test_any_signed_field_change_is_invalid(db, bus):
    guard = _guard(db, bus)
    for field, value in (("amount", "1.00"), ("currency", "USD"), ("status", "failed"),
                         ("payment_id", "pay_999"), ("timestamp", 1)):
        fields = signed_callback()
        fields[field] = value
        decision = await guard.admit(CallbackEnvelope.model_validate(fields))
        assert decision.decision == CallbackDecisionKind.INVALID_SIGNATURE, field


@pytest.mark.asyncio
async def test_wrong_secret_is_invalid(db, bus):
    envelope = CallbackEnvelope.model_validate(signed_callback(secret="attacker"))
    decision = await _guard(db, bus).admit(envelope)
    assert decision.decision == CallbackDecisionKind.INVALID_SIGNATURE


@pytest.mark.asyncio
async def test_twenty_minutes_old_is_stale(db, bus):
    timestamp = int((datetime.now(timezone.utc) - timedelta(minutes=20)).timestamp())
    decision = await _guard(db, bus).admit(_envelope(timestamp=timestamp))
    assert decision.decision == CallbackDecisionKind.STALE_TIMESTAMP
    assert decision.http_status == 400


@pytest.mark.asyncio
async def test_freshness_window_edges(db, bus):
    now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    guard = _guard(db, bus, window_seconds=900, clock_skew_seconds=60)
    ts = int(now.timestamp())

    assert guard.is_fresh(_envelope(timestamp=ts - 900), now)
    assert not guard.is_fresh(_envelope(timestamp=ts - 901), now)
    assert guard.is_fresh(_envelope(timestamp=ts + 60), now)
    assert not guard.is_fresh(_envelope(timestamp=ts + 61), now)
    # Milisegundos
    assert guard.is_fresh(_envelope(timestamp=(ts - 10) * 1000), now)
    assert not guard.is_fresh(_envelope(timestamp=(ts - 3600) * 1000), now)


@pytest.mark.asyncio
async def test_stale_callback_is_not_recorded(db, bus):
    """Un callback rechazado no consume su fingerprint"""
    guard = _guard(db, bus)
    envelope = _envelope(order_id="ORD555")
    later = datetime.now(timezone.utc) + timedelta(hours=1)

    assert (await guard.admit(envelope, now=later)).decision == CallbackDecisionKind.STALE_TIMESTAMP
    assert (await guard.admit(envelope)).decision == CallbackDecisionKind.ACCEPT


@pytest.mark.asyncio
async def test_concurrent_identical_callbacks_admit_exactly_once(session_factory, bus):
    envelope = _envelope(order_id="ORD777")

    async def deliver(i):
        async with session_factory() as session:
            source = CallbackSource.REDIRECT if i % 2 else CallbackSource.WEBHOOK
            return await _guard(session, bus).admit(envelope.model_copy(update={"source": source}))

    decisions = await asyncio.gather(*(deliver(i) for i in range(6)))
    kinds = [d.decision for d in decisions]
    assert kinds.count(CallbackDecisionKind.ACCEPT) == 1
    assert kinds.count(CallbackDecisionKind.REPLAY) == 5


def test_fingerprint_depends_on_order_and_signature():
    a = _envelope(order_id="ORD1")
    b = _envelope(order_id="ORD2")
    assert callback_fingerprint(a) != callback_fingerprint(b)
    assert callback_fingerprint(a) == callback_fingerprint(a.model_copy(update={"source": CallbackSource.REDIRECT}))


def test_numeric_amount_is_kept_as_text():
    envelope = CallbackEnvelope.model_validate({**signed_callback(), "amount": 150})
    assert envelope.amount == "150"
