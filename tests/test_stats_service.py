from datetime import datetime, timedelta, timezone

import pytest

from shared.database.models import TicketStatus
from services.admin.services.stats_service import StatsService
from services.notifications.models.outcomes import VerificationOutcome
from services.notifications.tasks.outcome_tasks import persist_scan_log
from services.ticket_validation.models.ticket import ScanningContext
from services.ticket_validation.services.ticket_service import TicketVerifier

from conftest import EVENT_ID, OTHER_EVENT_ID, add_ticket


@pytest.mark.asyncio
async def test_event_scan_stats(db, codec, bus):
    _, token_a = await add_ticket(db, codec, ticket_number="EVTR-1-AAAAAA")
    _, token_b = await add_ticket(db, codec, ticket_number="EVTR-1-BBBBBB")
    await add_ticket(db, codec, ticket_number="EVTR-1-CCCCCC")
    await add_ticket(db, codec, ticket_number="EVTR-1-DDDDDD", status=TicketStatus.CANCELLED)
    await add_ticket(db, codec, ticket_number="EVTJ-1-EEEEEE", event_id=OTHER_EVENT_ID)

    verifier = TicketVerifier(codec=codec, bus=bus)
    hour = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0) - timedelta(hours=2)
    context = ScanningContext(event_id=EVENT_ID, scanner_id="scanner-1")
    await verifier.consume(db, token_a, context, now=hour + timedelta(minutes=5))
    await verifier.consume(db, token_b, context, now=hour + timedelta(minutes=55))
    await verifier.consume(db, token_a, context, now=hour + timedelta(hours=1, minutes=1))

    for outcome in bus.outcomes:
        await persist_scan_log(db, outcome)

    stats = await StatsService().get_event_scan_stats(db, EVENT_ID)

    assert stats["total_tickets"] == 4
    assert stats["by_status"] == {"unused": 1, "used": 2, "cancelled": 1}
    assert stats["scans_per_hour"] == [{"hour": hour, "count": 2}]
    assert stats["scan_attempts_by_verdict"] == {"success": 2, "already_used": 1}
    assert stats["checkin_rate"] == pytest.approx(66.67)


@pytest.mark.asyncio
async def test_stats_for_event_without_tickets(db):
    stats = await StatsService().get_event_scan_stats(db, "evt-empty")
    assert stats["total_tickets"] == 0
    assert stats["checkin_rate"] == 0.0
    assert stats["scans_per_hour"] == []
    assert stats["scan_attempts_by_verdict"] == {}


@pytest.mark.asyncio
async def test_persist_scan_log_keeps_outcome_fields(db):
    outcome = VerificationOutcome(
        status="wrong_event",
        event_id=EVENT_ID,
        scanner_id="scanner-7",
        ticket_number="EVTJ-1-EEEEEE",
        occurred_at=datetime.now(timezone.utc),
    )
    scan = await persist_scan_log(db, outcome)
    assert scan.verdict == "wrong_event"
    assert scan.scanner_id == "scanner-7"
    assert scan.ticket_id is None
