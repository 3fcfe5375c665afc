"""Operaciones acotadas contra el datastore: timeout sin reintento, reintento ante error de conexión"""
import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from shared.database.models import Ticket
from shared.utils.errors import StoreTimeoutError, StoreUnavailableError
from shared.utils.retry import run_store_operation

from conftest import add_ticket


def _connection_error():
    return OperationalError("UPDATE tickets", {}, ConnectionResetError("connection reset"))


async def _seat(session_factory, ticket_id):
    async with session_factory() as session:
        result = await session.execute(select(Ticket.seat).where(Ticket.id == ticket_id))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_timeout_rolls_back_and_is_not_retried(session_factory, db, codec):
    ticket_id, _ = await add_ticket(db, codec)
    attempts = []

    async def slow_update():
        attempts.append(1)
        await db.execute(update(Ticket).where(Ticket.id == ticket_id).values(seat="Z-99"))
        await asyncio.sleep(5)
        await db.commit()

    with pytest.raises(StoreTimeoutError):
        await run_store_operation(db, slow_update, timeout=0.05, max_retries=3, initial_delay=0)

    assert len(attempts) == 1
    assert await _seat(session_factory, ticket_id) == "A-12"


@pytest.mark.asyncio
async def test_connection_error_rolls_back_and_retries_operation(session_factory, db, codec):
    ticket_id, _ = await add_ticket(db, codec)
    attempts = []

    async def flaky_update():
        attempts.append(1)
        await db.execute(update(Ticket).where(Ticket.id == ticket_id).values(seat=f"B-{len(attempts)}"))
        if len(attempts) == 1:
            raise _connection_error()
        await db.commit()

    await run_store_operation(db, flaky_update, timeout=2, max_retries=2, initial_delay=0)

    assert len(attempts) == 2
    assert await _seat(session_factory, ticket_id) == "B-2"


@pytest.mark.asyncio
async def test_persistent_connection_error_surfaces_as_unavailable():
    db = AsyncMock()
    operation = AsyncMock(side_effect=_connection_error())

    with pytest.raises(StoreUnavailableError):
        await run_store_operation(db, operation, timeout=1, max_retries=2, initial_delay=0)

    assert operation.await_count == 3
    assert db.rollback.await_count == 3


@pytest.mark.asyncio
async def test_timeout_with_mock_session_rolls_back_once():
    db = AsyncMock()

    async def never_finishes():
        await asyncio.sleep(5)

    with pytest.raises(StoreTimeoutError):
        await run_store_operation(db, never_finishes, timeout=0.01, max_retries=2, initial_delay=0)

    db.rollback.assert_awaited_once()
