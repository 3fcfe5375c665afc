"""
Ledger de replay: registro atómico de callbacks ya admitidos

admit_once es un único insert-if-absent en el datastore (PK / SET NX),
nunca un read-then-write, así que es linearizable entre instancias.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from shared.cache import redis_client
from shared.database.models import ReplayRecord
from shared.utils.errors import StoreTimeoutError, StoreUnavailableError
from shared.utils.retry import retry_with_backoff, run_store_operation

logger = logging.getLogger(__name__)


class AdmitResult(BaseModel):
    admitted: bool
    fingerprint: str
    first_seen_at: Optional[datetime] = None
    outcome: Optional[Dict[str, Any]] = None  # Resultado de la primera admisión (en duplicados)


def _load_outcome(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


class SqlReplayLedger:
    """Ledger sobre la tabla replay_records (PK = fingerprint)"""

    def __init__(self, db: AsyncSession, store_timeout: Optional[float] = None, store_retries: Optional[int] = None):
        self.db = db
        self.store_timeout = store_timeout if store_timeout is not None else settings.STORE_TIMEOUT_SECONDS
        self.store_retries = store_retries if store_retries is not None else settings.STORE_RETRY_ATTEMPTS

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "sqlite":
            return sqlite_insert(ReplayRecord)
        return pg_insert(ReplayRecord)

    async def admit_once(
        self,
        fingerprint: str,
        source: str,
        order_id: Optional[str] = None,
        outcome: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> AdmitResult:
        """Insertar fingerprint; exactamente un llamador concurrente gana"""
        first_seen_at = now or datetime.now(timezone.utc)
        stmt = (
            self._insert()
            .values(
                fingerprint=fingerprint,
                source=source,
                order_id=order_id,
                outcome=json.dumps(outcome) if outcome is not None else None,
                first_seen_at=first_seen_at,
            )
            .on_conflict_do_nothing(index_elements=["fingerprint"])
            .returning(ReplayRecord.fingerprint)
        )

        async def insert_if_absent():
            result = await self.db.execute(stmt)
            inserted = result.first()
            await self.db.commit()
            return inserted

        inserted = await run_store_operation(self.db, insert_if_absent, self.store_timeout, self.store_retries)
        if inserted is not None:
            return AdmitResult(admitted=True, fingerprint=fingerprint, first_seen_at=first_seen_at)

        async def read_original():
            result = await self.db.execute(
                select(ReplayRecord).where(ReplayRecord.fingerprint == fingerprint)
            )
            record = result.scalar_one_or_none()
            await self.db.commit()
            return record

        record = await run_store_operation(self.db, read_original, self.store_timeout, self.store_retries)
        return AdmitResult(
            admitted=False,
            fingerprint=fingerprint,
            first_seen_at=record.first_seen_at if record else None,
            outcome=_load_outcome(record.outcome) if record else None
        )

    async def prune(self, older_than: datetime) -> int:
        """Eliminar registros anteriores a older_than; retorna cantidad eliminada"""
        async def delete_old():
            result = await self.db.execute(
                delete(ReplayRecord)
                .where(ReplayRecord.first_seen_at < older_than)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            return result.rowcount or 0

        removed = await run_store_operation(self.db, delete_old, self.store_timeout, self.store_retries)
        logger.info(f"Replay ledger: {removed} registros podados (anteriores a {older_than.isoformat()})")
        return removed


class RedisReplayLedger:
    """Ledger sobre Redis (SET NX EX); la poda la hace el TTL"""

    KEY_PREFIX = "replay:"

    def __init__(
        self,
        retention_seconds: Optional[int] = None,
        store_timeout: Optional[float] = None,
        store_retries: Optional[int] = None
    ):
        self.retention_seconds = retention_seconds or settings.REPLAY_RETENTION_SECONDS
        self.store_timeout = store_timeout if store_timeout is not None else settings.STORE_TIMEOUT_SECONDS
        self.store_retries = store_retries if store_retries is not None else settings.STORE_RETRY_ATTEMPTS

    async def _call(self, coro_factory):
        """Acotar una llamada a Redis y mapear sus errores a los del datastore"""
        async def attempt():
            try:
                return await asyncio.wait_for(coro_factory(), timeout=self.store_timeout)
            except (asyncio.TimeoutError, RedisTimeoutError) as e:
                raise StoreTimeoutError(f"Redis excedió {self.store_timeout}s") from e
            except RedisConnectionError as e:
                raise StoreUnavailableError(f"Redis no disponible: {e}") from e

        return await retry_with_backoff(
            attempt,
            max_retries=self.store_retries,
            initial_delay=0.1,
            max_delay=1.0,
            exceptions=(StoreUnavailableError,)
        )

    async def admit_once(
        self,
        fingerprint: str,
        source: str,
        order_id: Optional[str] = None,
        outcome: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> AdmitResult:
        first_seen_at = now or datetime.now(timezone.utc)
        key = f"{self.KEY_PREFIX}{fingerprint}"
        record = {
            "source": source,
            "order_id": order_id,
            "outcome": outcome,
            "first_seen_at": first_seen_at.isoformat(),
        }

        admitted = await self._call(
            lambda: redis_client.set_if_absent(key, record, expire=self.retention_seconds)
        )
        if admitted:
            return AdmitResult(admitted=True, fingerprint=fingerprint, first_seen_at=first_seen_at)

        original = await self._call(lambda: redis_client.cache_get(key))
        if not isinstance(original, dict):
            return AdmitResult(admitted=False, fingerprint=fingerprint)
        return AdmitResult(
            admitted=False,
            fingerprint=fingerprint,
            first_seen_at=original.get("first_seen_at"),
            outcome=original.get("outcome")
        )

    async def prune(self, older_than: datetime) -> int:
        # Las keys expiran solas después de retention_seconds
        return 0


def get_replay_ledger(db: AsyncSession):
    """Ledger configurado en REPLAY_LEDGER_BACKEND"""
    if settings.REPLAY_LEDGER_BACKEND == "redis":
        return RedisReplayLedger()
    return SqlReplayLedger(db)


def retention_cutoff(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now - timedelta(seconds=settings.REPLAY_RETENTION_SECONDS)
