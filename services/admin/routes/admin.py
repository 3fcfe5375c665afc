"""Rutas de administración"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from redis.exceptions import RedisError
from typing import Dict
import logging

from app.core.config import settings
from shared.database.connection import get_db
from shared.auth.dependencies import get_current_admin
from shared.cache.redis_client import cache_get, cache_set
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.admin.models.admin import EventScanStatsResponse
from services.admin.services.stats_service import StatsService

logger = logging.getLogger(__name__)

router = APIRouter()


# ==================== STATS ====================

@router.get("/stats/events/{event_id}", response_model=EventScanStatsResponse)
@limiter.limit(RATE_LIMITS["admin"])
async def get_event_scan_stats(
    request: Request,
    event_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """
    Estadísticas de check-in de un evento

    Cacheadas en Redis por STATS_CACHE_SECONDS; si Redis no responde
    se calculan directo desde la base de datos.
    Requiere autenticación de admin
    """
    cache_key = f"stats:event:{event_id}"
    try:
        cached = await cache_get(cache_key)
    except RedisError as e:
        logger.warning(f"Cache de estadísticas no disponible: {e}")
        cached = None
    if isinstance(cached, dict):
        cached["cached"] = True
        return EventScanStatsResponse(**cached)

    stats = EventScanStatsResponse(**await StatsService().get_event_scan_stats(db, event_id))

    try:
        await cache_set(cache_key, stats.model_dump(mode="json"), expire=settings.STATS_CACHE_SECONDS)
    except RedisError as e:
        logger.warning(f"No se pudo guardar estadísticas en cache: {e}")

    return stats
