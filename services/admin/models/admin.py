"""Modelos Pydantic para endpoints de administración"""
from pydantic import BaseModel
from typing import Dict, List
from datetime import datetime


class HourlyScanBucket(BaseModel):
    hour: datetime
    count: int


class EventScanStatsResponse(BaseModel):
    """Respuesta con estadísticas de check-in de un evento"""
    event_id: str
    total_tickets: int
    by_status: Dict[str, int]
    scans_per_hour: List[HourlyScanBucket]
    scan_attempts_by_verdict: Dict[str, int]
    checkin_rate: float  # Porcentaje de tickets válidos ya usados
    cached: bool = False
