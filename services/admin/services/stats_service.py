"""Servicio para estadísticas de check-in por evento (solo lectura)"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from typing import Dict
from collections import Counter
from datetime import timezone

from shared.database.models import ScanLog, Ticket, TicketStatus


class StatsService:
    """Servicio para operaciones de estadísticas"""

    async def get_event_scan_stats(
        self,
        db: AsyncSession,
        event_id: str
    ) -> Dict:
        """
        Obtener estadísticas de check-in de un evento

        Args:
            db: Sesión de base de datos
            event_id: ID del evento

        Returns:
            Dict con conteo por estado, escaneos por hora, intentos por veredicto
            y tasa de check-in
        """
        # Tickets por estado
        stmt_status = (
            select(Ticket.status, func.count(Ticket.id))
            .where(Ticket.event_id == event_id)
            .group_by(Ticket.status)
        )
        result_status = await db.execute(stmt_status)
        by_status = {TicketStatus.UNUSED: 0, TicketStatus.USED: 0, TicketStatus.CANCELLED: 0}
        for ticket_status, count in result_status.all():
            by_status[ticket_status] = count

        # Check-ins por hora (agrupado en Python: portable entre Postgres y SQLite)
        stmt_used = select(Ticket.used_at).where(
            Ticket.event_id == event_id,
            Ticket.status == TicketStatus.USED,
            Ticket.used_at.is_not(None)
        )
        result_used = await db.execute(stmt_used)
        hourly = Counter()
        for (used_at,) in result_used.all():
            if used_at.tzinfo is None:
                used_at = used_at.replace(tzinfo=timezone.utc)
            bucket = used_at.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
            hourly[bucket] += 1

        # Intentos de escaneo por veredicto
        stmt_verdicts = (
            select(ScanLog.verdict, func.count(ScanLog.id))
            .where(ScanLog.event_id == event_id)
            .group_by(ScanLog.verdict)
        )
        result_verdicts = await db.execute(stmt_verdicts)
        by_verdict = {verdict: count for verdict, count in result_verdicts.all()}

        total_valid = by_status[TicketStatus.UNUSED] + by_status[TicketStatus.USED]
        checkin_rate = round(by_status[TicketStatus.USED] / total_valid * 100, 2) if total_valid else 0.0

        return {
            "event_id": event_id,
            "total_tickets": sum(by_status.values()),
            "by_status": by_status,
            "scans_per_hour": [
                {"hour": hour, "count": hourly[hour]} for hour in sorted(hourly)
            ],
            "scan_attempts_by_verdict": by_verdict,
            "checkin_rate": checkin_rate
        }
