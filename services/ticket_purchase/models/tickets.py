"""Modelos Pydantic para emisión y administración de tickets"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class IssueTicketRequest(BaseModel):
    event_id: str = Field(..., min_length=1, max_length=64)
    booking_id: str = Field(..., min_length=1, max_length=64)
    ticket_type: str = "general"
    holder_name: Optional[str] = None
    seat: Optional[str] = None
    event_name: Optional[str] = None
    event_date: Optional[datetime] = None


class IssuedTicket(BaseModel):
    ticket_id: str
    ticket_number: str
    token: str
    expires_at: datetime


class TicketStatusResponse(BaseModel):
    success: bool
    ticket_id: str
    status: Optional[str] = None
    message: str
