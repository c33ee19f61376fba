"""Realtime event envelopes published by the transaction core."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from freightlink.models.marketplace import UserRole


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventName(str, Enum):
    """Topic names consumed verbatim by connected clients."""

    LOAD_UPDATED = "load_updated"
    OTP_REQUESTED = "otp_requested"
    OTP_APPROVED = "otp_approved"
    OTP_REJECTED = "otp_rejected"
    TRIP_COMPLETED = "trip_completed"
    DOCUMENT_UPLOADED = "document_uploaded"
    BID_RECEIVED = "bid_received"
    BID_COUNTERED = "bid_countered"
    BID_ACCEPTED = "bid_accepted"
    BID_REJECTED = "bid_rejected"


class EventScope(str, Enum):
    """Recipient scope of an event."""

    BROADCAST = "broadcast"
    ROLE = "role"
    ACTOR = "actor"


class MarketplaceEvent(BaseModel):
    event_id: str
    event: EventName
    entity_id: str
    new_status: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    scope: EventScope = EventScope.BROADCAST
    recipient_role: Optional[UserRole] = None
    recipient_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
