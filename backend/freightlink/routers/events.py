"""Polling feed of realtime events visible to the calling actor."""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from freightlink.core.auth import ActorContext, get_actor_context
from freightlink.models.events import EventName
from freightlink.services.event_bus import event_bus

router = APIRouter(prefix="/events", tags=["events"])


@router.get("")
def get_event_feed(
    event: Optional[List[EventName]] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    context: ActorContext = Depends(get_actor_context),
):
    rows = event_bus.feed_for(
        context.actor_id,
        context.role,
        events=set(event) if event else None,
        limit=limit,
    )
    return {"events": [row.model_dump(mode="json") for row in rows], "count": len(rows)}
