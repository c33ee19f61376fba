"""In-process publish/subscribe bus for lifecycle and OTP notifications.

Transport to browsers is owned by an external realtime gateway. The core only
names events, scopes them to recipients and hands them to subscribers. State
transitions are committed before anything is published, so a failing
subscriber is logged and never affects the transition.
"""
from __future__ import annotations

import itertools
from collections import deque
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

import httpx

from freightlink.core.config import get_settings
from freightlink.core.logging import logger
from freightlink.models.events import EventName, EventScope, MarketplaceEvent
from freightlink.models.marketplace import UserRole


EventHandler = Callable[[MarketplaceEvent], None]

SECRET_PAYLOAD_KEYS = {"code", "otp_code"}


def _channel_key(scope: EventScope, recipient_role: Optional[UserRole], recipient_id: Optional[str]) -> str:
    if scope == EventScope.ACTOR:
        return f"actor:{recipient_role.value}:{recipient_id}"
    if scope == EventScope.ROLE:
        return f"role:{recipient_role.value if recipient_role else ''}"
    return "broadcast"


class EventBus:
    """Typed topic bus keyed by event name and recipient scope."""

    def __init__(self, max_retries: Optional[int] = None, feed_size: Optional[int] = None) -> None:
        settings = get_settings()
        self._max_retries = settings.event_publish_retries if max_retries is None else max_retries
        self._feed_size = feed_size or settings.event_feed_size
        self._lock = RLock()
        self._subscribers: Dict[Optional[EventName], List[EventHandler]] = {}
        self._feeds: Dict[str, Deque[MarketplaceEvent]] = {}
        self._sequence = itertools.count(1)
        self.delivery_failures = 0

    def subscribe(
        self,
        handler: EventHandler,
        events: Optional[Iterable[EventName]] = None,
    ) -> Callable[[], None]:
        """Register a handler for the given topics (all topics when omitted)."""
        topics: List[Optional[EventName]] = list(events) if events else [None]
        with self._lock:
            for topic in topics:
                self._subscribers.setdefault(topic, []).append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                for topic in topics:
                    handlers = self._subscribers.get(topic, [])
                    if handler in handlers:
                        handlers.remove(handler)

        return _unsubscribe

    def publish(
        self,
        event: EventName,
        entity_id: str,
        new_status: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        scope: EventScope = EventScope.BROADCAST,
        recipient_role: Optional[UserRole] = None,
        recipient_id: Optional[str] = None,
    ) -> MarketplaceEvent:
        body = dict(payload or {})
        if SECRET_PAYLOAD_KEYS & set(body):
            # OTP codes travel out of band; only the issuing admin's own channel may carry one.
            if not (scope == EventScope.ACTOR and recipient_role == UserRole.ADMIN and recipient_id):
                raise ValueError(f"Event {event.value} carries an OTP code and must target a single admin")
        if scope == EventScope.ACTOR and not (recipient_id and recipient_role):
            raise ValueError("Actor-scoped events need a recipient_role and recipient_id")
        if scope == EventScope.ROLE and recipient_role is None:
            raise ValueError("Role-scoped events need a recipient_role")

        envelope = MarketplaceEvent(
            event_id=f"EVT-{next(self._sequence):08d}",
            event=event,
            entity_id=entity_id,
            new_status=new_status,
            timestamp=datetime.now(timezone.utc),
            scope=scope,
            recipient_role=recipient_role,
            recipient_id=recipient_id,
            payload=body,
        )

        with self._lock:
            key = _channel_key(scope, recipient_role, recipient_id)
            feed = self._feeds.get(key)
            if feed is None:
                feed = deque(maxlen=self._feed_size)
                self._feeds[key] = feed
            feed.append(envelope)
            handlers = list(self._subscribers.get(event, [])) + list(self._subscribers.get(None, []))

        for handler in handlers:
            self._deliver(handler, envelope)
        return envelope

    def _deliver(self, handler: EventHandler, event: MarketplaceEvent) -> bool:
        attempts = max(1, self._max_retries + 1)
        for attempt in range(1, attempts + 1):
            try:
                handler(event)
                return True
            except Exception as exc:
                if attempt < attempts:
                    logger.warning(
                        "Event delivery failed, retrying",
                        event_name=event.event.value,
                        event_id=event.event_id,
                        attempt=attempt,
                        error=str(exc),
                    )
                    continue
                self.delivery_failures += 1
                logger.error(
                    "Event delivery failed",
                    event_name=event.event.value,
                    event_id=event.event_id,
                    entity_id=event.entity_id,
                    attempts=attempts,
                    error=str(exc),
                )
        return False

    def feed_for(
        self,
        actor_id: str,
        role: UserRole,
        events: Optional[Set[EventName]] = None,
        limit: int = 100,
    ) -> List[MarketplaceEvent]:
        """Events visible to one actor: broadcast, their role channel and their own channel."""
        keys = ["broadcast", f"role:{role.value}", f"actor:{role.value}:{actor_id}"]
        with self._lock:
            rows = [event for key in keys for event in self._feeds.get(key, ())]
        if events:
            rows = [row for row in rows if row.event in events]
        rows.sort(key=lambda row: row.event_id)
        return rows[-max(1, limit):]


class HttpEventForwarder:
    """Subscriber that posts every event to the realtime gateway."""

    def __init__(self, url: str, timeout_seconds: float = 3.0, client: Optional[httpx.Client] = None) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def __call__(self, event: MarketplaceEvent) -> None:
        response = self._client.post(self.url, json=event.model_dump(mode="json"))
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


event_bus = EventBus()
