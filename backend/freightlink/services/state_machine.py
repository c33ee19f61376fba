"""Authoritative (state, transition) tables for every lifecycle entity.

Services never compare status strings ad hoc; each move is checked against the
table for its entity through ``ensure_transition`` and rejected structurally
when the current state does not list it.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Mapping, TypeVar

from freightlink.core.errors import InvalidTransition
from freightlink.models.marketplace import BidStatus, LoadStatus, OtpRequestStatus, ShipmentStatus


S = TypeVar("S", bound=Enum)


# assigned_carrier_id is set if and only if the load is in one of these states.
CARRIER_ASSIGNED_STATUSES: FrozenSet[LoadStatus] = frozenset(
    {
        LoadStatus.AWARDED,
        LoadStatus.INVOICE_CREATED,
        LoadStatus.INVOICE_SENT,
        LoadStatus.INVOICE_ACKNOWLEDGED,
        LoadStatus.INVOICE_PAID,
        LoadStatus.IN_TRANSIT,
        LoadStatus.DELIVERED,
        LoadStatus.CLOSED,
    }
)

BIDDABLE_STATUSES: FrozenSet[LoadStatus] = frozenset({LoadStatus.OPEN_FOR_BID})

ACCEPTING_STATUSES: FrozenSet[LoadStatus] = frozenset({LoadStatus.OPEN_FOR_BID, LoadStatus.COUNTER_RECEIVED})


def _pre_award_exits(*extra: LoadStatus) -> FrozenSet[LoadStatus]:
    return frozenset({LoadStatus.CANCELLED, LoadStatus.UNAVAILABLE, *extra})


LOAD_TRANSITIONS: Mapping[LoadStatus, FrozenSet[LoadStatus]] = {
    LoadStatus.PENDING: _pre_award_exits(LoadStatus.PRICED),
    LoadStatus.PRICED: _pre_award_exits(LoadStatus.POSTED_TO_CARRIERS),
    LoadStatus.POSTED_TO_CARRIERS: _pre_award_exits(LoadStatus.OPEN_FOR_BID),
    LoadStatus.OPEN_FOR_BID: _pre_award_exits(LoadStatus.COUNTER_RECEIVED, LoadStatus.AWARDED),
    LoadStatus.COUNTER_RECEIVED: _pre_award_exits(LoadStatus.OPEN_FOR_BID, LoadStatus.AWARDED),
    LoadStatus.AWARDED: frozenset({LoadStatus.INVOICE_CREATED, LoadStatus.CANCELLED}),
    LoadStatus.INVOICE_CREATED: frozenset({LoadStatus.INVOICE_SENT, LoadStatus.CANCELLED}),
    LoadStatus.INVOICE_SENT: frozenset({LoadStatus.INVOICE_ACKNOWLEDGED, LoadStatus.CANCELLED}),
    LoadStatus.INVOICE_ACKNOWLEDGED: frozenset({LoadStatus.INVOICE_PAID, LoadStatus.CANCELLED}),
    LoadStatus.INVOICE_PAID: frozenset({LoadStatus.IN_TRANSIT, LoadStatus.CANCELLED}),
    LoadStatus.IN_TRANSIT: frozenset({LoadStatus.DELIVERED}),
    LoadStatus.DELIVERED: frozenset({LoadStatus.CLOSED}),
    LoadStatus.CLOSED: frozenset(),
    LoadStatus.CANCELLED: frozenset(),
    # Re-submission only; the re-entry target is a policy setting.
    LoadStatus.UNAVAILABLE: frozenset({LoadStatus.PENDING, LoadStatus.OPEN_FOR_BID}),
}

BID_TRANSITIONS: Mapping[BidStatus, FrozenSet[BidStatus]] = {
    BidStatus.PENDING: frozenset({BidStatus.ACCEPTED, BidStatus.REJECTED, BidStatus.COUNTERED, BidStatus.EXPIRED}),
    BidStatus.COUNTERED: frozenset({BidStatus.ACCEPTED, BidStatus.REJECTED, BidStatus.EXPIRED}),
    BidStatus.ACCEPTED: frozenset(),
    BidStatus.REJECTED: frozenset(),
    BidStatus.EXPIRED: frozenset(),
}

SHIPMENT_TRANSITIONS: Mapping[ShipmentStatus, FrozenSet[ShipmentStatus]] = {
    ShipmentStatus.ASSIGNED: frozenset({ShipmentStatus.IN_TRANSIT, ShipmentStatus.CANCELLED}),
    ShipmentStatus.IN_TRANSIT: frozenset({ShipmentStatus.DELIVERED}),
    ShipmentStatus.DELIVERED: frozenset(),
    ShipmentStatus.CANCELLED: frozenset(),
}

OTP_REQUEST_TRANSITIONS: Mapping[OtpRequestStatus, FrozenSet[OtpRequestStatus]] = {
    OtpRequestStatus.PENDING: frozenset({OtpRequestStatus.APPROVED, OtpRequestStatus.REJECTED}),
    # approved -> approved is a regeneration: fresh code, old one invalidated.
    OtpRequestStatus.APPROVED: frozenset({OtpRequestStatus.APPROVED}),
    OtpRequestStatus.REJECTED: frozenset(),
}

_TABLES: Dict[type, Mapping] = {
    LoadStatus: LOAD_TRANSITIONS,
    BidStatus: BID_TRANSITIONS,
    ShipmentStatus: SHIPMENT_TRANSITIONS,
    OtpRequestStatus: OTP_REQUEST_TRANSITIONS,
}


def allowed_transitions(current: S) -> FrozenSet[S]:
    table = _TABLES[type(current)]
    return table.get(current, frozenset())


def ensure_transition(entity: str, entity_id: str, current: S, target: S) -> None:
    """Raise InvalidTransition unless ``current -> target`` is listed for the entity."""
    allowed = allowed_transitions(current)
    if target not in allowed:
        raise InvalidTransition(
            f"Invalid {entity} transition {current.value} -> {target.value} for {entity_id}",
            entity=entity,
            entity_id=entity_id,
            current_status=current.value,
            requested_status=target.value,
            allowed=sorted(status.value for status in allowed),
        )
