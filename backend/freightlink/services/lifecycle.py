"""Load and bid lifecycle engine.

Moves a load from submission through admin pricing, carrier bidding and
negotiation to award, invoicing, transit and closure. Every mutation runs in a
single store transaction, is checked against the transition tables in
``state_machine`` and is appended to the load's audit history. Notifications
are published only after the transaction has committed.
"""
from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from freightlink.core.config import Settings, get_settings
from freightlink.core.errors import (
    AlreadyAwarded,
    DuplicatePending,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    Unauthorized,
)
from freightlink.core.logging import logger
from freightlink.models.events import EventName, EventScope
from freightlink.models.marketplace import (
    BidAcceptanceResult,
    BidCreateRequest,
    BidRecord,
    BidStatus,
    CarrierType,
    LoadCreateRequest,
    LoadPatchRequest,
    LoadRecord,
    LoadStateChange,
    LoadStatus,
    OtpRequestStatus,
    ShipmentRecord,
    ShipmentStatus,
    SoloCarrier,
    UserRole,
)
from freightlink.services.compliance import ComplianceGate, compliance_gate
from freightlink.services.event_bus import EventBus, event_bus
from freightlink.services.state_machine import (
    ACCEPTING_STATUSES,
    BIDDABLE_STATUSES,
    CARRIER_ASSIGNED_STATUSES,
    ensure_transition,
)
from freightlink.services.state_store import MarketplaceStateStore, marketplace_store


LIVE_BID_STATUSES = (BidStatus.PENDING, BidStatus.COUNTERED)

INVOICE_STEPS: Dict[LoadStatus, UserRole] = {
    LoadStatus.INVOICE_CREATED: UserRole.ADMIN,
    LoadStatus.INVOICE_SENT: UserRole.ADMIN,
    LoadStatus.INVOICE_ACKNOWLEDGED: UserRole.SHIPPER,
    LoadStatus.INVOICE_PAID: UserRole.ADMIN,
}


class LifecycleEngine:
    """Business orchestration for loads, bids and shipment creation."""

    def __init__(
        self,
        store: Optional[MarketplaceStateStore] = None,
        gate: Optional[ComplianceGate] = None,
        bus: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store or marketplace_store
        self.gate = gate or compliance_gate
        self.bus = bus or event_bus
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Lookups and access checks
    # ------------------------------------------------------------------

    def _require_load(self, load_id: str) -> LoadRecord:
        load = self.store.get_load(load_id)
        if load is None:
            raise NotFound(f"Load {load_id} not found", load_id=load_id)
        return load

    def _require_bid(self, bid_id: str) -> BidRecord:
        bid = self.store.get_bid(bid_id)
        if bid is None:
            raise NotFound(f"Bid {bid_id} not found", bid_id=bid_id)
        return bid

    def _require_shipment(self, shipment_id: str) -> ShipmentRecord:
        shipment = self.store.get_shipment(shipment_id)
        if shipment is None:
            raise NotFound(f"Shipment {shipment_id} not found", shipment_id=shipment_id)
        return shipment

    @staticmethod
    def _ensure_admin(role: UserRole, action: str) -> None:
        if role != UserRole.ADMIN:
            raise Unauthorized(f"Only an admin may {action}")

    @staticmethod
    def _ensure_owner_or_admin(load: LoadRecord, actor_id: str, role: UserRole, action: str) -> None:
        if role == UserRole.ADMIN:
            return
        if role == UserRole.SHIPPER and load.shipper_id == actor_id:
            return
        raise Unauthorized(f"Only the owning shipper or an admin may {action} load {load.load_id}")

    @staticmethod
    def _check_version(load: LoadRecord, expected_version: Optional[int]) -> None:
        if expected_version is not None and int(expected_version) != load.version:
            raise InvalidRequest(
                f"Version conflict for {load.load_id}. expected={expected_version} current={load.version}",
                load_id=load.load_id,
                current_version=load.version,
            )

    def _can_view_load(self, load: LoadRecord, actor_id: str, role: UserRole) -> bool:
        if role == UserRole.ADMIN:
            return True
        if role == UserRole.SHIPPER:
            return load.shipper_id == actor_id
        if load.assigned_carrier_id == actor_id:
            return True
        if load.status in BIDDABLE_STATUSES:
            return True
        return any(bid.carrier_id == actor_id for bid in self.store.list_bids_for_load(load.load_id))

    def get_load(self, load_id: str, actor_id: str, role: UserRole) -> LoadRecord:
        load = self._require_load(load_id)
        if not self._can_view_load(load, actor_id, role):
            raise Unauthorized(f"Load {load_id} is not visible to {actor_id}")
        return load

    def list_loads(self, actor_id: str, role: UserRole, status: Optional[LoadStatus] = None) -> List[LoadRecord]:
        if role == UserRole.ADMIN:
            return self.store.list_loads(status=status)
        if role == UserRole.SHIPPER:
            return self.store.list_loads(status=status, shipper_id=actor_id)
        loads = self.store.list_loads(status=status)
        return [
            load
            for load in loads
            if load.status in BIDDABLE_STATUSES or load.assigned_carrier_id == actor_id
        ]

    def list_bids(self, load_id: str, actor_id: str, role: UserRole) -> List[BidRecord]:
        load = self._require_load(load_id)
        bids = self.store.list_bids_for_load(load_id)
        if role == UserRole.ADMIN or (role == UserRole.SHIPPER and load.shipper_id == actor_id):
            return bids
        if role == UserRole.CARRIER:
            return [bid for bid in bids if bid.carrier_id == actor_id]
        raise Unauthorized(f"Bids for load {load_id} are not visible to {actor_id}")

    def list_my_bids(self, actor_id: str, role: UserRole, status: Optional[BidStatus] = None) -> List[BidRecord]:
        """Carriers see their own bids, shippers the bids on their loads, admins everything."""
        if role == UserRole.ADMIN:
            return self.store.list_bids(status=status)
        if role == UserRole.SHIPPER:
            return self.store.list_bids(status=status, shipper_id=actor_id)
        return self.store.list_bids(status=status, carrier_id=actor_id)

    def list_shipments(
        self, actor_id: str, role: UserRole, status: Optional[ShipmentStatus] = None
    ) -> List[ShipmentRecord]:
        if role == UserRole.ADMIN:
            return self.store.list_shipments(status=status)
        if role == UserRole.SHIPPER:
            return self.store.list_shipments(status=status, shipper_id=actor_id)
        return self.store.list_shipments(status=status, carrier_id=actor_id)

    def load_history(self, load_id: str, actor_id: str, role: UserRole) -> List[LoadStateChange]:
        self.get_load(load_id, actor_id, role)
        return self.store.list_load_history(load_id)

    def get_shipment(self, shipment_id: str, actor_id: str, role: UserRole) -> ShipmentRecord:
        shipment = self._require_shipment(shipment_id)
        if role == UserRole.ADMIN or shipment.carrier_id == actor_id:
            return shipment
        if role == UserRole.SHIPPER and self._require_load(shipment.load_id).shipper_id == actor_id:
            return shipment
        raise Unauthorized(f"Shipment {shipment_id} is not visible to {actor_id}")

    # ------------------------------------------------------------------
    # Transition core
    # ------------------------------------------------------------------

    def _transition_load(
        self,
        load: LoadRecord,
        target: LoadStatus,
        actor_id: str,
        reason: Optional[str] = None,
        **changes: Any,
    ) -> LoadRecord:
        """Apply one checked status move. Must run inside a store transaction."""
        ensure_transition("load", load.load_id, load.status, target)
        now = self._now()
        update: Dict[str, Any] = {
            "status": target,
            "previous_status": load.status,
            "status_note": reason,
            "version": load.version + 1,
            "updated_at": now,
            **changes,
        }
        if target not in CARRIER_ASSIGNED_STATUSES:
            update["assigned_carrier_id"] = None
        updated = load.model_copy(update=update)
        if target in CARRIER_ASSIGNED_STATUSES and not updated.assigned_carrier_id:
            raise InvalidTransition(
                f"Load {load.load_id} cannot enter {target.value} without an assigned carrier",
                load_id=load.load_id,
            )

        self.store.save_load(updated)
        self.store.record_load_change(
            LoadStateChange(
                change_id=self.store.generate_id("CHG"),
                load_id=load.load_id,
                from_status=load.status,
                to_status=target,
                actor_id=actor_id,
                reason=reason,
                timestamp=now,
            )
        )
        return updated

    def apply_trip_transition(self, load: LoadRecord, target: LoadStatus, actor_id: str, reason: str) -> LoadRecord:
        """Trip start/end edges driven by OTP verification. Caller owns the transaction."""
        if target not in {LoadStatus.IN_TRANSIT, LoadStatus.DELIVERED}:
            raise InvalidTransition(f"{target.value} is not a trip transition", load_id=load.load_id)
        return self._transition_load(load, target, actor_id, reason)

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    @staticmethod
    def load_events(load: LoadRecord) -> List[Dict[str, Any]]:
        payload = {
            "reference_number": load.reference_number,
            "previous_status": load.previous_status.value if load.previous_status else None,
            "version": load.version,
        }
        base = {
            "event": EventName.LOAD_UPDATED,
            "entity_id": load.load_id,
            "new_status": load.status.value,
            "payload": payload,
        }
        events = [
            {**base, "scope": EventScope.ROLE, "recipient_role": UserRole.ADMIN},
            {**base, "scope": EventScope.ACTOR, "recipient_role": UserRole.SHIPPER, "recipient_id": load.shipper_id},
        ]
        if load.assigned_carrier_id:
            events.append(
                {
                    **base,
                    "scope": EventScope.ACTOR,
                    "recipient_role": UserRole.CARRIER,
                    "recipient_id": load.assigned_carrier_id,
                }
            )
        elif load.status in BIDDABLE_STATUSES:
            events.append({**base, "scope": EventScope.ROLE, "recipient_role": UserRole.CARRIER})
        return events

    @staticmethod
    def _bid_events(event: EventName, bid: BidRecord, load: LoadRecord) -> List[Dict[str, Any]]:
        payload = {
            "load_id": bid.load_id,
            "carrier_id": bid.carrier_id,
            "amount": str(bid.amount),
            "counter_amount": str(bid.counter_amount) if bid.counter_amount is not None else None,
        }
        base = {"event": event, "entity_id": bid.bid_id, "new_status": bid.status.value, "payload": payload}
        return [
            {**base, "scope": EventScope.ACTOR, "recipient_role": UserRole.CARRIER, "recipient_id": bid.carrier_id},
            {**base, "scope": EventScope.ACTOR, "recipient_role": UserRole.SHIPPER, "recipient_id": load.shipper_id},
            {**base, "scope": EventScope.ROLE, "recipient_role": UserRole.ADMIN},
        ]

    def _publish(self, events: List[Dict[str, Any]]) -> None:
        for event in events:
            self.bus.publish(**event)

    # ------------------------------------------------------------------
    # Load operations
    # ------------------------------------------------------------------

    def create_load(self, request: LoadCreateRequest, actor_id: str, role: UserRole) -> LoadRecord:
        if role == UserRole.SHIPPER:
            if request.shipper_id and request.shipper_id != actor_id:
                raise Unauthorized("Shippers can only submit loads for themselves")
            shipper_id = actor_id
        elif role == UserRole.ADMIN:
            if not request.shipper_id:
                raise InvalidRequest("shipper_id is required when an admin submits a load")
            shipper_id = request.shipper_id
        else:
            raise Unauthorized("Carriers cannot submit loads")

        now = self._now()
        with self.store.transaction():
            load = LoadRecord(
                load_id=self.store.generate_id("LOAD"),
                reference_number=self.store.generate_reference_number(),
                shipper_id=shipper_id,
                pickup=request.pickup,
                dropoff=request.dropoff,
                weight_kg=request.weight_kg,
                required_truck_type=request.required_truck_type,
                cargo_description=request.cargo_description,
                status=LoadStatus.PENDING,
                version=1,
                created_at=now,
                updated_at=now,
            )
            self.store.save_load(load)
            self.store.record_load_change(
                LoadStateChange(
                    change_id=self.store.generate_id("CHG"),
                    load_id=load.load_id,
                    from_status=None,
                    to_status=LoadStatus.PENDING,
                    actor_id=actor_id,
                    reason="submitted",
                    timestamp=now,
                )
            )

        logger.info("Load submitted", load_id=load.load_id, reference=load.reference_number, shipper_id=shipper_id)
        self._publish(self.load_events(load))
        return load

    def price_load(
        self,
        load_id: str,
        price: Optional[Decimal],
        actor_id: str,
        role: UserRole,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> LoadRecord:
        self._ensure_admin(role, "price a load")
        if price is None or Decimal(price) <= 0:
            raise InvalidRequest("admin_final_price must be a positive amount", load_id=load_id)

        with self.store.transaction():
            load = self._require_load(load_id)
            self._check_version(load, expected_version)
            updated = self._transition_load(
                load,
                LoadStatus.PRICED,
                actor_id,
                reason or "priced by admin",
                admin_final_price=Decimal(price),
            )

        logger.info("Load priced", load_id=load_id, admin_final_price=str(updated.admin_final_price))
        self._publish(self.load_events(updated))
        return updated

    def _admin_step(
        self,
        load_id: str,
        target: LoadStatus,
        actor_id: str,
        role: UserRole,
        reason: Optional[str],
        expected_version: Optional[int],
        action: str,
    ) -> LoadRecord:
        self._ensure_admin(role, action)
        with self.store.transaction():
            load = self._require_load(load_id)
            self._check_version(load, expected_version)
            updated = self._transition_load(load, target, actor_id, reason)
        logger.info("Load status changed", load_id=load_id, from_status=load.status.value, to_status=target.value)
        self._publish(self.load_events(updated))
        return updated

    def post_load(self, load_id: str, actor_id: str, role: UserRole, reason: Optional[str] = None,
                  expected_version: Optional[int] = None) -> LoadRecord:
        return self._admin_step(
            load_id, LoadStatus.POSTED_TO_CARRIERS, actor_id, role, reason, expected_version, "post a load"
        )

    def open_bidding(self, load_id: str, actor_id: str, role: UserRole, reason: Optional[str] = None,
                     expected_version: Optional[int] = None) -> LoadRecord:
        return self._admin_step(
            load_id, LoadStatus.OPEN_FOR_BID, actor_id, role, reason, expected_version, "open a load for bidding"
        )

    def close_load(self, load_id: str, actor_id: str, role: UserRole, reason: Optional[str] = None,
                   expected_version: Optional[int] = None) -> LoadRecord:
        return self._admin_step(load_id, LoadStatus.CLOSED, actor_id, role, reason, expected_version, "close a load")

    def _expire_live_bids(self, load: LoadRecord, actor_id: str, note: str) -> List[BidRecord]:
        expired: List[BidRecord] = []
        for bid in self.store.list_bids_for_load(load.load_id, statuses=LIVE_BID_STATUSES):
            ensure_transition("bid", bid.bid_id, bid.status, BidStatus.EXPIRED)
            updated = bid.model_copy(
                update={
                    "status": BidStatus.EXPIRED,
                    "decided_by": actor_id,
                    "notes": note,
                    "updated_at": self._now(),
                }
            )
            self.store.save_bid(updated)
            expired.append(updated)
        return expired

    def cancel_load(
        self,
        load_id: str,
        actor_id: str,
        role: UserRole,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> LoadRecord:
        with self.store.transaction():
            load = self._require_load(load_id)
            self._ensure_owner_or_admin(load, actor_id, role, "cancel")
            self._check_version(load, expected_version)
            ensure_transition("load", load_id, load.status, LoadStatus.CANCELLED)

            self._expire_live_bids(load, actor_id, "Expired: load cancelled")
            shipment = self.store.get_shipment_for_load(load_id)
            if shipment is not None:
                self._cancel_shipment(shipment, actor_id)
            updated = self._transition_load(load, LoadStatus.CANCELLED, actor_id, reason or "cancelled")

        logger.info("Load cancelled", load_id=load_id, from_status=load.status.value, actor_id=actor_id)
        events = self.load_events(updated)
        if load.assigned_carrier_id:
            events.append(
                {
                    "event": EventName.LOAD_UPDATED,
                    "entity_id": load_id,
                    "new_status": updated.status.value,
                    "payload": {"reference_number": updated.reference_number, "previous_status": load.status.value},
                    "scope": EventScope.ACTOR,
                    "recipient_role": UserRole.CARRIER,
                    "recipient_id": load.assigned_carrier_id,
                }
            )
        self._publish(events)
        return updated

    def _cancel_shipment(self, shipment: ShipmentRecord, actor_id: str) -> ShipmentRecord:
        ensure_transition("shipment", shipment.shipment_id, shipment.status, ShipmentStatus.CANCELLED)
        now = self._now()
        for request in self.store.list_otp_requests(status=OtpRequestStatus.PENDING, shipment_id=shipment.shipment_id):
            self.store.save_otp_request(
                request.model_copy(
                    update={
                        "status": OtpRequestStatus.REJECTED,
                        "processed_at": now,
                        "approved_by": actor_id,
                        "notes": "Shipment cancelled",
                    }
                )
            )
        for request_type in {request.request_type for request in self.store.list_otp_requests(shipment_id=shipment.shipment_id)}:
            for otp in self.store.list_live_otps_for_pair(shipment.shipment_id, request_type):
                self.store.save_otp(otp.model_copy(update={"invalidated_at": now}))
        cancelled = shipment.model_copy(
            update={"status": ShipmentStatus.CANCELLED, "cancelled_at": now, "updated_at": now}
        )
        self.store.save_shipment(cancelled)
        return cancelled

    def make_unavailable(
        self,
        load_id: str,
        actor_id: str,
        role: UserRole,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> LoadRecord:
        with self.store.transaction():
            load = self._require_load(load_id)
            self._ensure_owner_or_admin(load, actor_id, role, "hide")
            self._check_version(load, expected_version)
            ensure_transition("load", load_id, load.status, LoadStatus.UNAVAILABLE)
            self._expire_live_bids(load, actor_id, "Expired: load made unavailable")
            updated = self._transition_load(load, LoadStatus.UNAVAILABLE, actor_id, reason or "made unavailable")

        logger.info("Load made unavailable", load_id=load_id, from_status=load.status.value)
        self._publish(self.load_events(updated))
        return updated

    def resubmit_load(
        self,
        load_id: str,
        actor_id: str,
        role: UserRole,
        target: Optional[LoadStatus] = None,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> LoadRecord:
        """Bring an unavailable load back. Re-entry point follows the configured policy."""
        with self.store.transaction():
            load = self._require_load(load_id)
            self._ensure_owner_or_admin(load, actor_id, role, "re-submit")
            self._check_version(load, expected_version)
            if load.status != LoadStatus.UNAVAILABLE:
                raise InvalidTransition(
                    f"Only unavailable loads can be re-submitted; {load_id} is {load.status.value}",
                    load_id=load_id,
                    current_status=load.status.value,
                )

            policy_target = LoadStatus(self.settings.normalized_reentry_status())
            if policy_target == LoadStatus.OPEN_FOR_BID and load.admin_final_price is None:
                policy_target = LoadStatus.PENDING
            if target is not None and target != policy_target:
                raise InvalidTransition(
                    f"Re-submission of {load_id} re-enters at {policy_target.value}, not {target.value}",
                    load_id=load_id,
                    allowed=[policy_target.value],
                )

            changes: Dict[str, Any] = {}
            if policy_target == LoadStatus.PENDING:
                changes["admin_final_price"] = None
            updated = self._transition_load(load, policy_target, actor_id, reason or "re-submitted", **changes)

        logger.info("Load re-submitted", load_id=load_id, to_status=updated.status.value)
        self._publish(self.load_events(updated))
        return updated

    def advance_invoice(
        self,
        load_id: str,
        target: LoadStatus,
        actor_id: str,
        role: UserRole,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> LoadRecord:
        """Invoice settlement edges: admin creates, sends and marks paid; the shipper acknowledges."""
        required_role = INVOICE_STEPS.get(target)
        if required_role is None:
            raise InvalidTransition(f"{target.value} is not an invoice step", load_id=load_id)

        with self.store.transaction():
            load = self._require_load(load_id)
            if required_role == UserRole.SHIPPER:
                self._ensure_owner_or_admin(load, actor_id, role, "acknowledge the invoice of")
            else:
                self._ensure_admin(role, f"move a load to {target.value}")
            self._check_version(load, expected_version)
            updated = self._transition_load(load, target, actor_id, reason or target.value.replace("_", " "))

        logger.info("Invoice step recorded", load_id=load_id, to_status=target.value)
        self._publish(self.load_events(updated))
        return updated

    def transition_load(self, load_id: str, request: LoadPatchRequest, actor_id: str, role: UserRole) -> LoadRecord:
        """Dispatch a PATCH status request to the matching lifecycle operation."""
        target = request.status
        kwargs = {"reason": request.reason, "expected_version": request.expected_version}

        if target == LoadStatus.PRICED:
            return self.price_load(load_id, request.admin_final_price, actor_id, role, **kwargs)
        if target == LoadStatus.POSTED_TO_CARRIERS:
            return self.post_load(load_id, actor_id, role, **kwargs)
        if target == LoadStatus.CANCELLED:
            return self.cancel_load(load_id, actor_id, role, **kwargs)
        if target == LoadStatus.UNAVAILABLE:
            return self.make_unavailable(load_id, actor_id, role, **kwargs)
        if target in INVOICE_STEPS:
            return self.advance_invoice(load_id, target, actor_id, role, **kwargs)
        if target == LoadStatus.CLOSED:
            return self.close_load(load_id, actor_id, role, **kwargs)
        if target in {LoadStatus.PENDING, LoadStatus.OPEN_FOR_BID}:
            load = self._require_load(load_id)
            if load.status == LoadStatus.UNAVAILABLE:
                return self.resubmit_load(load_id, actor_id, role, target=target, **kwargs)
            if target == LoadStatus.OPEN_FOR_BID:
                return self.open_bidding(load_id, actor_id, role, **kwargs)
            raise InvalidTransition(
                f"Load {load_id} cannot return to pending from {load.status.value}",
                load_id=load_id,
                current_status=load.status.value,
            )
        if target in {LoadStatus.IN_TRANSIT, LoadStatus.DELIVERED}:
            raise InvalidTransition(
                f"{target.value} is reached only through trip OTP verification",
                load_id=load_id,
            )
        raise InvalidTransition(
            f"{target.value} is reached only through bid decisions",
            load_id=load_id,
        )

    # ------------------------------------------------------------------
    # Bid operations
    # ------------------------------------------------------------------

    def create_bid(self, request: BidCreateRequest, actor_id: str, role: UserRole) -> BidRecord:
        if role != UserRole.CARRIER:
            raise Unauthorized("Only carriers can bid")

        with self.store.transaction():
            load = self._require_load(request.load_id)
            if load.status not in BIDDABLE_STATUSES:
                raise InvalidTransition(
                    f"Load {load.load_id} is not open for bidding (status: {load.status.value})",
                    load_id=load.load_id,
                    current_status=load.status.value,
                )

            carrier = self.gate.get_carrier(actor_id)
            if isinstance(carrier, SoloCarrier):
                truck_id = request.truck_id or carrier.truck_id
                driver_id = carrier.carrier_id
            else:
                truck_id = request.truck_id
                driver_id = request.driver_id
            self.gate.check_carrier(actor_id, truck_id=truck_id, driver_id=driver_id, action="create_bid")

            live = [
                bid
                for bid in self.store.list_bids_for_load(load.load_id, statuses=LIVE_BID_STATUSES)
                if bid.carrier_id == actor_id
            ]
            if live:
                raise DuplicatePending(
                    f"Carrier {actor_id} already has a live bid on {load.load_id}",
                    bid_id=live[0].bid_id,
                )

            now = self._now()
            bid = BidRecord(
                bid_id=self.store.generate_id("BID"),
                load_id=load.load_id,
                carrier_id=actor_id,
                carrier_type=CarrierType(carrier.carrier_type),
                amount=request.amount,
                status=BidStatus.PENDING,
                notes=request.notes,
                estimated_pickup=request.estimated_pickup,
                truck_id=truck_id,
                driver_id=driver_id,
                created_at=now,
                updated_at=now,
            )
            self.store.save_bid(bid)

        logger.info("Bid received", bid_id=bid.bid_id, load_id=load.load_id, carrier_id=actor_id, amount=str(bid.amount))
        self._publish(self._bid_events(EventName.BID_RECEIVED, bid, load))
        return bid

    def _ensure_bid_decider(self, bid: BidRecord, load: LoadRecord, actor_id: str, role: UserRole) -> None:
        """Countered bids are decided by the carrier, pending bids by the shipper or admin."""
        if bid.status == BidStatus.COUNTERED:
            if role == UserRole.CARRIER and bid.carrier_id == actor_id:
                return
            raise Unauthorized(f"Only carrier {bid.carrier_id} can answer the counter on bid {bid.bid_id}")
        self._ensure_owner_or_admin(load, actor_id, role, "decide bids on")

    def accept_bid(self, bid_id: str, actor_id: str, role: UserRole, notes: Optional[str] = None) -> BidAcceptanceResult:
        """Award the load: accept one bid, reject its siblings and open the shipment atomically."""
        with self.store.transaction():
            bid = self._require_bid(bid_id)
            load = self._require_load(bid.load_id)
            self._ensure_bid_decider(bid, load, actor_id, role)

            if load.status in CARRIER_ASSIGNED_STATUSES:
                raise AlreadyAwarded(
                    f"Load {load.load_id} is already awarded",
                    load_id=load.load_id,
                    awarded_bid_id=load.awarded_bid_id,
                )
            if load.status not in ACCEPTING_STATUSES:
                raise InvalidTransition(
                    f"Bids on load {load.load_id} cannot be accepted while {load.status.value}",
                    load_id=load.load_id,
                    current_status=load.status.value,
                )
            ensure_transition("bid", bid.bid_id, bid.status, BidStatus.ACCEPTED)
            self.gate.check_carrier(
                bid.carrier_id,
                truck_id=bid.truck_id,
                driver_id=bid.driver_id if bid.carrier_type == CarrierType.ENTERPRISE else None,
                action="accept_bid",
            )

            now = self._now()
            binding_amount = bid.counter_amount if bid.status == BidStatus.COUNTERED else bid.amount
            accepted = bid.model_copy(
                update={
                    "status": BidStatus.ACCEPTED,
                    "final_amount": binding_amount,
                    "decided_by": actor_id,
                    "notes": notes or bid.notes,
                    "updated_at": now,
                }
            )
            self.store.save_bid(accepted)

            rejected: List[BidRecord] = []
            for sibling in self.store.list_bids_for_load(load.load_id, statuses=LIVE_BID_STATUSES):
                if sibling.bid_id == bid.bid_id:
                    continue
                ensure_transition("bid", sibling.bid_id, sibling.status, BidStatus.REJECTED)
                closed = sibling.model_copy(
                    update={
                        "status": BidStatus.REJECTED,
                        "decided_by": actor_id,
                        "notes": "Auto-rejected: another bid was accepted",
                        "updated_at": now,
                    }
                )
                self.store.save_bid(closed)
                rejected.append(closed)

            awarded = self._transition_load(
                load,
                LoadStatus.AWARDED,
                actor_id,
                f"bid {bid.bid_id} accepted",
                assigned_carrier_id=bid.carrier_id,
                final_price=binding_amount,
                awarded_bid_id=bid.bid_id,
            )

            shipment = ShipmentRecord(
                shipment_id=self.store.generate_id("SHP"),
                load_id=load.load_id,
                carrier_id=bid.carrier_id,
                carrier_type=bid.carrier_type,
                truck_id=bid.truck_id,
                driver_id=bid.driver_id,
                status=ShipmentStatus.ASSIGNED,
                created_at=now,
                updated_at=now,
            )
            try:
                self.store.insert_shipment(shipment)
            except sqlite3.IntegrityError as exc:
                raise AlreadyAwarded(f"Load {load.load_id} already has a shipment", load_id=load.load_id) from exc

        logger.info(
            "Bid accepted",
            bid_id=bid.bid_id,
            load_id=load.load_id,
            carrier_id=bid.carrier_id,
            amount=str(binding_amount),
            shipment_id=shipment.shipment_id,
            rejected=len(rejected),
        )
        events = self._bid_events(EventName.BID_ACCEPTED, accepted, awarded)
        for closed in rejected:
            events.append(
                {
                    "event": EventName.BID_REJECTED,
                    "entity_id": closed.bid_id,
                    "new_status": closed.status.value,
                    "payload": {"load_id": closed.load_id, "reason": closed.notes},
                    "scope": EventScope.ACTOR,
                    "recipient_role": UserRole.CARRIER,
                    "recipient_id": closed.carrier_id,
                }
            )
        events.extend(self.load_events(awarded))
        self._publish(events)
        return BidAcceptanceResult(
            bid=accepted,
            load=awarded,
            shipment=shipment,
            rejected_bid_ids=[closed.bid_id for closed in rejected],
        )

    def counter_bid(
        self,
        bid_id: str,
        counter_amount: Decimal,
        actor_id: str,
        role: UserRole,
        notes: Optional[str] = None,
    ) -> BidRecord:
        with self.store.transaction():
            bid = self._require_bid(bid_id)
            load = self._require_load(bid.load_id)
            self._ensure_owner_or_admin(load, actor_id, role, "counter bids on")
            if load.status in CARRIER_ASSIGNED_STATUSES:
                raise AlreadyAwarded(f"Load {load.load_id} is already awarded", load_id=load.load_id)
            if load.status not in ACCEPTING_STATUSES:
                raise InvalidTransition(
                    f"Bids on load {load.load_id} cannot be countered while {load.status.value}",
                    load_id=load.load_id,
                    current_status=load.status.value,
                )
            ensure_transition("bid", bid.bid_id, bid.status, BidStatus.COUNTERED)

            countered = bid.model_copy(
                update={
                    "status": BidStatus.COUNTERED,
                    "counter_amount": Decimal(counter_amount),
                    "countered_by": actor_id,
                    "notes": notes or f"Counter offer: {counter_amount}",
                    "updated_at": self._now(),
                }
            )
            self.store.save_bid(countered)
            updated_load = load
            if load.status == LoadStatus.OPEN_FOR_BID:
                updated_load = self._transition_load(
                    load, LoadStatus.COUNTER_RECEIVED, actor_id, f"counter on bid {bid.bid_id}"
                )

        logger.info("Bid countered", bid_id=bid_id, load_id=load.load_id, counter_amount=str(counter_amount))
        events = self._bid_events(EventName.BID_COUNTERED, countered, updated_load)
        if updated_load is not load:
            events.extend(self.load_events(updated_load))
        self._publish(events)
        return countered

    def reject_bid(self, bid_id: str, actor_id: str, role: UserRole, notes: Optional[str] = None) -> BidRecord:
        with self.store.transaction():
            bid = self._require_bid(bid_id)
            load = self._require_load(bid.load_id)
            if bid.status == BidStatus.COUNTERED and role == UserRole.CARRIER:
                self._ensure_bid_decider(bid, load, actor_id, role)
            else:
                self._ensure_owner_or_admin(load, actor_id, role, "reject bids on")
            ensure_transition("bid", bid.bid_id, bid.status, BidStatus.REJECTED)

            rejected = bid.model_copy(
                update={
                    "status": BidStatus.REJECTED,
                    "decided_by": actor_id,
                    "notes": notes or f"Rejected by {actor_id}",
                    "updated_at": self._now(),
                }
            )
            self.store.save_bid(rejected)

            updated_load = load
            if load.status == LoadStatus.COUNTER_RECEIVED:
                still_countered = [
                    other
                    for other in self.store.list_bids_for_load(load.load_id, statuses=[BidStatus.COUNTERED])
                    if other.bid_id != bid.bid_id
                ]
                if not still_countered:
                    updated_load = self._transition_load(
                        load, LoadStatus.OPEN_FOR_BID, actor_id, f"counter on bid {bid.bid_id} rejected"
                    )

        logger.info("Bid rejected", bid_id=bid_id, load_id=load.load_id, actor_id=actor_id)
        events = self._bid_events(EventName.BID_REJECTED, rejected, updated_load)
        if updated_load is not load:
            events.extend(self.load_events(updated_load))
        self._publish(events)
        return rejected

    # ------------------------------------------------------------------
    # Shipment resources
    # ------------------------------------------------------------------

    def assign_resources(
        self,
        shipment_id: str,
        truck_id: str,
        driver_id: str,
        actor_id: str,
        role: UserRole,
    ) -> ShipmentRecord:
        """Name the truck and driver executing an awarded shipment before the trip starts."""
        with self.store.transaction():
            shipment = self._require_shipment(shipment_id)
            if role != UserRole.ADMIN and not (role == UserRole.CARRIER and shipment.carrier_id == actor_id):
                raise Unauthorized(f"Only carrier {shipment.carrier_id} or an admin may assign shipment resources")
            if shipment.status != ShipmentStatus.ASSIGNED:
                raise InvalidTransition(
                    f"Resources can only change before the trip starts; {shipment_id} is {shipment.status.value}",
                    shipment_id=shipment_id,
                    current_status=shipment.status.value,
                )

            carrier = self.gate.get_carrier(shipment.carrier_id)
            if isinstance(carrier, SoloCarrier):
                if driver_id != carrier.carrier_id:
                    raise InvalidRequest("Solo carriers drive their own trips", driver_id=driver_id)
            else:
                self.gate.ensure_fleet_member(carrier, truck_id=truck_id, driver_id=driver_id)

            updated = shipment.model_copy(
                update={"truck_id": truck_id, "driver_id": driver_id, "updated_at": self._now()}
            )
            self.store.save_shipment(updated)

        logger.info("Shipment resources assigned", shipment_id=shipment_id, truck_id=truck_id, driver_id=driver_id)
        return updated


lifecycle_engine = LifecycleEngine()
