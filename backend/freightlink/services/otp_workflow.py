"""
OTP Trip-Authorization Workflow

Gates the two physical trip actions of a shipment behind admin-approved
one-time codes:
1. Carrier requests a code for (shipment, request type)
2. Admin approves (code issued to the admin only) or rejects
3. Admin relays the code out of band; the driver submits it
4. A matching, unexpired, unconsumed code moves shipment and load forward

Codes are stored as salted SHA-256 digests. The plaintext exists only in the
approval response and the approving admin's own event channel.
"""
from __future__ import annotations

import hashlib
import hmac
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from freightlink.core.config import Settings, get_settings
from freightlink.core.errors import (
    AlreadyConsumed,
    AlreadyProcessed,
    DuplicatePending,
    Expired,
    InvalidCode,
    InvalidRequest,
    InvalidTransition,
    MarketplaceError,
    NotFound,
    TooManyAttempts,
    Unauthorized,
)
from freightlink.core.logging import logger
from freightlink.models.events import EventName, EventScope
from freightlink.models.marketplace import (
    CarrierType,
    LoadStatus,
    OtpIssueResult,
    OtpRecord,
    OtpRequestRecord,
    OtpRequestStatus,
    OtpRequestType,
    OtpVerificationResult,
    ShipmentRecord,
    ShipmentStatus,
    UserRole,
)
from freightlink.services.compliance import ComplianceGate, compliance_gate
from freightlink.services.event_bus import EventBus, event_bus
from freightlink.services.lifecycle import LifecycleEngine, lifecycle_engine
from freightlink.services.state_machine import ensure_transition
from freightlink.services.state_store import MarketplaceStateStore, marketplace_store


TRIP_TYPES = {OtpRequestType.TRIP_START, OtpRequestType.TRIP_END}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hash_code(otp_id: str, code: str) -> str:
    return hashlib.sha256(f"{otp_id}:{code}".encode("utf-8")).hexdigest()


class OtpWorkflow:
    """Request, approval and verification of trip one-time codes."""

    def __init__(
        self,
        store: Optional[MarketplaceStateStore] = None,
        gate: Optional[ComplianceGate] = None,
        bus: Optional[EventBus] = None,
        lifecycle: Optional[LifecycleEngine] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store or marketplace_store
        self.gate = gate or compliance_gate
        self.bus = bus or event_bus
        self.lifecycle = lifecycle or lifecycle_engine
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return _as_utc(self._clock())

    def _generate_code(self) -> str:
        length = max(4, self.settings.otp_code_length)
        return f"{secrets.randbelow(10 ** length):0{length}d}"

    def _validity(self, validity_minutes: Optional[int]) -> int:
        minutes = self.settings.otp_default_validity_minutes if validity_minutes is None else int(validity_minutes)
        low, high = self.settings.otp_min_validity_minutes, self.settings.otp_max_validity_minutes
        if minutes < low or minutes > high:
            raise InvalidRequest(
                f"validity_minutes must be between {low} and {high}",
                validity_minutes=minutes,
            )
        return minutes

    # ------------------------------------------------------------------
    # Lookups and access checks
    # ------------------------------------------------------------------

    def _require_shipment(self, shipment_id: str) -> ShipmentRecord:
        shipment = self.store.get_shipment(shipment_id)
        if shipment is None:
            raise NotFound(f"Shipment {shipment_id} not found", shipment_id=shipment_id)
        return shipment

    def _require_request(self, request_id: str) -> OtpRequestRecord:
        request = self.store.get_otp_request(request_id)
        if request is None:
            raise NotFound(f"OTP request {request_id} not found", request_id=request_id)
        return request

    @staticmethod
    def _ensure_shipment_actor(shipment: ShipmentRecord, actor_id: str, role: UserRole) -> None:
        if role == UserRole.CARRIER and actor_id in {shipment.carrier_id, shipment.driver_id}:
            return
        raise Unauthorized(f"Only the carrier or driver of shipment {shipment.shipment_id} may do this")

    @staticmethod
    def _ensure_admin(role: UserRole, action: str) -> None:
        if role != UserRole.ADMIN:
            raise Unauthorized(f"Only an admin may {action}")

    def get_request(self, request_id: str, actor_id: str, role: UserRole) -> OtpRequestRecord:
        request = self._require_request(request_id)
        if role == UserRole.ADMIN or (role == UserRole.CARRIER and request.carrier_id == actor_id):
            return request
        raise Unauthorized(f"OTP request {request_id} is not visible to {actor_id}")

    def list_requests(
        self,
        actor_id: str,
        role: UserRole,
        status: Optional[OtpRequestStatus] = None,
        shipment_id: Optional[str] = None,
    ) -> List[OtpRequestRecord]:
        """Admin approval queue (pending oldest first); carriers see only their own requests."""
        if role == UserRole.SHIPPER:
            raise Unauthorized("Shippers have no access to OTP requests")
        requests = self.store.list_otp_requests(status=status, shipment_id=shipment_id)
        if role == UserRole.CARRIER:
            requests = [request for request in requests if request.carrier_id == actor_id]
        return requests

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def _check_request_preconditions(self, shipment: ShipmentRecord, request_type: OtpRequestType) -> None:
        if shipment.status == ShipmentStatus.CANCELLED:
            raise InvalidTransition(
                f"Shipment {shipment.shipment_id} is cancelled",
                shipment_id=shipment.shipment_id,
            )
        if request_type == OtpRequestType.TRIP_START:
            if shipment.status != ShipmentStatus.ASSIGNED:
                raise InvalidTransition(
                    f"Trip already started for shipment {shipment.shipment_id}",
                    shipment_id=shipment.shipment_id,
                    current_status=shipment.status.value,
                )
            load = self.store.get_load(shipment.load_id)
            if load is None or load.status != LoadStatus.INVOICE_PAID:
                raise InvalidTransition(
                    f"Trip start requires a paid invoice on load {shipment.load_id}",
                    load_id=shipment.load_id,
                    current_status=load.status.value if load else None,
                )
        elif request_type == OtpRequestType.TRIP_END and shipment.status != ShipmentStatus.IN_TRANSIT:
            raise InvalidTransition(
                f"Trip end requires shipment {shipment.shipment_id} to be in transit",
                shipment_id=shipment.shipment_id,
                current_status=shipment.status.value,
            )

        if (
            request_type in TRIP_TYPES
            and shipment.carrier_type == CarrierType.ENTERPRISE
            and not (shipment.truck_id and shipment.driver_id)
        ):
            raise InvalidRequest(
                f"Assign a truck and driver to shipment {shipment.shipment_id} before requesting a trip code",
                shipment_id=shipment.shipment_id,
            )

    def request_otp(
        self,
        shipment_id: str,
        request_type: OtpRequestType,
        actor_id: str,
        role: UserRole,
    ) -> OtpRequestRecord:
        with self.store.transaction():
            shipment = self._require_shipment(shipment_id)
            self._ensure_shipment_actor(shipment, actor_id, role)
            self._check_request_preconditions(shipment, request_type)
            self.gate.check_carrier(
                shipment.carrier_id,
                truck_id=shipment.truck_id,
                driver_id=shipment.driver_id if shipment.carrier_type == CarrierType.ENTERPRISE else None,
                action=f"request_otp:{request_type.value}",
            )

            pending = self.store.find_otp_requests(shipment_id, request_type, OtpRequestStatus.PENDING)
            if pending:
                raise DuplicatePending(
                    f"A {request_type.value} request is already pending for shipment {shipment_id}",
                    request_id=pending[0].request_id,
                )

            now = self._now()
            request = OtpRequestRecord(
                request_id=self.store.generate_id("OTPR"),
                shipment_id=shipment_id,
                load_id=shipment.load_id,
                carrier_id=shipment.carrier_id,
                request_type=request_type,
                status=OtpRequestStatus.PENDING,
                requested_by=actor_id,
                requested_at=now,
            )
            try:
                self.store.insert_otp_request(request)
            except sqlite3.IntegrityError as exc:
                raise DuplicatePending(
                    f"A {request_type.value} request is already pending for shipment {shipment_id}",
                ) from exc

            flags: Dict[str, Any] = {"updated_at": now}
            if request_type == OtpRequestType.TRIP_START:
                flags["start_otp_requested"] = True
            elif request_type == OtpRequestType.TRIP_END:
                flags["end_otp_requested"] = True
            self.store.save_shipment(shipment.model_copy(update=flags))

        logger.info(
            "OTP requested",
            request_id=request.request_id,
            shipment_id=shipment_id,
            request_type=request_type.value,
            actor_id=actor_id,
        )
        self.bus.publish(
            EventName.OTP_REQUESTED,
            entity_id=request.request_id,
            new_status=request.status.value,
            payload={
                "shipment_id": shipment_id,
                "load_id": shipment.load_id,
                "carrier_id": shipment.carrier_id,
                "request_type": request_type.value,
            },
            scope=EventScope.ROLE,
            recipient_role=UserRole.ADMIN,
        )
        return request

    # ------------------------------------------------------------------
    # Admin decisions
    # ------------------------------------------------------------------

    def _issue(self, request: OtpRequestRecord, admin_id: str, minutes: int, now: datetime) -> tuple[OtpRecord, str]:
        """Invalidate live codes for the pair and persist a fresh one. Caller owns the transaction."""
        for live in self.store.list_live_otps_for_pair(request.shipment_id, request.request_type):
            self.store.save_otp(live.model_copy(update={"invalidated_at": now}))

        otp_id = self.store.generate_id("OTP")
        code = self._generate_code()
        otp = OtpRecord(
            otp_id=otp_id,
            request_id=request.request_id,
            code_hash=hash_code(otp_id, code),
            valid_until=now + timedelta(minutes=minutes),
            attempt_count=0,
            max_attempts=self.settings.otp_max_attempts,
            generated_by=admin_id,
            created_at=now,
        )
        self.store.save_otp(otp)
        return otp, code

    def _publish_issue(self, request: OtpRequestRecord, otp: OtpRecord, code: str, admin_id: str) -> None:
        base = {
            "request_id": request.request_id,
            "shipment_id": request.shipment_id,
            "request_type": request.request_type.value,
            "valid_until": otp.valid_until.isoformat(),
        }
        self.bus.publish(
            EventName.OTP_APPROVED,
            entity_id=request.request_id,
            new_status=request.status.value,
            payload={**base, "code": code},
            scope=EventScope.ACTOR,
            recipient_role=UserRole.ADMIN,
            recipient_id=admin_id,
        )
        self.bus.publish(
            EventName.OTP_APPROVED,
            entity_id=request.request_id,
            new_status=request.status.value,
            payload=base,
            scope=EventScope.ACTOR,
            recipient_role=UserRole.CARRIER,
            recipient_id=request.carrier_id,
        )

    def approve_otp(
        self,
        request_id: str,
        actor_id: str,
        role: UserRole,
        validity_minutes: Optional[int] = None,
    ) -> OtpIssueResult:
        self._ensure_admin(role, "approve OTP requests")
        minutes = self._validity(validity_minutes)

        with self.store.transaction():
            request = self._require_request(request_id)
            if request.status != OtpRequestStatus.PENDING:
                raise AlreadyProcessed(
                    f"OTP request {request_id} is already {request.status.value}",
                    request_id=request_id,
                    current_status=request.status.value,
                )
            ensure_transition("otp_request", request_id, request.status, OtpRequestStatus.APPROVED)

            now = self._now()
            otp, code = self._issue(request, actor_id, minutes, now)
            approved = request.model_copy(
                update={
                    "status": OtpRequestStatus.APPROVED,
                    "processed_at": now,
                    "approved_by": actor_id,
                    "otp_id": otp.otp_id,
                }
            )
            self.store.save_otp_request(approved)

        logger.info(
            "OTP approved",
            request_id=request_id,
            otp_id=otp.otp_id,
            admin_id=actor_id,
            valid_until=otp.valid_until.isoformat(),
        )
        self._publish_issue(approved, otp, code, actor_id)
        return OtpIssueResult(request=approved, otp_id=otp.otp_id, code=code, valid_until=otp.valid_until)

    def reject_otp(self, request_id: str, actor_id: str, role: UserRole, notes: Optional[str] = None) -> OtpRequestRecord:
        self._ensure_admin(role, "reject OTP requests")

        with self.store.transaction():
            request = self._require_request(request_id)
            if request.status != OtpRequestStatus.PENDING:
                raise AlreadyProcessed(
                    f"OTP request {request_id} is already {request.status.value}",
                    request_id=request_id,
                    current_status=request.status.value,
                )
            ensure_transition("otp_request", request_id, request.status, OtpRequestStatus.REJECTED)
            rejected = request.model_copy(
                update={
                    "status": OtpRequestStatus.REJECTED,
                    "processed_at": self._now(),
                    "approved_by": actor_id,
                    "notes": notes,
                }
            )
            self.store.save_otp_request(rejected)

        logger.info("OTP rejected", request_id=request_id, admin_id=actor_id)
        self.bus.publish(
            EventName.OTP_REJECTED,
            entity_id=request_id,
            new_status=rejected.status.value,
            payload={
                "shipment_id": rejected.shipment_id,
                "request_type": rejected.request_type.value,
                "notes": notes,
            },
            scope=EventScope.ACTOR,
            recipient_role=UserRole.CARRIER,
            recipient_id=rejected.carrier_id,
        )
        return rejected

    def regenerate_otp(
        self,
        request_id: str,
        actor_id: str,
        role: UserRole,
        validity_minutes: Optional[int] = None,
    ) -> OtpIssueResult:
        """Re-arm an approved request with a fresh code; the previous code stops working."""
        self._ensure_admin(role, "regenerate OTP codes")
        minutes = self._validity(validity_minutes)

        with self.store.transaction():
            request = self._require_request(request_id)
            if request.status != OtpRequestStatus.APPROVED:
                raise InvalidTransition(
                    f"Only approved requests can be regenerated; {request_id} is {request.status.value}",
                    request_id=request_id,
                    current_status=request.status.value,
                )
            ensure_transition("otp_request", request_id, request.status, OtpRequestStatus.APPROVED)
            current = self.store.get_otp(request.otp_id) if request.otp_id else None
            if current is not None and current.consumed_at is not None:
                raise AlreadyConsumed(
                    f"The code for request {request_id} was already used",
                    request_id=request_id,
                )
            self._check_request_preconditions(self._require_shipment(request.shipment_id), request.request_type)

            now = self._now()
            otp, code = self._issue(request, actor_id, minutes, now)
            regenerated = request.model_copy(
                update={"processed_at": now, "approved_by": actor_id, "otp_id": otp.otp_id}
            )
            self.store.save_otp_request(regenerated)

        logger.info(
            "OTP regenerated",
            request_id=request_id,
            otp_id=otp.otp_id,
            previous_otp_id=request.otp_id,
            admin_id=actor_id,
        )
        self._publish_issue(regenerated, otp, code, actor_id)
        return OtpIssueResult(request=regenerated, otp_id=otp.otp_id, code=code, valid_until=otp.valid_until)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _current_otp(self, shipment_id: str, request_type: OtpRequestType) -> OtpRecord:
        approved = self.store.find_otp_requests(shipment_id, request_type, OtpRequestStatus.APPROVED)
        otp = self.store.get_otp(approved[0].otp_id) if approved and approved[0].otp_id else None
        if otp is None or otp.invalidated_at is not None:
            raise NotFound(
                f"No approved {request_type.value} code for shipment {shipment_id}",
                shipment_id=shipment_id,
                request_type=request_type.value,
            )
        return otp

    def verify_otp(
        self,
        shipment_id: str,
        request_type: OtpRequestType,
        code: str,
        actor_id: str,
        role: UserRole,
    ) -> OtpVerificationResult:
        failure: Optional[MarketplaceError] = None

        with self.store.transaction():
            shipment = self._require_shipment(shipment_id)
            self._ensure_shipment_actor(shipment, actor_id, role)
            otp = self._current_otp(shipment_id, request_type)
            now = self._now()

            if otp.consumed_at is not None:
                raise AlreadyConsumed(f"Code for {request_type.value} was already used", otp_id=otp.otp_id)
            if now >= _as_utc(otp.valid_until):
                raise Expired(
                    f"Code for {request_type.value} expired at {otp.valid_until.isoformat()}",
                    otp_id=otp.otp_id,
                )
            if otp.attempt_count >= otp.max_attempts:
                raise TooManyAttempts(
                    f"Code for {request_type.value} is locked after {otp.max_attempts} failed attempts",
                    otp_id=otp.otp_id,
                )

            if not hmac.compare_digest(otp.code_hash, hash_code(otp.otp_id, code.strip())):
                attempts = otp.attempt_count + 1
                self.store.save_otp(otp.model_copy(update={"attempt_count": attempts}))
                failure = InvalidCode(
                    "Code does not match",
                    otp_id=otp.otp_id,
                    attempts_remaining=max(0, otp.max_attempts - attempts),
                )
            else:
                self.store.save_otp(otp.model_copy(update={"consumed_at": now}))
                load = self.store.get_load(shipment.load_id)
                if request_type == OtpRequestType.TRIP_START:
                    ensure_transition("shipment", shipment_id, shipment.status, ShipmentStatus.IN_TRANSIT)
                    shipment = shipment.model_copy(
                        update={
                            "status": ShipmentStatus.IN_TRANSIT,
                            "start_otp_verified": True,
                            "started_at": now,
                            "updated_at": now,
                        }
                    )
                    self.store.save_shipment(shipment)
                    load = self.lifecycle.apply_trip_transition(load, LoadStatus.IN_TRANSIT, actor_id, "trip started")
                elif request_type == OtpRequestType.TRIP_END:
                    ensure_transition("shipment", shipment_id, shipment.status, ShipmentStatus.DELIVERED)
                    shipment = shipment.model_copy(
                        update={
                            "status": ShipmentStatus.DELIVERED,
                            "end_otp_verified": True,
                            "delivered_at": now,
                            "updated_at": now,
                        }
                    )
                    self.store.save_shipment(shipment)
                    load = self.lifecycle.apply_trip_transition(load, LoadStatus.DELIVERED, actor_id, "trip completed")

        if failure is not None:
            logger.warning(
                "OTP verification failed",
                shipment_id=shipment_id,
                request_type=request_type.value,
                actor_id=actor_id,
                **failure.details,
            )
            raise failure

        logger.info(
            "OTP verified",
            shipment_id=shipment_id,
            request_type=request_type.value,
            otp_id=otp.otp_id,
            load_status=load.status.value,
        )
        if request_type in TRIP_TYPES:
            payload = {"shipment_id": shipment_id, "load_id": load.load_id, "request_type": request_type.value}
            for target in (
                {"scope": EventScope.ROLE, "recipient_role": UserRole.ADMIN},
                {"scope": EventScope.ACTOR, "recipient_role": UserRole.SHIPPER, "recipient_id": load.shipper_id},
                {"scope": EventScope.ACTOR, "recipient_role": UserRole.CARRIER, "recipient_id": shipment.carrier_id},
            ):
                self.bus.publish(
                    EventName.TRIP_COMPLETED,
                    entity_id=shipment_id,
                    new_status=shipment.status.value,
                    payload=payload,
                    **target,
                )
            for event in self.lifecycle.load_events(load):
                self.bus.publish(**event)

        return OtpVerificationResult(
            request_type=request_type,
            shipment=shipment,
            load_status=load.status,
            verified_at=now,
        )


otp_workflow = OtpWorkflow()
