"""
Carrier Compliance Gate

Decides whether a carrier (or the truck and driver it names) may take part in
a state-changing action:
1. Resolve which document owners must be checked for the carrier variant
2. Fetch the most recent document of each required type per owner
3. Block on any missing or expired type, report expiring-soon as advisory

The gate is consulted synchronously on every gated call. Decisions are never
cached, so renewing a document takes effect on the very next request.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from freightlink.core.config import Settings, get_settings
from freightlink.core.errors import ComplianceBlocked, InvalidRequest, NotFound, Unauthorized
from freightlink.core.logging import logger
from freightlink.models.events import EventName, EventScope
from freightlink.models.marketplace import (
    CarrierProfile,
    ComplianceDecision,
    ComplianceRecord,
    ComplianceSubject,
    DocumentHealth,
    DocumentOwnerKind,
    DocumentRecord,
    DocumentRegisterRequest,
    EnterpriseCarrier,
    SoloCarrier,
    UserRole,
)
from freightlink.services.event_bus import EventBus, event_bus
from freightlink.services.state_store import MarketplaceStateStore, marketplace_store


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ComplianceGate:
    """Document-validity gate shared by the lifecycle engine and OTP workflow."""

    def __init__(
        self,
        store: Optional[MarketplaceStateStore] = None,
        bus: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store or marketplace_store
        self.bus = bus or event_bus
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return _as_utc(self._clock())

    # ------------------------------------------------------------------
    # Carrier profiles
    # ------------------------------------------------------------------

    def register_carrier(self, profile: CarrierProfile, actor_id: str, role: UserRole) -> CarrierProfile:
        if role != UserRole.ADMIN and not (role == UserRole.CARRIER and actor_id == profile.carrier_id):
            raise Unauthorized("Only an admin or the carrier itself may register a carrier profile")
        saved = self.store.save_carrier(profile)
        logger.info("Carrier profile registered", carrier_id=profile.carrier_id, carrier_type=profile.carrier_type)
        return saved

    def get_carrier(self, carrier_id: str) -> CarrierProfile:
        carrier = self.store.get_carrier(carrier_id)
        if carrier is None:
            raise NotFound(f"Carrier {carrier_id} not found", carrier_id=carrier_id)
        return carrier

    @staticmethod
    def carrier_owns(carrier: CarrierProfile, owner_id: str) -> bool:
        if owner_id == carrier.carrier_id:
            return True
        if isinstance(carrier, SoloCarrier):
            return owner_id == carrier.truck_id
        return owner_id in carrier.truck_ids or owner_id in carrier.driver_ids

    # ------------------------------------------------------------------
    # Document store boundary
    # ------------------------------------------------------------------

    def register_document(self, request: DocumentRegisterRequest, actor_id: str, role: UserRole) -> DocumentRecord:
        """Record an uploaded document's metadata. File bytes live in external storage."""
        if role == UserRole.SHIPPER:
            raise Unauthorized("Shippers cannot upload carrier compliance documents")
        if role == UserRole.CARRIER:
            carrier = self.get_carrier(actor_id)
            if not self.carrier_owns(carrier, request.owner_id):
                raise Unauthorized(
                    f"Carrier {actor_id} does not own {request.owner_kind.value} {request.owner_id}",
                )

        document = DocumentRecord(
            document_id=self.store.generate_id("DOC"),
            owner_id=request.owner_id,
            owner_kind=request.owner_kind,
            document_type=request.document_type.strip().lower(),
            expiry_date=_as_utc(request.expiry_date) if request.expiry_date else None,
            file_name=request.file_name,
            file_url=request.file_url,
            uploaded_by=actor_id,
            uploaded_at=self._now(),
        )
        self.store.save_document(document)
        logger.info(
            "Compliance document registered",
            document_id=document.document_id,
            owner_id=document.owner_id,
            document_type=document.document_type,
        )
        self.bus.publish(
            EventName.DOCUMENT_UPLOADED,
            entity_id=document.document_id,
            new_status=self._health_status(document, self._now()),
            payload={
                "owner_id": document.owner_id,
                "owner_kind": document.owner_kind.value,
                "document_type": document.document_type,
            },
            scope=EventScope.ROLE,
            recipient_role=UserRole.ADMIN,
        )
        return document

    # ------------------------------------------------------------------
    # Requirements and evaluation
    # ------------------------------------------------------------------

    def requirements_for_carrier(
        self,
        carrier: CarrierProfile,
        truck_id: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> List[ComplianceSubject]:
        required = self.settings.required_documents()
        if isinstance(carrier, SoloCarrier):
            return [
                ComplianceSubject(
                    owner_id=carrier.carrier_id,
                    owner_kind=DocumentOwnerKind.CARRIER,
                    required_types=required["solo"],
                )
            ]

        if not truck_id:
            raise InvalidRequest(
                f"Fleet carrier {carrier.carrier_id} must name the truck for this action",
                carrier_id=carrier.carrier_id,
            )
        self.ensure_fleet_member(carrier, truck_id=truck_id, driver_id=driver_id)
        subjects = [
            ComplianceSubject(
                owner_id=truck_id,
                owner_kind=DocumentOwnerKind.TRUCK,
                required_types=required["enterprise_truck"],
            )
        ]
        if driver_id:
            subjects.append(
                ComplianceSubject(
                    owner_id=driver_id,
                    owner_kind=DocumentOwnerKind.DRIVER,
                    required_types=required["enterprise_driver"],
                )
            )
        return subjects

    @staticmethod
    def ensure_fleet_member(carrier: EnterpriseCarrier, truck_id: Optional[str], driver_id: Optional[str]) -> None:
        if truck_id and truck_id not in carrier.truck_ids:
            raise InvalidRequest(f"Truck {truck_id} is not in the fleet of {carrier.carrier_id}", truck_id=truck_id)
        if driver_id and driver_id not in carrier.driver_ids:
            raise InvalidRequest(f"Driver {driver_id} is not in the fleet of {carrier.carrier_id}", driver_id=driver_id)

    def evaluate(self, subjects: List[ComplianceSubject], now: Optional[datetime] = None) -> ComplianceDecision:
        """Pure decision over the current document rows for each subject."""
        moment = _as_utc(now) if now else self._now()
        soon = moment + timedelta(days=self.settings.compliance_expiring_soon_days)

        missing: List[str] = []
        expired: List[str] = []
        expiring_soon: List[str] = []
        for subject in subjects:
            for document_type in subject.required_types:
                document = self.store.latest_document(subject.owner_id, document_type)
                if document is None:
                    missing.append(document_type)
                    continue
                if document.expiry_date is None:
                    continue
                expiry = _as_utc(document.expiry_date)
                if expiry <= moment:
                    expired.append(document_type)
                elif expiry <= soon:
                    expiring_soon.append(document_type)

        blocking = list(dict.fromkeys(missing + expired))
        return ComplianceDecision(
            permit=not blocking,
            blocking_docs=blocking,
            missing=list(dict.fromkeys(missing)),
            expired=list(dict.fromkeys(expired)),
            expiring_soon=list(dict.fromkeys(expiring_soon)),
            evaluated_at=moment,
        )

    def check_carrier(
        self,
        carrier_id: str,
        truck_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        action: str = "",
    ) -> ComplianceDecision:
        """Evaluate the carrier now and raise ComplianceBlocked when denied."""
        carrier = self.get_carrier(carrier_id)
        subjects = self.requirements_for_carrier(carrier, truck_id=truck_id, driver_id=driver_id)
        decision = self.evaluate(subjects)
        if not decision.permit:
            logger.warning(
                "Compliance gate blocked action",
                carrier_id=carrier_id,
                action=action,
                blocking_docs=decision.blocking_docs,
            )
            raise ComplianceBlocked(
                f"Carrier {carrier_id} is blocked by missing or expired documents: "
                f"{', '.join(decision.blocking_docs)}",
                blocking_docs=decision.blocking_docs,
                missing=decision.missing,
                expired=decision.expired,
                carrier_id=carrier_id,
            )
        return decision

    # ------------------------------------------------------------------
    # Derived read views
    # ------------------------------------------------------------------

    def _health_status(self, document: DocumentRecord, moment: datetime) -> str:
        if document.expiry_date is None:
            return "healthy"
        expiry = _as_utc(document.expiry_date)
        if expiry <= moment:
            return "expired"
        if expiry <= moment + timedelta(days=self.settings.compliance_expiring_soon_days):
            return "expiring_soon"
        return "healthy"

    def compliance_record(self, owner_id: str) -> ComplianceRecord:
        moment = self._now()
        record = ComplianceRecord(owner_id=owner_id)
        seen: set[str] = set()
        for document in self.store.list_documents(owner_id):
            if document.document_type in seen:
                continue
            seen.add(document.document_type)
            days_remaining = None
            if document.expiry_date is not None:
                days_remaining = (_as_utc(document.expiry_date) - moment).days
            health = DocumentHealth(
                document_id=document.document_id,
                document_type=document.document_type,
                expiry_date=document.expiry_date,
                days_remaining=days_remaining,
            )
            bucket = self._health_status(document, moment)
            if bucket == "expired":
                record.expired.append(health)
            elif bucket == "expiring_soon":
                record.expiring_soon.append(health)
            else:
                record.healthy.append(health)
        return record

    def carrier_overview(self, carrier_id: str) -> Dict[str, Any]:
        """Per-owner decisions and records across a carrier's documents."""
        carrier = self.get_carrier(carrier_id)
        required = self.settings.required_documents()
        if isinstance(carrier, SoloCarrier):
            subjects = self.requirements_for_carrier(carrier)
        else:
            subjects = [
                ComplianceSubject(
                    owner_id=truck_id,
                    owner_kind=DocumentOwnerKind.TRUCK,
                    required_types=required["enterprise_truck"],
                )
                for truck_id in carrier.truck_ids
            ] + [
                ComplianceSubject(
                    owner_id=driver_id,
                    owner_kind=DocumentOwnerKind.DRIVER,
                    required_types=required["enterprise_driver"],
                )
                for driver_id in carrier.driver_ids
            ]

        return {
            "carrier_id": carrier.carrier_id,
            "carrier_type": carrier.carrier_type,
            "subjects": [
                {
                    "owner_id": subject.owner_id,
                    "owner_kind": subject.owner_kind.value,
                    "decision": self.evaluate([subject]).model_dump(mode="json"),
                    "record": self.compliance_record(subject.owner_id).model_dump(mode="json"),
                }
                for subject in subjects
            ],
        }


compliance_gate = ComplianceGate()
