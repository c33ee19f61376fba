"""Domain models for the freight marketplace transaction lifecycle."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Marketplace participant roles."""

    SHIPPER = "shipper"
    CARRIER = "carrier"
    ADMIN = "admin"


class CarrierType(str, Enum):
    SOLO = "solo"
    ENTERPRISE = "enterprise"


class LoadStatus(str, Enum):
    """Lifecycle status for a load, from submission to closure."""

    PENDING = "pending"
    PRICED = "priced"
    POSTED_TO_CARRIERS = "posted_to_carriers"
    OPEN_FOR_BID = "open_for_bid"
    COUNTER_RECEIVED = "counter_received"
    AWARDED = "awarded"
    INVOICE_CREATED = "invoice_created"
    INVOICE_SENT = "invoice_sent"
    INVOICE_ACKNOWLEDGED = "invoice_acknowledged"
    INVOICE_PAID = "invoice_paid"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    UNAVAILABLE = "unavailable"


class BidStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COUNTERED = "countered"
    EXPIRED = "expired"


class ShipmentStatus(str, Enum):
    ASSIGNED = "assigned"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OtpRequestType(str, Enum):
    TRIP_START = "trip_start"
    TRIP_END = "trip_end"
    REGISTRATION = "registration"


class OtpRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DocumentOwnerKind(str, Enum):
    """Which party a compliance document belongs to."""

    CARRIER = "carrier"
    TRUCK = "truck"
    DRIVER = "driver"


class LocationDescriptor(BaseModel):
    """Pickup or dropoff point as entered by the shipper."""

    city: str
    address: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class LoadRecord(BaseModel):
    """Persisted load record."""

    load_id: str
    reference_number: str
    shipper_id: str
    pickup: LocationDescriptor
    dropoff: LocationDescriptor
    weight_kg: float = Field(default=0.0, ge=0)
    required_truck_type: Optional[str] = None
    cargo_description: Optional[str] = None
    status: LoadStatus = LoadStatus.PENDING
    previous_status: Optional[LoadStatus] = None
    status_note: Optional[str] = None
    assigned_carrier_id: Optional[str] = None
    admin_final_price: Optional[Decimal] = None
    final_price: Optional[Decimal] = None
    awarded_bid_id: Optional[str] = None
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class BidRecord(BaseModel):
    """A carrier's offer against a load."""

    bid_id: str
    load_id: str
    carrier_id: str
    carrier_type: CarrierType
    amount: Decimal
    counter_amount: Optional[Decimal] = None
    final_amount: Optional[Decimal] = None
    status: BidStatus = BidStatus.PENDING
    notes: Optional[str] = None
    estimated_pickup: Optional[datetime] = None
    truck_id: Optional[str] = None
    driver_id: Optional[str] = None
    countered_by: Optional[str] = None
    decided_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ShipmentRecord(BaseModel):
    """Execution record created once when a load is awarded."""

    shipment_id: str
    load_id: str
    carrier_id: str
    carrier_type: CarrierType
    driver_id: Optional[str] = None
    truck_id: Optional[str] = None
    status: ShipmentStatus = ShipmentStatus.ASSIGNED
    start_otp_requested: bool = False
    start_otp_verified: bool = False
    end_otp_requested: bool = False
    end_otp_verified: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)


class OtpRequestRecord(BaseModel):
    """Carrier request for a one-time trip code."""

    request_id: str
    shipment_id: str
    load_id: str
    carrier_id: str
    request_type: OtpRequestType
    status: OtpRequestStatus = OtpRequestStatus.PENDING
    requested_by: str
    requested_at: datetime = Field(default_factory=_utcnow)
    processed_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    notes: Optional[str] = None
    otp_id: Optional[str] = None


class OtpRecord(BaseModel):
    """Issued one-time code. Only a salted hash of the code is persisted."""

    otp_id: str
    request_id: str
    code_hash: str
    valid_until: datetime
    consumed_at: Optional[datetime] = None
    invalidated_at: Optional[datetime] = None
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=5, ge=1)
    generated_by: str
    created_at: datetime = Field(default_factory=_utcnow)


class DocumentRecord(BaseModel):
    """Compliance document metadata as held by the document store."""

    document_id: str
    owner_id: str
    owner_kind: DocumentOwnerKind
    document_type: str
    expiry_date: Optional[datetime] = None
    file_name: Optional[str] = None
    file_url: Optional[str] = None
    uploaded_by: Optional[str] = None
    uploaded_at: datetime = Field(default_factory=_utcnow)


class LoadStateChange(BaseModel):
    """Audit entry for one load status transition."""

    change_id: str
    load_id: str
    from_status: Optional[LoadStatus] = None
    to_status: LoadStatus
    actor_id: str
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class SoloCarrier(BaseModel):
    """Owner-operator who drives their own truck."""

    carrier_type: Literal["solo"] = "solo"
    carrier_id: str
    name: str
    truck_id: Optional[str] = None


class EnterpriseCarrier(BaseModel):
    """Fleet operator dispatching trucks and drivers from a roster."""

    carrier_type: Literal["enterprise"] = "enterprise"
    carrier_id: str
    name: str
    truck_ids: List[str] = Field(default_factory=list)
    driver_ids: List[str] = Field(default_factory=list)


CarrierProfile = Annotated[Union[SoloCarrier, EnterpriseCarrier], Field(discriminator="carrier_type")]


class ComplianceSubject(BaseModel):
    """One document owner and the document types it must hold."""

    owner_id: str
    owner_kind: DocumentOwnerKind
    required_types: List[str]


class ComplianceDecision(BaseModel):
    """Gate output consumed by the lifecycle and OTP workflows."""

    permit: bool
    blocking_docs: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    expired: List[str] = Field(default_factory=list)
    expiring_soon: List[str] = Field(default_factory=list)
    evaluated_at: datetime = Field(default_factory=_utcnow)


class DocumentHealth(BaseModel):
    document_id: str
    document_type: str
    expiry_date: Optional[datetime] = None
    days_remaining: Optional[int] = None


class ComplianceRecord(BaseModel):
    """Derived view over an owner's documents. Never persisted."""

    owner_id: str
    expired: List[DocumentHealth] = Field(default_factory=list)
    expiring_soon: List[DocumentHealth] = Field(default_factory=list)
    healthy: List[DocumentHealth] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class LoadCreateRequest(BaseModel):
    """Shipper payload to submit a new load."""

    shipper_id: Optional[str] = Field(default=None, description="Admin only: submit on behalf of a shipper")
    pickup: LocationDescriptor
    dropoff: LocationDescriptor
    weight_kg: float = Field(default=0.0, ge=0)
    required_truck_type: Optional[str] = None
    cargo_description: Optional[str] = None


class LoadPatchRequest(BaseModel):
    """Status transition requested through PATCH /loads/{id}."""

    status: LoadStatus
    admin_final_price: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = None
    expected_version: Optional[int] = Field(default=None, ge=1)


class BidCreateRequest(BaseModel):
    load_id: str
    amount: Decimal = Field(gt=0)
    notes: Optional[str] = None
    estimated_pickup: Optional[datetime] = None
    truck_id: Optional[str] = None
    driver_id: Optional[str] = None


class BidCounterRequest(BaseModel):
    counter_amount: Decimal = Field(gt=0)
    notes: Optional[str] = None


class BidDecisionRequest(BaseModel):
    notes: Optional[str] = None


class ShipmentAssignRequest(BaseModel):
    """Fleet carriers name the truck and driver executing the trip."""

    truck_id: str
    driver_id: str


class OtpRequestCreate(BaseModel):
    shipment_id: str
    request_type: OtpRequestType


class OtpApproveRequest(BaseModel):
    validity_minutes: Optional[int] = None


class OtpRejectRequest(BaseModel):
    notes: Optional[str] = None


class OtpVerifyRequest(BaseModel):
    request_type: OtpRequestType
    code: str = Field(min_length=1, max_length=16)


class DocumentRegisterRequest(BaseModel):
    owner_id: str
    owner_kind: DocumentOwnerKind
    document_type: str
    expiry_date: Optional[datetime] = None
    file_name: Optional[str] = None
    file_url: Optional[str] = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class BidAcceptanceResult(BaseModel):
    bid: BidRecord
    load: LoadRecord
    shipment: ShipmentRecord
    rejected_bid_ids: List[str] = Field(default_factory=list)


class OtpIssueResult(BaseModel):
    """Returned to the approving admin only; carries the plaintext code."""

    request: OtpRequestRecord
    otp_id: str
    code: str
    valid_until: datetime


class OtpVerificationResult(BaseModel):
    request_type: OtpRequestType
    shipment: ShipmentRecord
    load_status: LoadStatus
    verified_at: datetime
