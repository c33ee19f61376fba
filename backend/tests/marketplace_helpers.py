"""Builders for wiring a self-contained marketplace over a temporary database."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Optional

from freightlink.core.config import Settings
from freightlink.models.marketplace import (
    BidAcceptanceResult,
    BidCreateRequest,
    DocumentOwnerKind,
    DocumentRegisterRequest,
    EnterpriseCarrier,
    LoadCreateRequest,
    LoadRecord,
    LoadStatus,
    LocationDescriptor,
    SoloCarrier,
    UserRole,
)
from freightlink.services.compliance import ComplianceGate
from freightlink.services.event_bus import EventBus
from freightlink.services.lifecycle import LifecycleEngine
from freightlink.services.otp_workflow import OtpWorkflow
from freightlink.services.state_store import MarketplaceStateStore


ADMIN = "ADM-1"
SHIPPER = "SHP-1"
SOLO_DOCS = ("license", "registration", "insurance", "fitness")
TRUCK_DOCS = ("registration", "insurance", "fitness")
DRIVER_DOCS = ("license",)


class FrozenClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@dataclass
class Marketplace:
    settings: Settings
    clock: FrozenClock
    store: MarketplaceStateStore
    bus: EventBus
    gate: ComplianceGate
    engine: LifecycleEngine
    otp: OtpWorkflow


def build_marketplace(tmp_path: Path, **overrides) -> Marketplace:
    settings = Settings(marketplace_db_path=str(tmp_path / "marketplace.db"), **overrides)
    clock = FrozenClock()
    store = MarketplaceStateStore(settings.marketplace_db_path)
    bus = EventBus(max_retries=0, feed_size=200)
    gate = ComplianceGate(store=store, bus=bus, settings=settings, clock=clock)
    engine = LifecycleEngine(store=store, gate=gate, bus=bus, settings=settings, clock=clock)
    otp = OtpWorkflow(store=store, gate=gate, bus=bus, lifecycle=engine, settings=settings, clock=clock)
    return Marketplace(settings=settings, clock=clock, store=store, bus=bus, gate=gate, engine=engine, otp=otp)


def upload(
    mp: Marketplace,
    owner_id: str,
    owner_kind: DocumentOwnerKind,
    document_type: str,
    days_valid: Optional[float] = 365,
):
    expiry = mp.clock.now + timedelta(days=days_valid) if days_valid is not None else None
    return mp.gate.register_document(
        DocumentRegisterRequest(
            owner_id=owner_id,
            owner_kind=owner_kind,
            document_type=document_type,
            expiry_date=expiry,
            file_name=f"{document_type}.pdf",
        ),
        actor_id=ADMIN,
        role=UserRole.ADMIN,
    )


def register_solo(
    mp: Marketplace,
    carrier_id: str = "CAR-SOLO",
    truck_id: str = "TRK-SOLO",
    documents: Iterable[str] = SOLO_DOCS,
) -> SoloCarrier:
    profile = SoloCarrier(carrier_id=carrier_id, name=f"{carrier_id} Haulage", truck_id=truck_id)
    mp.gate.register_carrier(profile, actor_id=ADMIN, role=UserRole.ADMIN)
    for document_type in documents:
        upload(mp, carrier_id, DocumentOwnerKind.CARRIER, document_type)
    return profile


def register_fleet(
    mp: Marketplace,
    carrier_id: str = "CAR-FLEET",
    truck_ids: Iterable[str] = ("TRK-A", "TRK-B"),
    driver_ids: Iterable[str] = ("DRV-A",),
) -> EnterpriseCarrier:
    profile = EnterpriseCarrier(
        carrier_id=carrier_id,
        name=f"{carrier_id} Logistics",
        truck_ids=list(truck_ids),
        driver_ids=list(driver_ids),
    )
    mp.gate.register_carrier(profile, actor_id=ADMIN, role=UserRole.ADMIN)
    for truck_id in profile.truck_ids:
        for document_type in TRUCK_DOCS:
            upload(mp, truck_id, DocumentOwnerKind.TRUCK, document_type)
    for driver_id in profile.driver_ids:
        for document_type in DRIVER_DOCS:
            upload(mp, driver_id, DocumentOwnerKind.DRIVER, document_type)
    return profile


def submit_load(mp: Marketplace, shipper_id: str = SHIPPER) -> LoadRecord:
    return mp.engine.create_load(
        LoadCreateRequest(
            pickup=LocationDescriptor(city="Houston", state="TX"),
            dropoff=LocationDescriptor(city="Dallas", state="TX"),
            weight_kg=12000,
            required_truck_type="dry_van",
            cargo_description="Palletized beverages",
        ),
        actor_id=shipper_id,
        role=UserRole.SHIPPER,
    )


def open_load(mp: Marketplace, shipper_id: str = SHIPPER, price: str = "1500") -> LoadRecord:
    load = submit_load(mp, shipper_id)
    mp.engine.price_load(load.load_id, Decimal(price), actor_id=ADMIN, role=UserRole.ADMIN)
    mp.engine.post_load(load.load_id, actor_id=ADMIN, role=UserRole.ADMIN)
    return mp.engine.open_bidding(load.load_id, actor_id=ADMIN, role=UserRole.ADMIN)


def place_bid(mp: Marketplace, load_id: str, carrier_id: str, amount: str = "1400", **kwargs):
    return mp.engine.create_bid(
        BidCreateRequest(load_id=load_id, amount=Decimal(amount), **kwargs),
        actor_id=carrier_id,
        role=UserRole.CARRIER,
    )


def award_solo(mp: Marketplace, carrier_id: str = "CAR-SOLO") -> BidAcceptanceResult:
    if mp.store.get_carrier(carrier_id) is None:
        register_solo(mp, carrier_id=carrier_id)
    load = open_load(mp)
    bid = place_bid(mp, load.load_id, carrier_id)
    return mp.engine.accept_bid(bid.bid_id, actor_id=SHIPPER, role=UserRole.SHIPPER)


def settle_invoice(mp: Marketplace, load_id: str) -> LoadRecord:
    mp.engine.advance_invoice(load_id, LoadStatus.INVOICE_CREATED, actor_id=ADMIN, role=UserRole.ADMIN)
    mp.engine.advance_invoice(load_id, LoadStatus.INVOICE_SENT, actor_id=ADMIN, role=UserRole.ADMIN)
    mp.engine.advance_invoice(load_id, LoadStatus.INVOICE_ACKNOWLEDGED, actor_id=SHIPPER, role=UserRole.SHIPPER)
    return mp.engine.advance_invoice(load_id, LoadStatus.INVOICE_PAID, actor_id=ADMIN, role=UserRole.ADMIN)
