"""Unit tests for the carrier compliance gate."""
from __future__ import annotations

import pytest

from freightlink.core.errors import ComplianceBlocked, InvalidRequest, NotFound, Unauthorized
from freightlink.models.events import EventName
from freightlink.models.marketplace import DocumentOwnerKind, DocumentRegisterRequest, UserRole

from marketplace_helpers import ADMIN, build_marketplace, register_fleet, register_solo, upload


def test_solo_carrier_with_valid_documents_is_permitted(marketplace):
    register_solo(marketplace)

    decision = marketplace.gate.check_carrier("CAR-SOLO", action="create_bid")

    assert decision.permit is True
    assert decision.blocking_docs == []
    assert decision.expiring_soon == []


def test_missing_document_blocks_with_its_type(marketplace):
    register_solo(marketplace, documents=("license", "registration", "insurance"))

    with pytest.raises(ComplianceBlocked) as exc_info:
        marketplace.gate.check_carrier("CAR-SOLO")

    assert exc_info.value.blocking_docs == ["fitness"]
    assert exc_info.value.details["missing"] == ["fitness"]


def test_expired_document_blocks_until_renewed(marketplace):
    register_solo(marketplace)
    upload(marketplace, "CAR-SOLO", DocumentOwnerKind.CARRIER, "insurance", days_valid=-1)

    with pytest.raises(ComplianceBlocked) as exc_info:
        marketplace.gate.check_carrier("CAR-SOLO")
    assert exc_info.value.blocking_docs == ["insurance"]
    assert exc_info.value.details["expired"] == ["insurance"]

    upload(marketplace, "CAR-SOLO", DocumentOwnerKind.CARRIER, "insurance", days_valid=180)
    assert marketplace.gate.check_carrier("CAR-SOLO").permit is True


def test_expiring_soon_is_advisory_only(marketplace):
    register_solo(marketplace)
    upload(marketplace, "CAR-SOLO", DocumentOwnerKind.CARRIER, "fitness", days_valid=10)

    decision = marketplace.gate.check_carrier("CAR-SOLO")

    assert decision.permit is True
    assert decision.expiring_soon == ["fitness"]


def test_decision_is_reevaluated_on_every_call(marketplace):
    register_solo(marketplace)
    upload(marketplace, "CAR-SOLO", DocumentOwnerKind.CARRIER, "license", days_valid=2)
    assert marketplace.gate.check_carrier("CAR-SOLO").permit is True

    marketplace.clock.advance(days=3)

    with pytest.raises(ComplianceBlocked) as exc_info:
        marketplace.gate.check_carrier("CAR-SOLO")
    assert exc_info.value.blocking_docs == ["license"]


def test_fleet_checks_named_truck_and_driver(marketplace):
    register_fleet(marketplace)

    with pytest.raises(InvalidRequest):
        marketplace.gate.check_carrier("CAR-FLEET")
    with pytest.raises(InvalidRequest):
        marketplace.gate.check_carrier("CAR-FLEET", truck_id="TRK-OTHER")

    assert marketplace.gate.check_carrier("CAR-FLEET", truck_id="TRK-A", driver_id="DRV-A").permit is True

    upload(marketplace, "DRV-A", DocumentOwnerKind.DRIVER, "license", days_valid=-5)
    with pytest.raises(ComplianceBlocked) as exc_info:
        marketplace.gate.check_carrier("CAR-FLEET", truck_id="TRK-A", driver_id="DRV-A")
    assert exc_info.value.blocking_docs == ["license"]

    # Truck-only checks ignore the driver's paperwork.
    assert marketplace.gate.check_carrier("CAR-FLEET", truck_id="TRK-B").permit is True


def test_required_document_sets_come_from_settings(tmp_path):
    mp = build_marketplace(tmp_path, solo_required_documents="license")
    register_solo(mp, documents=("license",))

    assert mp.gate.check_carrier("CAR-SOLO").permit is True
    mp.store.close()


def test_unknown_carrier_is_not_found(marketplace):
    with pytest.raises(NotFound):
        marketplace.gate.check_carrier("CAR-NOPE")


def test_document_upload_is_restricted_to_owners(marketplace):
    register_fleet(marketplace)
    request = DocumentRegisterRequest(
        owner_id="TRK-A",
        owner_kind=DocumentOwnerKind.TRUCK,
        document_type="Insurance",
    )

    with pytest.raises(Unauthorized):
        marketplace.gate.register_document(request, actor_id="SHP-1", role=UserRole.SHIPPER)

    register_solo(marketplace, carrier_id="CAR-OTHER", truck_id="TRK-OTHER")
    with pytest.raises(Unauthorized):
        marketplace.gate.register_document(request, actor_id="CAR-OTHER", role=UserRole.CARRIER)

    document = marketplace.gate.register_document(request, actor_id="CAR-FLEET", role=UserRole.CARRIER)
    assert document.document_type == "insurance"

    feed = marketplace.bus.feed_for(ADMIN, UserRole.ADMIN, events={EventName.DOCUMENT_UPLOADED})
    assert any(event.entity_id == document.document_id for event in feed)


def test_compliance_record_buckets_latest_documents(marketplace):
    register_solo(marketplace)
    upload(marketplace, "CAR-SOLO", DocumentOwnerKind.CARRIER, "insurance", days_valid=-1)
    upload(marketplace, "CAR-SOLO", DocumentOwnerKind.CARRIER, "fitness", days_valid=7)

    record = marketplace.gate.compliance_record("CAR-SOLO")

    assert [item.document_type for item in record.expired] == ["insurance"]
    assert [item.document_type for item in record.expiring_soon] == ["fitness"]
    assert sorted(item.document_type for item in record.healthy) == ["license", "registration"]


def test_carrier_overview_lists_every_fleet_subject(marketplace):
    register_fleet(marketplace)

    overview = marketplace.gate.carrier_overview("CAR-FLEET")

    owners = [subject["owner_id"] for subject in overview["subjects"]]
    assert owners == ["TRK-A", "TRK-B", "DRV-A"]
    assert all(subject["decision"]["permit"] for subject in overview["subjects"])
