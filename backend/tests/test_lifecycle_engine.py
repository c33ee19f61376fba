"""Unit tests for the load/bid lifecycle engine."""
from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from freightlink.core.errors import (
    AlreadyAwarded,
    ComplianceBlocked,
    DuplicatePending,
    InvalidRequest,
    InvalidTransition,
    MarketplaceError,
    Unauthorized,
)
from freightlink.models.events import EventName
from freightlink.models.marketplace import (
    BidStatus,
    DocumentOwnerKind,
    LoadCreateRequest,
    LoadPatchRequest,
    LoadStatus,
    LocationDescriptor,
    ShipmentStatus,
    UserRole,
)
from freightlink.services.state_machine import CARRIER_ASSIGNED_STATUSES

from marketplace_helpers import (
    ADMIN,
    SHIPPER,
    award_solo,
    build_marketplace,
    open_load,
    place_bid,
    register_fleet,
    register_solo,
    settle_invoice,
    submit_load,
    upload,
)


def _assert_assignment_invariant(load):
    if load.status in CARRIER_ASSIGNED_STATUSES:
        assert load.assigned_carrier_id
    else:
        assert load.assigned_carrier_id is None


def test_load_moves_through_pricing_and_posting_with_history(marketplace):
    load = open_load(marketplace)

    assert load.status == LoadStatus.OPEN_FOR_BID
    assert load.admin_final_price == Decimal("1500")
    assert load.version == 4
    assert load.reference_number.startswith("FL-")

    history = marketplace.store.list_load_history(load.load_id)
    assert [(change.from_status, change.to_status) for change in history] == [
        (None, LoadStatus.PENDING),
        (LoadStatus.PENDING, LoadStatus.PRICED),
        (LoadStatus.PRICED, LoadStatus.POSTED_TO_CARRIERS),
        (LoadStatus.POSTED_TO_CARRIERS, LoadStatus.OPEN_FOR_BID),
    ]
    assert history[1].actor_id == ADMIN


def test_skipping_a_stage_is_rejected_without_writes(marketplace):
    load = submit_load(marketplace)

    with pytest.raises(InvalidTransition) as exc_info:
        marketplace.engine.post_load(load.load_id, actor_id=ADMIN, role=UserRole.ADMIN)

    assert exc_info.value.details["current_status"] == "pending"
    reloaded = marketplace.store.get_load(load.load_id)
    assert reloaded.status == LoadStatus.PENDING
    assert reloaded.version == load.version
    assert len(marketplace.store.list_load_history(load.load_id)) == 1


def test_roles_are_enforced_on_load_operations(marketplace):
    request = LoadCreateRequest(pickup=LocationDescriptor(city="A"), dropoff=LocationDescriptor(city="B"))
    with pytest.raises(Unauthorized):
        marketplace.engine.create_load(request, actor_id="CAR-1", role=UserRole.CARRIER)
    with pytest.raises(InvalidRequest):
        marketplace.engine.create_load(request, actor_id=ADMIN, role=UserRole.ADMIN)

    load = submit_load(marketplace)
    with pytest.raises(Unauthorized):
        marketplace.engine.price_load(load.load_id, Decimal("900"), actor_id=SHIPPER, role=UserRole.SHIPPER)
    with pytest.raises(Unauthorized):
        marketplace.engine.cancel_load(load.load_id, actor_id="SHP-OTHER", role=UserRole.SHIPPER)


def test_bids_require_an_open_load(marketplace):
    register_solo(marketplace)
    load = submit_load(marketplace)

    with pytest.raises(InvalidTransition):
        place_bid(marketplace, load.load_id, "CAR-SOLO")


def test_bid_creation_is_blocked_by_expired_documents(marketplace):
    register_solo(marketplace)
    upload(marketplace, "CAR-SOLO", DocumentOwnerKind.CARRIER, "insurance", days_valid=-1)
    load = open_load(marketplace)

    with pytest.raises(ComplianceBlocked) as exc_info:
        place_bid(marketplace, load.load_id, "CAR-SOLO")

    assert exc_info.value.blocking_docs == ["insurance"]
    assert marketplace.store.list_bids_for_load(load.load_id) == []

    upload(marketplace, "CAR-SOLO", DocumentOwnerKind.CARRIER, "insurance", days_valid=365)
    assert place_bid(marketplace, load.load_id, "CAR-SOLO").status == BidStatus.PENDING


def test_one_live_bid_per_carrier_per_load(marketplace):
    register_solo(marketplace)
    load = open_load(marketplace)
    place_bid(marketplace, load.load_id, "CAR-SOLO")

    with pytest.raises(DuplicatePending):
        place_bid(marketplace, load.load_id, "CAR-SOLO", amount="1300")


def test_accepting_a_bid_awards_load_and_rejects_siblings(marketplace):
    register_solo(marketplace, carrier_id="CAR-1", truck_id="TRK-1")
    register_solo(marketplace, carrier_id="CAR-2", truck_id="TRK-2")
    load = open_load(marketplace)
    winner = place_bid(marketplace, load.load_id, "CAR-1", amount="1450")
    loser = place_bid(marketplace, load.load_id, "CAR-2", amount="1490")

    result = marketplace.engine.accept_bid(winner.bid_id, actor_id=SHIPPER, role=UserRole.SHIPPER)

    assert result.bid.status == BidStatus.ACCEPTED
    assert result.bid.final_amount == Decimal("1450")
    assert result.rejected_bid_ids == [loser.bid_id]
    assert marketplace.store.get_bid(loser.bid_id).status == BidStatus.REJECTED

    assert result.load.status == LoadStatus.AWARDED
    assert result.load.assigned_carrier_id == "CAR-1"
    assert result.load.final_price == Decimal("1450")
    assert result.load.awarded_bid_id == winner.bid_id
    _assert_assignment_invariant(result.load)

    shipment = marketplace.store.get_shipment_for_load(load.load_id)
    assert shipment.shipment_id == result.shipment.shipment_id
    assert shipment.status == ShipmentStatus.ASSIGNED
    assert shipment.truck_id == "TRK-1"
    assert shipment.driver_id == "CAR-1"

    winner_feed = marketplace.bus.feed_for("CAR-1", UserRole.CARRIER, events={EventName.BID_ACCEPTED})
    loser_feed = marketplace.bus.feed_for("CAR-2", UserRole.CARRIER, events={EventName.BID_REJECTED})
    assert [event.entity_id for event in winner_feed] == [winner.bid_id]
    assert [event.entity_id for event in loser_feed] == [loser.bid_id]


def test_second_acceptance_observes_award(marketplace):
    register_solo(marketplace, carrier_id="CAR-1", truck_id="TRK-1")
    register_solo(marketplace, carrier_id="CAR-2", truck_id="TRK-2")
    load = open_load(marketplace)
    first = place_bid(marketplace, load.load_id, "CAR-1")
    second = place_bid(marketplace, load.load_id, "CAR-2")

    marketplace.engine.accept_bid(first.bid_id, actor_id=SHIPPER, role=UserRole.SHIPPER)

    with pytest.raises(AlreadyAwarded):
        marketplace.engine.accept_bid(second.bid_id, actor_id=ADMIN, role=UserRole.ADMIN)


def test_concurrent_acceptance_has_exactly_one_winner(marketplace):
    carriers = [f"CAR-{index}" for index in range(4)]
    for index, carrier_id in enumerate(carriers):
        register_solo(marketplace, carrier_id=carrier_id, truck_id=f"TRK-{index}")
    load = open_load(marketplace)
    bids = [place_bid(marketplace, load.load_id, carrier_id) for carrier_id in carriers]

    barrier = threading.Barrier(len(bids))
    outcomes = []
    lock = threading.Lock()

    def _accept(bid_id: str) -> None:
        barrier.wait()
        try:
            marketplace.engine.accept_bid(bid_id, actor_id=SHIPPER, role=UserRole.SHIPPER)
            result = "won"
        except MarketplaceError as exc:
            result = exc.kind
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_accept, args=(bid.bid_id,)) for bid in bids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("won") == 1
    assert sorted(outcome for outcome in outcomes if outcome != "won") == ["AlreadyAwarded"] * 3
    statuses = [marketplace.store.get_bid(bid.bid_id).status for bid in bids]
    assert statuses.count(BidStatus.ACCEPTED) == 1
    assert statuses.count(BidStatus.REJECTED) == 3
    assert marketplace.store.get_shipment_for_load(load.load_id) is not None


def test_counter_offer_is_answered_by_the_carrier(marketplace):
    register_solo(marketplace)
    load = open_load(marketplace)
    bid = place_bid(marketplace, load.load_id, "CAR-SOLO", amount="1700")

    countered = marketplace.engine.counter_bid(bid.bid_id, Decimal("1550"), actor_id=SHIPPER, role=UserRole.SHIPPER)
    assert countered.status == BidStatus.COUNTERED
    assert marketplace.store.get_load(load.load_id).status == LoadStatus.COUNTER_RECEIVED

    with pytest.raises(Unauthorized):
        marketplace.engine.accept_bid(bid.bid_id, actor_id=SHIPPER, role=UserRole.SHIPPER)

    result = marketplace.engine.accept_bid(bid.bid_id, actor_id="CAR-SOLO", role=UserRole.CARRIER)
    assert result.bid.final_amount == Decimal("1550")
    assert result.load.final_price == Decimal("1550")
    assert result.load.status == LoadStatus.AWARDED

    feed = marketplace.bus.feed_for("CAR-SOLO", UserRole.CARRIER, events={EventName.BID_COUNTERED})
    assert [event.entity_id for event in feed] == [bid.bid_id]


def test_rejecting_last_counter_reopens_bidding(marketplace):
    register_solo(marketplace)
    load = open_load(marketplace)
    bid = place_bid(marketplace, load.load_id, "CAR-SOLO")
    marketplace.engine.counter_bid(bid.bid_id, Decimal("1200"), actor_id=ADMIN, role=UserRole.ADMIN)

    rejected = marketplace.engine.reject_bid(bid.bid_id, actor_id="CAR-SOLO", role=UserRole.CARRIER)

    assert rejected.status == BidStatus.REJECTED
    assert marketplace.store.get_load(load.load_id).status == LoadStatus.OPEN_FOR_BID
    with pytest.raises(InvalidTransition):
        marketplace.engine.accept_bid(bid.bid_id, actor_id=SHIPPER, role=UserRole.SHIPPER)


def test_acceptance_rechecks_compliance(marketplace):
    register_solo(marketplace)
    load = open_load(marketplace)
    bid = place_bid(marketplace, load.load_id, "CAR-SOLO")
    upload(marketplace, "CAR-SOLO", DocumentOwnerKind.CARRIER, "registration", days_valid=-1)

    with pytest.raises(ComplianceBlocked) as exc_info:
        marketplace.engine.accept_bid(bid.bid_id, actor_id=SHIPPER, role=UserRole.SHIPPER)

    assert exc_info.value.blocking_docs == ["registration"]
    assert marketplace.store.get_load(load.load_id).status == LoadStatus.OPEN_FOR_BID
    assert marketplace.store.get_bid(bid.bid_id).status == BidStatus.PENDING
    assert marketplace.store.get_shipment_for_load(load.load_id) is None


def test_fleet_bid_names_truck_and_driver_for_shipment(marketplace):
    register_fleet(marketplace)
    load = open_load(marketplace)

    with pytest.raises(InvalidRequest):
        place_bid(marketplace, load.load_id, "CAR-FLEET")

    bid = place_bid(marketplace, load.load_id, "CAR-FLEET", truck_id="TRK-B", driver_id="DRV-A")
    result = marketplace.engine.accept_bid(bid.bid_id, actor_id=SHIPPER, role=UserRole.SHIPPER)

    assert result.shipment.truck_id == "TRK-B"
    assert result.shipment.driver_id == "DRV-A"


def test_cancel_after_award_cancels_shipment_and_clears_carrier(marketplace):
    result = award_solo(marketplace)

    cancelled = marketplace.engine.cancel_load(
        result.load.load_id, actor_id=SHIPPER, role=UserRole.SHIPPER, reason="customer withdrew"
    )

    assert cancelled.status == LoadStatus.CANCELLED
    assert cancelled.previous_status == LoadStatus.AWARDED
    _assert_assignment_invariant(cancelled)
    assert marketplace.store.get_shipment(result.shipment.shipment_id).status == ShipmentStatus.CANCELLED

    with pytest.raises(InvalidTransition):
        marketplace.engine.cancel_load(result.load.load_id, actor_id=ADMIN, role=UserRole.ADMIN)


def test_cancel_before_award_expires_live_bids(marketplace):
    register_solo(marketplace)
    load = open_load(marketplace)
    bid = place_bid(marketplace, load.load_id, "CAR-SOLO")

    marketplace.engine.cancel_load(load.load_id, actor_id=ADMIN, role=UserRole.ADMIN)

    assert marketplace.store.get_bid(bid.bid_id).status == BidStatus.EXPIRED


def test_unavailable_load_resubmits_to_pending_by_default(marketplace):
    register_solo(marketplace)
    load = open_load(marketplace)
    bid = place_bid(marketplace, load.load_id, "CAR-SOLO")

    hidden = marketplace.engine.make_unavailable(load.load_id, actor_id=SHIPPER, role=UserRole.SHIPPER)
    assert hidden.status == LoadStatus.UNAVAILABLE
    assert marketplace.store.get_bid(bid.bid_id).status == BidStatus.EXPIRED

    with pytest.raises(InvalidTransition):
        marketplace.engine.resubmit_load(
            load.load_id, actor_id=SHIPPER, role=UserRole.SHIPPER, target=LoadStatus.OPEN_FOR_BID
        )

    resubmitted = marketplace.engine.resubmit_load(load.load_id, actor_id=SHIPPER, role=UserRole.SHIPPER)
    assert resubmitted.status == LoadStatus.PENDING
    assert resubmitted.admin_final_price is None


def test_unavailable_reentry_policy_can_reopen_bidding(tmp_path):
    mp = build_marketplace(tmp_path, unavailable_reentry_status="open_for_bid")
    load = open_load(mp)
    mp.engine.make_unavailable(load.load_id, actor_id=ADMIN, role=UserRole.ADMIN)

    resubmitted = mp.engine.transition_load(
        load.load_id,
        LoadPatchRequest(status=LoadStatus.OPEN_FOR_BID),
        actor_id=SHIPPER,
        role=UserRole.SHIPPER,
    )

    assert resubmitted.status == LoadStatus.OPEN_FOR_BID
    assert resubmitted.admin_final_price == Decimal("1500")
    mp.store.close()


def test_awarded_loads_cannot_be_made_unavailable(marketplace):
    result = award_solo(marketplace)

    with pytest.raises(InvalidTransition):
        marketplace.engine.make_unavailable(result.load.load_id, actor_id=ADMIN, role=UserRole.ADMIN)


def test_trip_and_bid_states_cannot_be_patched_directly(marketplace):
    result = award_solo(marketplace)
    load_id = result.load.load_id
    settle_invoice(marketplace, load_id)

    for status in (LoadStatus.IN_TRANSIT, LoadStatus.DELIVERED, LoadStatus.AWARDED):
        with pytest.raises(InvalidTransition):
            marketplace.engine.transition_load(
                load_id, LoadPatchRequest(status=status), actor_id=ADMIN, role=UserRole.ADMIN
            )
    assert marketplace.store.get_load(load_id).status == LoadStatus.INVOICE_PAID


def test_invoice_steps_follow_roles_and_order(marketplace):
    result = award_solo(marketplace)
    load_id = result.load.load_id

    with pytest.raises(Unauthorized):
        marketplace.engine.advance_invoice(
            load_id, LoadStatus.INVOICE_CREATED, actor_id=SHIPPER, role=UserRole.SHIPPER
        )
    with pytest.raises(InvalidTransition):
        marketplace.engine.advance_invoice(load_id, LoadStatus.INVOICE_SENT, actor_id=ADMIN, role=UserRole.ADMIN)

    paid = settle_invoice(marketplace, load_id)
    assert paid.status == LoadStatus.INVOICE_PAID
    _assert_assignment_invariant(paid)
    acknowledged = [
        change for change in marketplace.store.list_load_history(load_id)
        if change.to_status == LoadStatus.INVOICE_ACKNOWLEDGED
    ]
    assert acknowledged[0].actor_id == SHIPPER


def test_stale_expected_version_is_rejected(marketplace):
    load = submit_load(marketplace)

    with pytest.raises(InvalidRequest) as exc_info:
        marketplace.engine.transition_load(
            load.load_id,
            LoadPatchRequest(status=LoadStatus.PRICED, admin_final_price=Decimal("800"), expected_version=7),
            actor_id=ADMIN,
            role=UserRole.ADMIN,
        )
    assert exc_info.value.details["current_version"] == 1
    assert marketplace.store.get_load(load.load_id).status == LoadStatus.PENDING
    priced = marketplace.engine.transition_load(
        load.load_id,
        LoadPatchRequest(status=LoadStatus.PRICED, admin_final_price=Decimal("800"), expected_version=1),
        actor_id=ADMIN,
        role=UserRole.ADMIN,
    )
    assert priced.version == 2


def test_carriers_only_see_open_or_own_loads(marketplace):
    result = award_solo(marketplace)
    open_one = open_load(marketplace)
    submit_load(marketplace)
    register_solo(marketplace, carrier_id="CAR-OTHER", truck_id="TRK-OTHER")

    mine = {load.load_id for load in marketplace.engine.list_loads("CAR-SOLO", UserRole.CARRIER)}
    other = {load.load_id for load in marketplace.engine.list_loads("CAR-OTHER", UserRole.CARRIER)}

    assert mine == {result.load.load_id, open_one.load_id}
    assert other == {open_one.load_id}
    with pytest.raises(Unauthorized):
        marketplace.engine.get_load(result.load.load_id, "CAR-OTHER", UserRole.CARRIER)
    assert len(marketplace.engine.list_loads(SHIPPER, UserRole.SHIPPER)) == 3


def test_bid_and_shipment_listings_are_scoped_by_role(marketplace):
    register_solo(marketplace, carrier_id="CAR-1", truck_id="TRK-1")
    register_solo(marketplace, carrier_id="CAR-2", truck_id="TRK-2")
    own_load = open_load(marketplace)
    foreign_load = open_load(marketplace, shipper_id="SHP-OTHER")
    first = place_bid(marketplace, own_load.load_id, "CAR-1")
    second = place_bid(marketplace, own_load.load_id, "CAR-2")
    foreign = place_bid(marketplace, foreign_load.load_id, "CAR-1")
    result = marketplace.engine.accept_bid(first.bid_id, actor_id=SHIPPER, role=UserRole.SHIPPER)

    carrier_bids = marketplace.engine.list_my_bids("CAR-1", UserRole.CARRIER)
    assert {bid.bid_id for bid in carrier_bids} == {first.bid_id, foreign.bid_id}
    shipper_bids = marketplace.engine.list_my_bids(SHIPPER, UserRole.SHIPPER)
    assert {bid.bid_id for bid in shipper_bids} == {first.bid_id, second.bid_id}
    assert len(marketplace.engine.list_my_bids(ADMIN, UserRole.ADMIN)) == 3
    rejected = marketplace.engine.list_my_bids(SHIPPER, UserRole.SHIPPER, status=BidStatus.REJECTED)
    assert [bid.bid_id for bid in rejected] == [second.bid_id]

    shipment_id = result.shipment.shipment_id
    assert [s.shipment_id for s in marketplace.engine.list_shipments("CAR-1", UserRole.CARRIER)] == [shipment_id]
    assert marketplace.engine.list_shipments("CAR-2", UserRole.CARRIER) == []
    assert [s.shipment_id for s in marketplace.engine.list_shipments(SHIPPER, UserRole.SHIPPER)] == [shipment_id]
    assert marketplace.engine.list_shipments("SHP-OTHER", UserRole.SHIPPER) == []
    assert marketplace.engine.list_shipments(ADMIN, UserRole.ADMIN, status=ShipmentStatus.CANCELLED) == []
