"""API routes for carrier bids and the shipper/carrier negotiation."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query

from freightlink.core.auth import ActorContext, get_actor_context, require_roles
from freightlink.core.errors import MarketplaceError
from freightlink.core.logging import logger
from freightlink.models.marketplace import BidCounterRequest, BidCreateRequest, BidDecisionRequest, BidStatus
from freightlink.routers.common import domain_error, idempotency_lookup, idempotency_store
from freightlink.services.lifecycle import lifecycle_engine

router = APIRouter(prefix="/bids", tags=["bids"])


@router.get("")
def list_bids(
    status: Optional[BidStatus] = Query(default=None),
    context: ActorContext = Depends(get_actor_context),
):
    bids = lifecycle_engine.list_my_bids(context.actor_id, context.role, status=status)
    return {"bids": [bid.model_dump(mode="json") for bid in bids], "count": len(bids)}


@router.post("")
def create_bid(
    request: BidCreateRequest,
    context: ActorContext = Depends(require_roles("carrier")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"create_bid:{request.load_id}"
    cached = idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        bid = lifecycle_engine.create_bid(request, actor_id=context.actor_id, role=context.role)
        response = bid.model_dump(mode="json")
        idempotency_store(context, operation, idempotency_key, response)
        return response
    except MarketplaceError as exc:
        raise domain_error(exc, "Bid creation", context, load_id=request.load_id)
    except Exception as exc:
        logger.error("Failed to create bid", load_id=request.load_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/{bid_id}/accept")
def accept_bid(
    bid_id: str,
    request: Optional[BidDecisionRequest] = Body(default=None),
    context: ActorContext = Depends(require_roles("shipper", "carrier", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"accept_bid:{bid_id}"
    cached = idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        result = lifecycle_engine.accept_bid(
            bid_id,
            actor_id=context.actor_id,
            role=context.role,
            notes=request.notes if request else None,
        )
        response = result.model_dump(mode="json")
        idempotency_store(context, operation, idempotency_key, response)
        return response
    except MarketplaceError as exc:
        raise domain_error(exc, "Bid acceptance", context, bid_id=bid_id)
    except Exception as exc:
        logger.error("Failed to accept bid", bid_id=bid_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/{bid_id}/counter")
def counter_bid(
    bid_id: str,
    request: BidCounterRequest,
    context: ActorContext = Depends(require_roles("shipper", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"counter_bid:{bid_id}"
    cached = idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        bid = lifecycle_engine.counter_bid(
            bid_id,
            request.counter_amount,
            actor_id=context.actor_id,
            role=context.role,
            notes=request.notes,
        )
        response = bid.model_dump(mode="json")
        idempotency_store(context, operation, idempotency_key, response)
        return response
    except MarketplaceError as exc:
        raise domain_error(exc, "Bid counter", context, bid_id=bid_id)
    except Exception as exc:
        logger.error("Failed to counter bid", bid_id=bid_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/{bid_id}/reject")
def reject_bid(
    bid_id: str,
    request: Optional[BidDecisionRequest] = Body(default=None),
    context: ActorContext = Depends(require_roles("shipper", "carrier", "admin")),
):
    try:
        bid = lifecycle_engine.reject_bid(
            bid_id,
            actor_id=context.actor_id,
            role=context.role,
            notes=request.notes if request else None,
        )
        return bid.model_dump(mode="json")
    except MarketplaceError as exc:
        raise domain_error(exc, "Bid rejection", context, bid_id=bid_id)
    except Exception as exc:
        logger.error("Failed to reject bid", bid_id=bid_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
