"""API routes for load submission, pricing and status progression."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from freightlink.core.auth import ActorContext, get_actor_context, require_roles
from freightlink.core.errors import MarketplaceError
from freightlink.core.logging import logger
from freightlink.models.marketplace import LoadCreateRequest, LoadPatchRequest, LoadStatus
from freightlink.routers.common import domain_error, idempotency_lookup, idempotency_store
from freightlink.services.lifecycle import lifecycle_engine

router = APIRouter(prefix="/loads", tags=["loads"])


@router.post("")
def create_load(
    request: LoadCreateRequest,
    context: ActorContext = Depends(require_roles("shipper", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = idempotency_lookup(context, "create_load", idempotency_key)
    if cached:
        return cached
    try:
        load = lifecycle_engine.create_load(request, actor_id=context.actor_id, role=context.role)
        response = load.model_dump(mode="json")
        idempotency_store(context, "create_load", idempotency_key, response)
        return response
    except MarketplaceError as exc:
        raise domain_error(exc, "Load submission", context)
    except Exception as exc:
        logger.error("Failed to create load", error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("")
def list_loads(
    status: Optional[LoadStatus] = Query(default=None),
    context: ActorContext = Depends(get_actor_context),
):
    loads = lifecycle_engine.list_loads(context.actor_id, context.role, status=status)
    return {"loads": [load.model_dump(mode="json") for load in loads], "count": len(loads)}


@router.get("/{load_id}")
def get_load(load_id: str, context: ActorContext = Depends(get_actor_context)):
    try:
        return lifecycle_engine.get_load(load_id, context.actor_id, context.role).model_dump(mode="json")
    except MarketplaceError as exc:
        raise domain_error(exc, "Load read", context, load_id=load_id)


@router.patch("/{load_id}")
def transition_load(
    load_id: str,
    request: LoadPatchRequest,
    context: ActorContext = Depends(require_roles("shipper", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"transition_load:{load_id}:{request.status.value}"
    cached = idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        load = lifecycle_engine.transition_load(load_id, request, actor_id=context.actor_id, role=context.role)
        response = load.model_dump(mode="json")
        idempotency_store(context, operation, idempotency_key, response)
        return response
    except MarketplaceError as exc:
        raise domain_error(exc, "Load transition", context, load_id=load_id, requested_status=request.status.value)
    except Exception as exc:
        logger.error("Failed to transition load", load_id=load_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/{load_id}/history")
def get_load_history(load_id: str, context: ActorContext = Depends(get_actor_context)):
    try:
        changes = lifecycle_engine.load_history(load_id, context.actor_id, context.role)
    except MarketplaceError as exc:
        raise domain_error(exc, "Load history read", context, load_id=load_id)
    return {"load_id": load_id, "history": [change.model_dump(mode="json") for change in changes]}


@router.get("/{load_id}/bids")
def list_load_bids(load_id: str, context: ActorContext = Depends(get_actor_context)):
    try:
        bids = lifecycle_engine.list_bids(load_id, context.actor_id, context.role)
    except MarketplaceError as exc:
        raise domain_error(exc, "Bid list read", context, load_id=load_id)
    return {"load_id": load_id, "bids": [bid.model_dump(mode="json") for bid in bids], "count": len(bids)}
