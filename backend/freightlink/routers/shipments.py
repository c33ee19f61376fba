"""API routes for awarded shipments: resources and trip code verification."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from freightlink.core.auth import ActorContext, get_actor_context, require_roles
from freightlink.core.errors import MarketplaceError
from freightlink.core.logging import logger
from freightlink.models.marketplace import OtpVerifyRequest, ShipmentAssignRequest, ShipmentStatus
from freightlink.routers.common import domain_error
from freightlink.services.lifecycle import lifecycle_engine
from freightlink.services.otp_workflow import otp_workflow

router = APIRouter(prefix="/shipments", tags=["shipments"])


@router.get("")
def list_shipments(
    status: Optional[ShipmentStatus] = Query(default=None),
    context: ActorContext = Depends(get_actor_context),
):
    shipments = lifecycle_engine.list_shipments(context.actor_id, context.role, status=status)
    return {"shipments": [shipment.model_dump(mode="json") for shipment in shipments], "count": len(shipments)}


@router.get("/{shipment_id}")
def get_shipment(shipment_id: str, context: ActorContext = Depends(get_actor_context)):
    try:
        return lifecycle_engine.get_shipment(shipment_id, context.actor_id, context.role).model_dump(mode="json")
    except MarketplaceError as exc:
        raise domain_error(exc, "Shipment read", context, shipment_id=shipment_id)


@router.post("/{shipment_id}/assign")
def assign_shipment_resources(
    shipment_id: str,
    request: ShipmentAssignRequest,
    context: ActorContext = Depends(require_roles("carrier", "admin")),
):
    try:
        shipment = lifecycle_engine.assign_resources(
            shipment_id,
            truck_id=request.truck_id,
            driver_id=request.driver_id,
            actor_id=context.actor_id,
            role=context.role,
        )
        return shipment.model_dump(mode="json")
    except MarketplaceError as exc:
        raise domain_error(exc, "Shipment assignment", context, shipment_id=shipment_id)
    except Exception as exc:
        logger.error("Failed to assign shipment resources", shipment_id=shipment_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/{shipment_id}/verify-otp")
def verify_otp(
    shipment_id: str,
    request: OtpVerifyRequest,
    context: ActorContext = Depends(require_roles("carrier")),
):
    try:
        result = otp_workflow.verify_otp(
            shipment_id,
            request.request_type,
            request.code,
            actor_id=context.actor_id,
            role=context.role,
        )
        return result.model_dump(mode="json")
    except MarketplaceError as exc:
        raise domain_error(
            exc,
            "OTP verification",
            context,
            shipment_id=shipment_id,
            request_type=request.request_type.value,
        )
    except Exception as exc:
        logger.error("Failed to verify OTP", shipment_id=shipment_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
