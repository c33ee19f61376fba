"""API routes for the trip OTP request queue and admin decisions."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query

from freightlink.core.auth import ActorContext, require_roles
from freightlink.core.errors import MarketplaceError
from freightlink.core.logging import logger
from freightlink.models.marketplace import OtpApproveRequest, OtpRejectRequest, OtpRequestCreate, OtpRequestStatus
from freightlink.routers.common import domain_error, idempotency_lookup, idempotency_store
from freightlink.services.otp_workflow import otp_workflow

router = APIRouter(prefix="/otp-requests", tags=["otp"])


@router.post("")
def request_otp(
    request: OtpRequestCreate,
    context: ActorContext = Depends(require_roles("carrier")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"request_otp:{request.shipment_id}:{request.request_type.value}"
    cached = idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        created = otp_workflow.request_otp(
            request.shipment_id,
            request.request_type,
            actor_id=context.actor_id,
            role=context.role,
        )
        response = created.model_dump(mode="json")
        idempotency_store(context, operation, idempotency_key, response)
        return response
    except MarketplaceError as exc:
        raise domain_error(exc, "OTP request", context, shipment_id=request.shipment_id)
    except Exception as exc:
        logger.error("Failed to request OTP", shipment_id=request.shipment_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("")
def list_otp_requests(
    status: Optional[OtpRequestStatus] = Query(default=None),
    shipment_id: Optional[str] = Query(default=None),
    context: ActorContext = Depends(require_roles("carrier", "admin")),
):
    try:
        requests = otp_workflow.list_requests(context.actor_id, context.role, status=status, shipment_id=shipment_id)
    except MarketplaceError as exc:
        raise domain_error(exc, "OTP queue read", context)
    return {"requests": [item.model_dump(mode="json") for item in requests], "count": len(requests)}


@router.get("/{request_id}")
def get_otp_request(request_id: str, context: ActorContext = Depends(require_roles("carrier", "admin"))):
    try:
        return otp_workflow.get_request(request_id, context.actor_id, context.role).model_dump(mode="json")
    except MarketplaceError as exc:
        raise domain_error(exc, "OTP request read", context, request_id=request_id)


# Approve and regenerate responses carry the plaintext code, so they are never cached for idempotent replay.
@router.post("/{request_id}/approve")
def approve_otp(
    request_id: str,
    request: Optional[OtpApproveRequest] = Body(default=None),
    context: ActorContext = Depends(require_roles("admin")),
):
    try:
        issued = otp_workflow.approve_otp(
            request_id,
            actor_id=context.actor_id,
            role=context.role,
            validity_minutes=request.validity_minutes if request else None,
        )
        return issued.model_dump(mode="json")
    except MarketplaceError as exc:
        raise domain_error(exc, "OTP approval", context, request_id=request_id)
    except Exception as exc:
        logger.error("Failed to approve OTP", request_id=request_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/{request_id}/reject")
def reject_otp(
    request_id: str,
    request: Optional[OtpRejectRequest] = Body(default=None),
    context: ActorContext = Depends(require_roles("admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"reject_otp:{request_id}"
    cached = idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        rejected = otp_workflow.reject_otp(
            request_id,
            actor_id=context.actor_id,
            role=context.role,
            notes=request.notes if request else None,
        )
        response = rejected.model_dump(mode="json")
        idempotency_store(context, operation, idempotency_key, response)
        return response
    except MarketplaceError as exc:
        raise domain_error(exc, "OTP rejection", context, request_id=request_id)
    except Exception as exc:
        logger.error("Failed to reject OTP", request_id=request_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/{request_id}/regenerate")
def regenerate_otp(
    request_id: str,
    request: Optional[OtpApproveRequest] = Body(default=None),
    context: ActorContext = Depends(require_roles("admin")),
):
    try:
        issued = otp_workflow.regenerate_otp(
            request_id,
            actor_id=context.actor_id,
            role=context.role,
            validity_minutes=request.validity_minutes if request else None,
        )
        return issued.model_dump(mode="json")
    except MarketplaceError as exc:
        raise domain_error(exc, "OTP regeneration", context, request_id=request_id)
    except Exception as exc:
        logger.error("Failed to regenerate OTP", request_id=request_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
