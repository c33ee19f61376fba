"""API routes for carrier profiles, compliance documents and health views."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Header, HTTPException
from pydantic import TypeAdapter, ValidationError

from freightlink.core.auth import ActorContext, require_roles
from freightlink.core.errors import MarketplaceError, Unauthorized
from freightlink.core.logging import logger
from freightlink.models.marketplace import CarrierProfile, DocumentRegisterRequest, UserRole
from freightlink.routers.common import domain_error, idempotency_lookup, idempotency_store
from freightlink.services.compliance import compliance_gate

router = APIRouter(tags=["compliance"])

_profile_adapter: TypeAdapter = TypeAdapter(CarrierProfile)


def _ensure_owner_visible(context: ActorContext, owner_id: str) -> None:
    if context.role == UserRole.ADMIN:
        return
    carrier = compliance_gate.get_carrier(context.actor_id)
    if not compliance_gate.carrier_owns(carrier, owner_id):
        raise Unauthorized(f"Compliance for {owner_id} is not visible to {context.actor_id}")


@router.post("/carriers")
def register_carrier(
    payload: Dict[str, Any] = Body(...),
    context: ActorContext = Depends(require_roles("carrier", "admin")),
):
    try:
        profile = _profile_adapter.validate_python(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    try:
        saved = compliance_gate.register_carrier(profile, actor_id=context.actor_id, role=context.role)
        return saved.model_dump(mode="json")
    except MarketplaceError as exc:
        raise domain_error(exc, "Carrier registration", context, carrier_id=profile.carrier_id)


@router.get("/carriers/{carrier_id}")
def get_carrier(carrier_id: str, context: ActorContext = Depends(require_roles("carrier", "admin"))):
    try:
        if not context.is_admin and context.actor_id != carrier_id:
            raise Unauthorized(f"Carrier {carrier_id} is not visible to {context.actor_id}")
        return compliance_gate.get_carrier(carrier_id).model_dump(mode="json")
    except MarketplaceError as exc:
        raise domain_error(exc, "Carrier read", context, carrier_id=carrier_id)


@router.get("/carriers/{carrier_id}/compliance")
def get_carrier_compliance(carrier_id: str, context: ActorContext = Depends(require_roles("carrier", "admin"))):
    try:
        if not context.is_admin and context.actor_id != carrier_id:
            raise Unauthorized(f"Compliance for {carrier_id} is not visible to {context.actor_id}")
        return compliance_gate.carrier_overview(carrier_id)
    except MarketplaceError as exc:
        raise domain_error(exc, "Compliance read", context, carrier_id=carrier_id)


@router.post("/documents")
def register_document(
    request: DocumentRegisterRequest,
    context: ActorContext = Depends(require_roles("carrier", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"register_document:{request.owner_id}:{request.document_type}"
    cached = idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        document = compliance_gate.register_document(request, actor_id=context.actor_id, role=context.role)
        response = document.model_dump(mode="json")
        idempotency_store(context, operation, idempotency_key, response)
        return response
    except MarketplaceError as exc:
        raise domain_error(exc, "Document registration", context, owner_id=request.owner_id)
    except Exception as exc:
        logger.error("Failed to register document", owner_id=request.owner_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/documents/{owner_id}/compliance")
def get_owner_compliance(owner_id: str, context: ActorContext = Depends(require_roles("carrier", "admin"))):
    try:
        _ensure_owner_visible(context, owner_id)
        return compliance_gate.compliance_record(owner_id).model_dump(mode="json")
    except MarketplaceError as exc:
        raise domain_error(exc, "Compliance record read", context, owner_id=owner_id)
