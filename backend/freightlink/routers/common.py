"""Helpers shared by the API routers."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException

from freightlink.core.auth import ActorContext
from freightlink.core.errors import MarketplaceError, to_http_exception
from freightlink.core.logging import logger
from freightlink.services.state_store import marketplace_store


def idempotency_lookup(context: ActorContext, operation: str, key: str | None) -> Optional[Dict[str, Any]]:
    if not key:
        return None
    return marketplace_store.get_idempotent(f"{context.actor_id}:{operation}:{key.strip()}")


def idempotency_store(context: ActorContext, operation: str, key: str | None, response: Dict[str, Any]) -> None:
    if not key:
        return
    marketplace_store.set_idempotent(f"{context.actor_id}:{operation}:{key.strip()}", response)


def domain_error(exc: MarketplaceError, operation: str, context: ActorContext, **fields: Any) -> HTTPException:
    """Log a rejected operation and translate it to its HTTP form."""
    logger.warning(
        f"{operation} rejected",
        kind=exc.kind,
        reason=exc.message,
        actor_id=context.actor_id,
        role=context.role.value,
        **fields,
    )
    return to_http_exception(exc)
