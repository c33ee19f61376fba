"""Actor resolution for API routes.

Session management lives outside this service; requests arrive with either
trusted actor headers (auth disabled) or a bearer token mapped to an actor.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from freightlink.core.config import get_settings
from freightlink.core.logging import logger
from freightlink.models.marketplace import UserRole


security = HTTPBearer(auto_error=False)


@dataclass
class ActorContext:
    actor_id: str
    role: UserRole
    authenticated: bool

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


SUPPORTED_ROLES = {role.value for role in UserRole}


def _normalize_role(value: str | None) -> UserRole:
    role = (value or "").strip().lower()
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return UserRole(role)


def _parse_actor_tokens(raw: str) -> Dict[str, Tuple[str, str]]:
    """Parse `token:role:actor_id` comma-separated values from env."""
    mapping: Dict[str, Tuple[str, str]] = {}
    if not raw.strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        parts = item.split(":", 2)
        if len(parts) != 3:
            logger.warning("Ignoring malformed actor token mapping entry", entry=item)
            continue
        token, role, actor_id = (part.strip() for part in parts)
        if token and role and actor_id:
            mapping[token] = (role, actor_id)
    return mapping


def get_actor_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> ActorContext:
    """Resolve the calling actor from bearer token or trusted headers."""
    settings = get_settings()

    if not settings.auth_enabled:
        actor_id = (x_actor_id or "").strip()
        if not actor_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="X-Actor-Id header required",
            )
        return ActorContext(
            actor_id=actor_id,
            role=_normalize_role(x_actor_role),
            authenticated=False,
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
        )

    token_map = _parse_actor_tokens(settings.actor_tokens)
    resolved = token_map.get(credentials.credentials.strip())
    if not resolved:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token",
        )

    role, actor_id = resolved
    return ActorContext(actor_id=actor_id, role=_normalize_role(role), authenticated=True)


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: ActorContext = Depends(get_actor_context)) -> ActorContext:
        if context.role.value not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "kind": "Unauthorized",
                    "message": f"Role '{context.role.value}' not permitted for this operation",
                },
            )
        return context

    return _guard
