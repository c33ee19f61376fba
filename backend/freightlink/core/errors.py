"""Error taxonomy for the transaction core.

Every failure a caller can observe is one of these kinds. Services raise them
synchronously; routers translate them into HTTP responses through
``to_http_exception`` so the kind and reason reach the client unchanged.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


class MarketplaceError(Exception):
    """Base class for all domain errors."""

    kind = "MarketplaceError"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, **self.details}


class InvalidTransition(MarketplaceError):
    kind = "InvalidTransition"
    status_code = status.HTTP_409_CONFLICT


class Unauthorized(MarketplaceError):
    kind = "Unauthorized"
    status_code = status.HTTP_403_FORBIDDEN


class ComplianceBlocked(MarketplaceError):
    kind = "ComplianceBlocked"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str, blocking_docs: List[str], **details: Any) -> None:
        super().__init__(message, blocking_docs=list(blocking_docs), **details)
        self.blocking_docs = list(blocking_docs)


class AlreadyProcessed(MarketplaceError):
    kind = "AlreadyProcessed"
    status_code = status.HTTP_409_CONFLICT


class AlreadyAwarded(MarketplaceError):
    kind = "AlreadyAwarded"
    status_code = status.HTTP_409_CONFLICT


class DuplicatePending(MarketplaceError):
    kind = "DuplicatePending"
    status_code = status.HTTP_409_CONFLICT


class InvalidCode(MarketplaceError):
    kind = "InvalidCode"
    status_code = status.HTTP_400_BAD_REQUEST


class Expired(MarketplaceError):
    kind = "Expired"
    status_code = status.HTTP_410_GONE


class AlreadyConsumed(MarketplaceError):
    kind = "AlreadyConsumed"
    status_code = status.HTTP_409_CONFLICT


class TooManyAttempts(MarketplaceError):
    kind = "TooManyAttempts"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class NotFound(MarketplaceError):
    kind = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidRequest(MarketplaceError):
    kind = "InvalidRequest"
    status_code = status.HTTP_400_BAD_REQUEST


def to_http_exception(exc: MarketplaceError, headers: Optional[Dict[str, str]] = None) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict(), headers=headers)
