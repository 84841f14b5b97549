"""
Per-request context passed explicitly through the gate chain.

tenant_id is ALWAYS taken from the verified JWT (negocio_id claim), never
from the request body or query string.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional

from fastapi import HTTPException, Request, status

CORRELATION_HEADER = "X-Correlation-ID"


@dataclass
class RequestContext:
    """Identity and correlation data for one request."""
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.tenant_id is not None

    def to_log_dict(self) -> dict:
        return {
            "correlation_id": self.correlation_id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
        }


def get_request_context(request: Request) -> RequestContext:
    """
    Get the authenticated RequestContext for a route handler.

    Raises:
        HTTPException: 401 if the request carries no tenant identity
    """
    context = getattr(request.state, "context", None)
    if context is None or not context.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return context
