"""
Billing core error taxonomy.

Each error carries a machine-readable error_code and an HTTP status used by
api/error_handlers.py to render consistent JSON responses.
"""

from typing import Any, Dict, Optional

from citaclick.integrations.billing.provider import redact


class BillingCoreError(Exception):
    """Base class for billing core errors."""

    status_code = 500
    error_code = "BILLING_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
        }


class NotFoundError(BillingCoreError):
    """Negocio, subscription or invoice does not exist."""

    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found" if not identifier else f"{resource} {identifier} not found"
        super().__init__(message)
        self.resource = resource
        self.identifier = identifier


class ProviderError(BillingCoreError):
    """Billing provider failure surfaced to a caller."""

    status_code = 502
    error_code = "BILLING_PROVIDER_ERROR"

    def __init__(self, message: str, provider_code: Optional[str] = None):
        super().__init__(redact(message))
        self.provider_code = provider_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["provider_code"] = self.provider_code
        return data


class InvalidTransitionError(BillingCoreError):
    """Requested lifecycle transition is not allowed from the current status."""

    status_code = 409
    error_code = "INVALID_TRANSITION"

    def __init__(self, from_status: Optional[str], to_status: str, reason: Optional[str] = None):
        message = reason or f"Cannot transition subscription from {from_status} to {to_status}"
        super().__init__(message)
        self.from_status = from_status
        self.to_status = to_status

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"from_status": self.from_status, "to_status": self.to_status})
        return data


class EntitlementDeniedError(BillingCoreError):
    """Feature or resource limit gate failure."""

    status_code = 403
    error_code = "ENTITLEMENT_DENIED"

    def __init__(
        self,
        message: str,
        feature: Optional[str] = None,
        resource: Optional[str] = None,
        current: Optional[int] = None,
        maximum: Optional[int] = None,
        plan: Optional[str] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.feature = feature
        self.resource = resource
        self.current = current
        self.maximum = maximum
        self.plan = plan
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "feature": self.feature,
            "resource": self.resource,
            "actual": self.current,
            "maximo": self.maximum,
            "plan": self.plan,
        })
        return data


class SubscriptionExpiredError(BillingCoreError):
    """Access gate denial for a negocio outside trial/activo."""

    status_code = 402
    error_code = "SUBSCRIPTION_EXPIRED"

    def __init__(self, estado: str, message: str):
        super().__init__(message)
        self.estado = estado
        self.error_code = f"SUBSCRIPTION_{estado.upper()}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "Suscripción vencida",
            "error_code": self.error_code,
            "estado": self.estado,
            "message": self.message,
            "statusCode": self.status_code,
        }


class SignatureInvalidError(BillingCoreError):
    """Webhook signature missing, malformed, stale or wrong."""

    status_code = 400
    error_code = "INVALID_SIGNATURE"
