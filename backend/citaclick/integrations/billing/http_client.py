"""
Hosted billing API client.

Implements BillingProvider over a Stripe-style REST API:
- Bearer API key authentication
- Form-encoded requests, JSON responses
- Bounded timeouts
- Retries with exponential backoff for transient failures only
  (network errors, 429 and 5xx); other 4xx responses fail immediately
- Idempotency-Key on every mutating request, reused across retries
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Optional

import httpx

from citaclick.config.billing_settings import BillingSettings, get_billing_settings
from citaclick.integrations.billing.provider import (
    AlreadyExpiredError,
    BillingProvider,
    BillingProviderError,
    CustomerRef,
    InvoiceSnapshot,
    SubscriptionSnapshot,
    map_provider_status,
    redact,
)
from citaclick.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy for transient provider failures."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: FrozenSet[int] = field(
        default_factory=lambda: frozenset({429, 500, 502, 503, 504})
    )

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number `attempt` (0-based)."""
        if retry_after is not None:
            return min(retry_after, self.max_delay)
        return min(self.initial_delay * (self.backoff_multiplier ** attempt), self.max_delay)


def _ts(value: Any) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _id_of(value: Any) -> Optional[str]:
    """Expanded objects carry their id under 'id'; collapsed ones are the id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def parse_subscription(body: Dict[str, Any]) -> SubscriptionSnapshot:
    """Build a snapshot from a subscription object (API response or webhook payload)."""
    items = (body.get("items") or {}).get("data") or []
    price = (items[0].get("price") or {}) if items else {}
    recurring = price.get("recurring") or {}

    return SubscriptionSnapshot(
        id=body["id"],
        customer_id=_id_of(body.get("customer")),
        status=map_provider_status(body.get("status", "")),
        price_id=price.get("id"),
        interval="ANNUAL" if recurring.get("interval") == "year" else "MONTHLY",
        current_period_start=_ts(body.get("current_period_start")),
        current_period_end=_ts(body.get("current_period_end")),
        cancel_at_period_end=bool(body.get("cancel_at_period_end")),
        canceled_at=_ts(body.get("canceled_at")),
        ended_at=_ts(body.get("ended_at")),
        trial_start=_ts(body.get("trial_start")),
        trial_end=_ts(body.get("trial_end")),
        latest_invoice_id=_id_of(body.get("latest_invoice")),
        default_payment_method_id=_id_of(body.get("default_payment_method")),
    )


def parse_invoice(body: Dict[str, Any]) -> InvoiceSnapshot:
    transitions = body.get("status_transitions") or {}
    return InvoiceSnapshot(
        id=body["id"],
        customer_id=_id_of(body.get("customer")),
        subscription_id=_id_of(body.get("subscription")),
        status=body.get("status") or "draft",
        amount_due=int(body.get("amount_due") or 0),
        amount_paid=int(body.get("amount_paid") or 0),
        currency=body.get("currency") or "mxn",
        number=body.get("number"),
        hosted_invoice_url=body.get("hosted_invoice_url"),
        invoice_pdf=body.get("invoice_pdf"),
        created=_ts(body.get("created")),
        due_date=_ts(body.get("due_date")),
        paid_at=_ts(transitions.get("paid_at")),
        lines=list((body.get("lines") or {}).get("data") or []),
    )


class HostedBillingClient(BillingProvider):
    """
    Synchronous client for the hosted billing API.

    SECURITY: the API key is sent only in the Authorization header and is
    redacted from every error message and log line.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.stripe.com/v1",
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Initialize billing client.

        Args:
            api_key: Provider secret key
            base_url: API root
            timeout: Total request timeout in seconds
            connect_timeout: Connect timeout in seconds
            retry_config: Retry policy (defaults to RetryConfig())
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Backoff sleep function
            clock: Current-time source used for reactivation checks
        """
        if not api_key:
            raise ValueError("api_key is required")

        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep
        self._clock = clock

        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
            },
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Optional[BillingSettings] = None, **kwargs) -> "HostedBillingClient":
        settings = settings or get_billing_settings()
        return cls(
            api_key=settings.provider_api_key,
            base_url=settings.provider_base_url,
            timeout=settings.provider_timeout_seconds,
            connect_timeout=settings.provider_connect_timeout_seconds,
            retry_config=RetryConfig(max_retries=settings.provider_max_retries),
            **kwargs,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _redact(self, text: str) -> str:
        return redact(text, [self._api_key])

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send a request with retries.

        Raises:
            BillingProviderError: On non-retryable failure or exhausted retries
        """
        headers = {}
        if method in ("POST", "DELETE"):
            headers["Idempotency-Key"] = idempotency_key or str(uuid.uuid4())

        attempt = 0
        while True:
            try:
                response = self._client.request(
                    method, path, data=data, params=params, headers=headers
                )
            except httpx.TimeoutException as e:
                error = BillingProviderError(
                    code="timeout",
                    message=self._redact(f"Request timeout: {e}"),
                    retryable=True,
                )
                retry_after = None
            except httpx.RequestError as e:
                error = BillingProviderError(
                    code="network_error",
                    message=self._redact(f"Request error: {e}"),
                    retryable=True,
                )
                retry_after = None
            else:
                if response.status_code < 400:
                    try:
                        return response.json() if response.content else {}
                    except ValueError:
                        raise BillingProviderError(
                            code="invalid_response",
                            message="Billing provider returned a non-JSON response",
                            status_code=response.status_code,
                        )
                error = self._error_from_response(response)
                retry_after = self._retry_after(response)

            if not error.retryable or attempt >= self.retry_config.max_retries:
                logger.error("Billing provider request failed", extra={
                    "method": method,
                    "path": path,
                    "status_code": error.status_code,
                    "code": error.code,
                    "attempts": attempt + 1,
                })
                raise error

            delay = self.retry_config.delay_for(attempt, retry_after)
            logger.warning("Retrying billing provider request", extra={
                "method": method,
                "path": path,
                "status_code": error.status_code,
                "attempt": attempt + 1,
                "delay_seconds": delay,
            })
            self._sleep(delay)
            attempt += 1

    def _error_from_response(self, response: httpx.Response) -> BillingProviderError:
        code = f"http_{response.status_code}"
        message = f"Billing provider error: {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            err = body["error"]
            code = err.get("code") or err.get("type") or code
            message = err.get("message") or message

        return BillingProviderError(
            code=code,
            message=self._redact(message),
            status_code=response.status_code,
            retryable=response.status_code in self.retry_config.retryable_status_codes,
        )

    @staticmethod
    def _retry_after(response: httpx.Response) -> Optional[float]:
        raw = response.headers.get("Retry-After")
        if raw is None:
            return None
        try:
            return max(float(raw), 0.0)
        except ValueError:
            return None

    def create_customer(self, tenant_id: str, email: str, name: str) -> CustomerRef:
        body = self._request(
            "POST",
            "/customers",
            data={"email": email, "name": name, "metadata[negocio_id]": tenant_id},
            idempotency_key=f"customer-{tenant_id}",
        )
        logger.info("Billing customer created", extra={
            "tenant_id": tenant_id,
            "customer_id": body.get("id"),
        })
        return CustomerRef(id=body["id"], email=body.get("email"), name=body.get("name"))

    def create_subscription(
        self,
        customer: CustomerRef,
        price_id: str,
        payment_method_ref: Optional[str] = None,
        trial_days: Optional[int] = None,
        trial_end_at: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
    ) -> SubscriptionSnapshot:
        data: Dict[str, Any] = {
            "customer": customer.id,
            "items[0][price]": price_id,
            "expand[]": "latest_invoice",
        }
        if payment_method_ref:
            data["default_payment_method"] = payment_method_ref
        if trial_end_at is not None:
            data["trial_end"] = int(trial_end_at.timestamp())
        elif trial_days:
            data["trial_period_days"] = trial_days

        body = self._request("POST", "/subscriptions", data=data, idempotency_key=idempotency_key)
        return parse_subscription(body)

    def update_subscription(
        self,
        subscription_id: str,
        price_id: Optional[str] = None,
        payment_method_ref: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> SubscriptionSnapshot:
        data: Dict[str, Any] = {}
        if price_id:
            current = self._request("GET", f"/subscriptions/{subscription_id}")
            items = (current.get("items") or {}).get("data") or []
            if items:
                data["items[0][id]"] = items[0]["id"]
            data["items[0][price]"] = price_id
            data["proration_behavior"] = "create_prorations"
        if payment_method_ref:
            data["default_payment_method"] = payment_method_ref
        if cancel_at_period_end is not None:
            data["cancel_at_period_end"] = "true" if cancel_at_period_end else "false"

        body = self._request("POST", f"/subscriptions/{subscription_id}", data=data)
        return parse_subscription(body)

    def cancel_subscription(self, subscription_id: str, immediate: bool) -> SubscriptionSnapshot:
        if immediate:
            body = self._request("DELETE", f"/subscriptions/{subscription_id}")
        else:
            body = self._request(
                "POST",
                f"/subscriptions/{subscription_id}",
                data={"cancel_at_period_end": "true"},
            )
        return parse_subscription(body)

    def reactivate_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        current = parse_subscription(
            self._request("GET", f"/subscriptions/{subscription_id}")
        )
        period_over = (
            current.current_period_end is not None
            and current.current_period_end <= self._clock()
        )
        if current.status == SubscriptionStatus.CANCELED or current.ended_at or period_over:
            raise AlreadyExpiredError(subscription_id)

        body = self._request(
            "POST",
            f"/subscriptions/{subscription_id}",
            data={"cancel_at_period_end": "false"},
        )
        return parse_subscription(body)

    def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        return parse_subscription(self._request("GET", f"/subscriptions/{subscription_id}"))

    def get_invoice(self, invoice_id: str) -> InvoiceSnapshot:
        return parse_invoice(self._request("GET", f"/invoices/{invoice_id}"))

    def get_upcoming_invoice(self, customer_id: str) -> Optional[InvoiceSnapshot]:
        try:
            body = self._request("GET", "/invoices/upcoming", params={"customer": customer_id})
        except BillingProviderError as e:
            if e.status_code == 404:
                return None
            raise
        body.setdefault("id", "upcoming")
        return parse_invoice(body)

    def list_customer_invoices(self, customer_id: str, limit: int = 10) -> List[InvoiceSnapshot]:
        body = self._request(
            "GET", "/invoices", params={"customer": customer_id, "limit": limit}
        )
        return [parse_invoice(item) for item in body.get("data") or []]


_provider: Optional[HostedBillingClient] = None


def get_billing_provider() -> Optional[HostedBillingClient]:
    """
    Get the process-wide hosted billing client.

    Returns None when no API key is configured; provider-backed operations
    then fail with ProviderError while local ones keep working.
    """
    global _provider
    if _provider is None:
        settings = get_billing_settings()
        if not settings.provider_api_key:
            logger.warning("BILLING_PROVIDER_API_KEY not set, billing provider disabled")
            return None
        _provider = HostedBillingClient.from_settings(settings)
    return _provider
