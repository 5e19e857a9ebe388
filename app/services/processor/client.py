"""PayPal Subscriptions API client.

Every call goes through ``_send``, an explicit bounded retry loop:
``1 + max_retries`` attempts with ``backoff * 2**attempt`` sleeps, retrying
only timeouts, connection errors, HTTP 429 and 5xx. A 401 invalidates the
cached token and re-authenticates exactly once. Processor responses that mean
"already in that state" are normalised to ``OperationResult.ALREADY_IN_TARGET_STATE``.

Credentials and tokens are never logged; only status codes, PayPal's
``debug_id`` and issue names are.
"""
from __future__ import annotations

import datetime as dt
import logging
import threading
import time
import uuid
from functools import lru_cache
from typing import Any, Callable, Mapping

import httpx

from app import metrics
from app.core.config import settings
from app.core.exceptions import (
    ConfigurationError,
    ProcessorAuthError,
    ProcessorFatalError,
    ProcessorTransientError,
    RemoteResourceGoneError,
)

from .types import (
    CreatedSubscription,
    Credential,
    OperationResult,
    PlanSpec,
    RemoteStatus,
    RevisedSubscription,
)

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_PATH = "/v1/billing/subscriptions"
PLANS_PATH = "/v1/billing/plans"
TOKEN_PATH = "/v1/oauth2/token"
VERIFY_WEBHOOK_PATH = "/v1/notifications/verify-webhook-signature"

# 422 issues meaning "the subscription is already in (or past) the requested state"
INVALID_STATE_ISSUES = frozenset({"SUBSCRIPTION_STATUS_INVALID"})
MAX_RETRY_AFTER_SECONDS = 10.0


def _parse_timestamp(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    try:
        return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _error_fields(response: httpx.Response) -> tuple[str | None, str | None, str]:
    """Return (issue, debug_id, human message) from a PayPal error body."""
    try:
        body = response.json()
    except ValueError:
        return None, None, f"HTTP {response.status_code}"
    if not isinstance(body, dict):
        return None, None, f"HTTP {response.status_code}"
    details = body.get("details") or []
    issue = None
    message = body.get("message") or body.get("error_description") or body.get("name") or ""
    if details and isinstance(details[0], dict):
        issue = details[0].get("issue")
        message = details[0].get("description") or message
    return issue, body.get("debug_id"), message or f"HTTP {response.status_code}"


def _approval_link(body: Mapping[str, Any]) -> str | None:
    for link in body.get("links") or []:
        if link.get("rel") == "approve":
            return link.get("href")
    return None


class PayPalClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        product_id: str,
        *,
        brand_name: str = "GatoFit",
        locale: str = "en-US",
        read_timeout: float = 15.0,
        write_timeout: float = 25.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        token_refresh_margin: int = 60,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self.product_id = product_id
        self.brand_name = brand_name
        self.locale = locale
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.token_refresh_margin = token_refresh_margin
        self._sleep = sleep
        self._monotonic = monotonic
        self._credential: Credential | None = None
        self._token_lock = threading.Lock()
        self._http = httpx.Client(base_url=base_url, transport=transport)

    @classmethod
    def from_settings(cls, **overrides: Any) -> "PayPalClient":
        if not settings.PAYPAL_CLIENT_ID or not settings.PAYPAL_CLIENT_SECRET:
            raise ConfigurationError("PAYPAL_CLIENT_ID")
        if not settings.PAYPAL_PRODUCT_ID:
            raise ConfigurationError("PAYPAL_PRODUCT_ID")
        kwargs: dict[str, Any] = {
            "brand_name": settings.PAYPAL_BRAND_NAME,
            "locale": settings.PAYPAL_LOCALE,
            "read_timeout": settings.PROCESSOR_READ_TIMEOUT_SECONDS,
            "write_timeout": settings.PROCESSOR_WRITE_TIMEOUT_SECONDS,
            "max_retries": settings.PROCESSOR_MAX_RETRIES,
            "backoff_seconds": settings.PROCESSOR_BACKOFF_SECONDS,
            "token_refresh_margin": settings.PROCESSOR_TOKEN_REFRESH_MARGIN_SECONDS,
        }
        kwargs.update(overrides)
        return cls(
            settings.PAYPAL_CLIENT_ID,
            settings.PAYPAL_CLIENT_SECRET,
            settings.PAYPAL_BASE_URL,
            settings.PAYPAL_PRODUCT_ID,
            **kwargs,
        )

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _backoff(self, attempt: int, response: httpx.Response | None = None) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return min(float(retry_after), MAX_RETRY_AFTER_SECONDS)
                except ValueError:
                    pass
        return self.backoff_seconds * (2 ** attempt)

    def _send(self, operation: str, call: Callable[[], httpx.Response]) -> httpx.Response:
        """Run ``call`` under the retry budget; return the first non-retryable response."""
        attempts = 1 + self.max_retries
        for attempt in range(attempts):
            try:
                response = call()
            except httpx.TransportError as exc:
                reason = "timeout" if isinstance(exc, httpx.TimeoutException) else "network"
                if attempt + 1 >= attempts:
                    metrics.processor_call(operation, "transient_error")
                    logger.warning("PayPal %s failed after %d attempts (%s)", operation, attempts, reason)
                    raise ProcessorTransientError(operation, reason, attempts=attempts) from exc
                delay = self._backoff(attempt)
                logger.warning(
                    "PayPal %s attempt %d/%d failed (%s); retrying in %.2fs",
                    operation, attempt + 1, attempts, reason, delay,
                )
                metrics.processor_retry(operation, reason)
                self._sleep(delay)
                continue

            status = response.status_code
            if status == 429 or status >= 500:
                reason = "rate_limited" if status == 429 else f"http_{status}"
                if attempt + 1 >= attempts:
                    _, debug_id, _ = _error_fields(response)
                    metrics.processor_call(operation, "transient_error")
                    logger.warning(
                        "PayPal %s failed after %d attempts status=%s debug_id=%s",
                        operation, attempts, status, debug_id,
                    )
                    raise ProcessorTransientError(operation, reason, attempts=attempts)
                delay = self._backoff(attempt, response)
                logger.warning(
                    "PayPal %s attempt %d/%d returned %s; retrying in %.2fs",
                    operation, attempt + 1, attempts, status, delay,
                )
                metrics.processor_retry(operation, reason)
                self._sleep(delay)
                continue
            return response
        raise AssertionError("unreachable")  # pragma: no cover

    def authenticate(self, force: bool = False) -> Credential:
        """Return a cached bearer credential, exchanging client credentials when stale."""
        with self._token_lock:
            now = self._monotonic()
            if not force and self._credential is not None and self._credential.is_fresh(now):
                return self._credential

            response = self._send(
                "authenticate",
                lambda: self._http.post(
                    TOKEN_PATH,
                    data={"grant_type": "client_credentials"},
                    auth=(self._client_id, self._client_secret),
                    headers={"Accept": "application/json"},
                    timeout=self.read_timeout,
                ),
            )
            if response.status_code != 200:
                _, debug_id, _ = _error_fields(response)
                logger.error("PayPal token exchange rejected status=%s debug_id=%s", response.status_code, debug_id)
                metrics.processor_call("authenticate", "auth_error")
                self._credential = None
                raise ProcessorAuthError("authenticate", response.status_code)

            body = response.json()
            expires_in = int(body.get("expires_in", 0))
            lifetime = max(expires_in - self.token_refresh_margin, 0)
            self._credential = Credential(access_token=body["access_token"], refresh_after=now + lifetime)
            metrics.processor_call("authenticate", "ok")
            logger.info("PayPal access token refreshed (valid %ss)", expires_in)
            return self._credential

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        mutating: bool,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        timeout = self.write_timeout if mutating else self.read_timeout
        reauthenticated = False
        while True:
            credential = self.authenticate(force=reauthenticated)
            request_headers = {
                "Authorization": f"Bearer {credential.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                **(headers or {}),
            }
            response = self._send(
                operation,
                lambda: self._http.request(method, path, json=json, headers=request_headers, timeout=timeout),
            )
            if response.status_code != 401:
                return response
            if reauthenticated:
                logger.error("PayPal %s rejected credentials after re-authentication", operation)
                metrics.processor_call(operation, "auth_error")
                raise ProcessorAuthError(operation, 401)
            logger.info("PayPal %s returned 401; re-authenticating once", operation)
            reauthenticated = True

    def _fail(self, operation: str, response: httpx.Response, remote_id: str | None = None) -> ProcessorFatalError:
        issue, debug_id, message = _error_fields(response)
        if response.status_code == 404 and remote_id is not None:
            metrics.processor_call(operation, "resource_gone")
            logger.warning("PayPal %s: remote subscription %s not found debug_id=%s", operation, remote_id, debug_id)
            return RemoteResourceGoneError(operation, remote_id)
        metrics.processor_call(operation, "fatal_error")
        logger.error(
            "PayPal %s rejected status=%s issue=%s debug_id=%s",
            operation, response.status_code, issue, debug_id,
        )
        return ProcessorFatalError(operation, message, http_status=response.status_code, issue=issue)

    # ------------------------------------------------------------------
    # Subscription operations
    # ------------------------------------------------------------------

    def _application_context(self, return_url: str, cancel_url: str) -> dict[str, Any]:
        return {
            "brand_name": self.brand_name,
            "locale": self.locale,
            "shipping_preference": "NO_SHIPPING",
            "user_action": "SUBSCRIBE_NOW",
            "return_url": return_url,
            "cancel_url": cancel_url,
        }

    def _billing_cycles(self, plan: PlanSpec) -> list[dict[str, Any]]:
        def cycle(sequence: int, total_cycles: int, price) -> dict[str, Any]:
            return {
                "frequency": {"interval_unit": plan.interval_unit, "interval_count": 1},
                "tenure_type": "REGULAR",
                "sequence": sequence,
                "total_cycles": total_cycles,
                "pricing_scheme": {"fixed_price": {"value": f"{price:.2f}", "currency_code": "USD"}},
            }

        if plan.first_cycle_price_usd is not None:
            return [cycle(1, 1, plan.first_cycle_price_usd), cycle(2, 0, plan.price_usd)]
        return [cycle(1, 0, plan.price_usd)]

    def _create_plan(self, plan: PlanSpec, request_id: str) -> str:
        payload = {
            "product_id": self.product_id,
            "name": plan.display_name,
            "status": "ACTIVE",
            "billing_cycles": self._billing_cycles(plan),
            "payment_preferences": {
                "auto_bill_outstanding": True,
                "setup_fee_failure_action": "CONTINUE",
                "payment_failure_threshold": 3,
            },
        }
        response = self._request(
            "POST",
            PLANS_PATH,
            operation="create_plan",
            mutating=True,
            json=payload,
            headers={"PayPal-Request-Id": f"plan-{request_id}", "Prefer": "return=minimal"},
        )
        if response.status_code not in (200, 201):
            raise self._fail("create_plan", response)
        metrics.processor_call("create_plan", "ok")
        return response.json()["id"]

    def create_subscription(
        self,
        plan: PlanSpec,
        *,
        user_id: int,
        return_url: str,
        cancel_url: str,
        request_id: str | None = None,
    ) -> CreatedSubscription:
        request_id = request_id or uuid.uuid4().hex
        plan_id = self._create_plan(plan, request_id)
        payload = {
            "plan_id": plan_id,
            "custom_id": str(user_id),
            "application_context": self._application_context(return_url, cancel_url),
        }
        response = self._request(
            "POST",
            SUBSCRIPTIONS_PATH,
            operation="create_subscription",
            mutating=True,
            json=payload,
            headers={"PayPal-Request-Id": f"sub-{request_id}", "Prefer": "return=representation"},
        )
        if response.status_code not in (200, 201):
            raise self._fail("create_subscription", response)
        body = response.json()
        approval_url = _approval_link(body)
        if not approval_url:
            metrics.processor_call("create_subscription", "fatal_error")
            raise ProcessorFatalError("create_subscription", "Payment processor returned no approval link.")
        metrics.processor_call("create_subscription", "ok")
        logger.info("PayPal subscription %s created for user %s (plan %s)", body["id"], user_id, plan.plan_type.value)
        return CreatedSubscription(remote_id=body["id"], approval_url=approval_url, processor_plan_id=plan_id)

    def _state_change(self, action: str, remote_id: str, reason: str) -> OperationResult:
        response = self._request(
            "POST",
            f"{SUBSCRIPTIONS_PATH}/{remote_id}/{action}",
            operation=action,
            mutating=True,
            json={"reason": reason[:127] or action},
        )
        if response.status_code in (200, 204):
            metrics.processor_call(action, "ok")
            return OperationResult.OK
        if response.status_code == 422:
            issue, debug_id, _ = _error_fields(response)
            if issue in INVALID_STATE_ISSUES:
                metrics.processor_call(action, "already_in_state")
                logger.info(
                    "PayPal %s on %s: already in target state (issue=%s debug_id=%s)",
                    action, remote_id, issue, debug_id,
                )
                return OperationResult.ALREADY_IN_TARGET_STATE
        raise self._fail(action, response, remote_id)

    def activate(self, remote_id: str, reason: str) -> OperationResult:
        return self._state_change("activate", remote_id, reason)

    def suspend(self, remote_id: str, reason: str) -> OperationResult:
        return self._state_change("suspend", remote_id, reason)

    def cancel(self, remote_id: str, reason: str) -> OperationResult:
        return self._state_change("cancel", remote_id, reason)

    def revise(self, remote_id: str, plan: PlanSpec, *, return_url: str, cancel_url: str) -> RevisedSubscription:
        plan_id = self._create_plan(plan, uuid.uuid4().hex)
        response = self._request(
            "POST",
            f"{SUBSCRIPTIONS_PATH}/{remote_id}/revise",
            operation="revise",
            mutating=True,
            json={"plan_id": plan_id, "application_context": self._application_context(return_url, cancel_url)},
        )
        if response.status_code != 200:
            raise self._fail("revise", response, remote_id)
        metrics.processor_call("revise", "ok")
        return RevisedSubscription(approval_url=_approval_link(response.json()), processor_plan_id=plan_id)

    def fetch_status(self, remote_id: str) -> RemoteStatus:
        response = self._request("GET", f"{SUBSCRIPTIONS_PATH}/{remote_id}", operation="fetch_status", mutating=False)
        if response.status_code != 200:
            raise self._fail("fetch_status", response, remote_id)
        body = response.json()
        billing = body.get("billing_info") or {}
        subscriber = body.get("subscriber") or {}
        metrics.processor_call("fetch_status", "ok")
        return RemoteStatus(
            remote_id=body.get("id", remote_id),
            status=(body.get("status") or "").upper(),
            plan_id=body.get("plan_id"),
            payer_id=subscriber.get("payer_id"),
            payer_email=subscriber.get("email_address"),
            last_payment_at=_parse_timestamp((billing.get("last_payment") or {}).get("time")),
            next_billing_at=_parse_timestamp(billing.get("next_billing_time")),
            failed_payments_count=int(billing.get("failed_payments_count") or 0),
        )

    def verify_webhook_signature(self, headers: Mapping[str, str], event: Mapping[str, Any]) -> bool:
        if not settings.PAYPAL_WEBHOOK_ID:
            raise ConfigurationError("PAYPAL_WEBHOOK_ID")
        lowered = {k.lower(): v for k, v in headers.items()}
        payload = {
            "auth_algo": lowered.get("paypal-auth-algo"),
            "cert_url": lowered.get("paypal-cert-url"),
            "transmission_id": lowered.get("paypal-transmission-id"),
            "transmission_sig": lowered.get("paypal-transmission-sig"),
            "transmission_time": lowered.get("paypal-transmission-time"),
            "webhook_id": settings.PAYPAL_WEBHOOK_ID,
            "webhook_event": event,
        }
        if not all(payload[k] for k in ("auth_algo", "cert_url", "transmission_id", "transmission_sig")):
            return False
        response = self._request("POST", VERIFY_WEBHOOK_PATH, operation="verify_webhook", mutating=False, json=payload)
        if response.status_code != 200:
            raise self._fail("verify_webhook", response)
        return response.json().get("verification_status") == "SUCCESS"


@lru_cache
def get_processor_client() -> PayPalClient:
    return PayPalClient.from_settings()
