"""Hosted-checkout payment gateway.

The enrollment service talks to the payment provider only through the
PaymentGateway protocol below.  Two implementations:

  - StripePaymentGateway: Stripe Checkout via the official SDK.  The SDK is
    synchronous, so every call runs in a worker thread and is bounded by
    GATEWAY_TIMEOUT_SECONDS.  A call that outlives the bound surfaces as
    GatewayUnavailableError instead of hanging the request.
  - InMemoryPaymentGateway: dev and tests.  Sessions live in a dict and are
    "paid" by calling mark_paid(), standing in for the customer finishing
    the hosted checkout page.

Error mapping (Stripe -> ours):
  timeout, APIConnectionError, RateLimitError, APIError -> GatewayUnavailableError
  any other StripeError (bad request, auth, ...)      -> PaymentGatewayError
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol, TypeVar

import stripe

from marketplace.core.errors import (
    GatewayUnavailableError,
    InvalidWebhookError,
    PaymentGatewayError,
)
from marketplace.core.metrics import GATEWAY_ERRORS

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CheckoutRequest:
    amount: Decimal
    currency: str
    description: str
    success_url: str
    cancel_url: str
    metadata: dict[str, str]
    idempotency_key: str
    image_url: str | None = None


@dataclass(frozen=True, slots=True)
class CheckoutSession:
    session_id: str
    redirect_url: str


@dataclass(frozen=True, slots=True)
class SessionStatus:
    session_id: str
    paid: bool
    expired: bool = False
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class WebhookEvent:
    event_id: str
    type: str
    session_id: str | None


class PaymentGateway(Protocol):
    async def create_checkout_session(
        self, request: CheckoutRequest
    ) -> CheckoutSession: ...

    async def get_session_status(self, session_id: str) -> SessionStatus: ...

    async def expire_session(self, session_id: str) -> None: ...

    def parse_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent: ...


def to_minor_units(amount: Decimal) -> int:
    """Decimal dollars -> integer cents, rounding half up."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _as_dict(obj: Any) -> dict[str, str]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        obj = obj.to_dict()
    return {str(k): str(v) for k, v in dict(obj).items()}


def _event_from_json(payload: bytes) -> WebhookEvent:
    try:
        body = json.loads(payload)
    except ValueError:
        raise InvalidWebhookError("webhook payload is not valid JSON") from None
    if not isinstance(body, dict) or "type" not in body:
        raise InvalidWebhookError("webhook payload has no event type")

    obj = (body.get("data") or {}).get("object") or {}
    session_id = obj.get("id") if obj.get("object") == "checkout.session" else None
    return WebhookEvent(
        event_id=str(body.get("id", "")),
        type=str(body["type"]),
        session_id=session_id,
    )


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


class StripePaymentGateway:
    def __init__(
        self,
        api_key: str,
        *,
        webhook_secret: str | None,
        timeout_seconds: float,
    ) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._timeout = timeout_seconds

    async def create_checkout_session(
        self, request: CheckoutRequest
    ) -> CheckoutSession:
        product: dict[str, Any] = {"name": request.description}
        if request.image_url:
            product["images"] = [request.image_url]

        session = await self._call(
            "create_checkout_session",
            lambda: stripe.checkout.Session.create(
                api_key=self._api_key,
                idempotency_key=request.idempotency_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": request.currency,
                            "product_data": product,
                            "unit_amount": to_minor_units(request.amount),
                        },
                        "quantity": 1,
                    }
                ],
                success_url=request.success_url,
                cancel_url=request.cancel_url,
                metadata=request.metadata,
            ),
        )
        logger.info(
            "Checkout session created",
            extra={"session_id": session.id},
        )
        return CheckoutSession(session_id=session.id, redirect_url=session.url)

    async def get_session_status(self, session_id: str) -> SessionStatus:
        session = await self._call(
            "get_session_status",
            lambda: stripe.checkout.Session.retrieve(session_id, api_key=self._api_key),
        )
        return SessionStatus(
            session_id=session.id,
            # "no_payment_required" covers 100%-off promotion codes
            paid=session.payment_status in ("paid", "no_payment_required"),
            expired=session.status == "expired",
            metadata=_as_dict(session.metadata),
        )

    async def expire_session(self, session_id: str) -> None:
        await self._call(
            "expire_session",
            lambda: stripe.checkout.Session.expire(session_id, api_key=self._api_key),
        )

    def parse_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        if not self._webhook_secret:
            raise InvalidWebhookError("webhook signing secret is not configured")
        if not signature:
            raise InvalidWebhookError("missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError:
            raise InvalidWebhookError("webhook signature verification failed") from None
        except ValueError:
            raise InvalidWebhookError("webhook payload is not valid JSON") from None
        return _event_from_json(payload)

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), self._timeout)
        except TimeoutError:
            GATEWAY_ERRORS.labels(operation=operation, kind="timeout").inc()
            logger.warning("Stripe %s timed out after %.1fs", operation, self._timeout)
            raise GatewayUnavailableError(
                "payment provider timed out", {"operation": operation}
            ) from None
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            GATEWAY_ERRORS.labels(operation=operation, kind="unavailable").inc()
            logger.warning("Stripe %s unavailable", operation, exc_info=True)
            raise GatewayUnavailableError(
                "payment provider unavailable", {"operation": operation}
            ) from exc
        except stripe.StripeError as exc:
            GATEWAY_ERRORS.labels(operation=operation, kind="rejected").inc()
            logger.error("Stripe rejected %s: %s", operation, exc.user_message or exc)
            raise PaymentGatewayError(
                "payment provider rejected the request",
                {"operation": operation, "provider_code": exc.code},
            ) from exc


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


@dataclass
class _FakeSession:
    session_id: str
    request: CheckoutRequest
    paid: bool = False
    expired: bool = False


class InMemoryPaymentGateway:
    """Checkout gateway for dev and tests.  No network, no signatures.

    `fail_next(exc)` makes the next call raise `exc`, which lets tests walk
    the timeout and rejection paths without patching.
    """

    CHECKOUT_BASE = "https://checkout.test/pay"

    def __init__(self) -> None:
        self._sessions: dict[str, _FakeSession] = {}
        self._by_idempotency_key: dict[str, str] = {}
        self._next_error: Exception | None = None
        self.expired_sessions: list[str] = []

    def fail_next(self, exc: Exception) -> None:
        self._next_error = exc

    def mark_paid(self, session_id: str) -> None:
        self._sessions[session_id].paid = True

    def mark_expired(self, session_id: str) -> None:
        self._sessions[session_id].expired = True

    def get_request(self, session_id: str) -> CheckoutRequest:
        return self._sessions[session_id].request

    def _raise_injected(self) -> None:
        if self._next_error is not None:
            exc, self._next_error = self._next_error, None
            raise exc

    async def create_checkout_session(
        self, request: CheckoutRequest
    ) -> CheckoutSession:
        self._raise_injected()
        # Same key, same session: mirrors provider-side idempotency
        session_id = self._by_idempotency_key.get(request.idempotency_key)
        if session_id is None:
            session_id = f"cs_test_{uuid.uuid4().hex}"
            self._sessions[session_id] = _FakeSession(session_id, request)
            self._by_idempotency_key[request.idempotency_key] = session_id
        return CheckoutSession(
            session_id=session_id,
            redirect_url=f"{self.CHECKOUT_BASE}/{session_id}",
        )

    async def get_session_status(self, session_id: str) -> SessionStatus:
        self._raise_injected()
        s = self._sessions.get(session_id)
        if s is None:
            raise PaymentGatewayError(
                "no such checkout session", {"session_id": session_id}
            )
        return SessionStatus(
            session_id=session_id,
            paid=s.paid,
            expired=s.expired,
            metadata=dict(s.request.metadata),
        )

    async def expire_session(self, session_id: str) -> None:
        self._raise_injected()
        s = self._sessions.get(session_id)
        if s is not None and not s.paid:
            s.expired = True
        self.expired_sessions.append(session_id)

    def parse_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        return _event_from_json(payload)
