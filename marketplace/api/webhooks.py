"""Stripe webhook receiver.

The push counterpart of POST /v1/enrollments/verify: both land in the same
idempotent service calls, so a webhook racing the browser redirect (or a
provider redelivery) cannot complete an enrollment twice.

  checkout.session.completed               -> verify_enrollment
  checkout.session.async_payment_succeeded -> verify_enrollment
  checkout.session.expired                 -> fail_enrollment
  checkout.session.async_payment_failed    -> fail_enrollment
  anything else                            -> acknowledged, ignored

A 2xx tells Stripe to stop retrying.  Signature failures get 400; gateway
or storage outages surface as 503 so Stripe redelivers later.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request

from marketplace.api.dependencies import get_enrollment_service, get_payment_gateway
from marketplace.core.errors import PaymentNotCompletedError
from marketplace.services.enrollment_service import EnrollmentService
from marketplace.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])

_COMPLETION_EVENTS = frozenset(
    {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
)
_FAILURE_EVENTS = frozenset(
    {"checkout.session.expired", "checkout.session.async_payment_failed"}
)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
    service: Annotated[EnrollmentService, Depends(get_enrollment_service)],
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> dict:
    payload = await request.body()
    event = gateway.parse_webhook(payload, stripe_signature)
    extra = {"session_id": event.session_id}

    if event.session_id is None:
        logger.info("Webhook %s ignored: no checkout session", event.type)
    elif event.type in _COMPLETION_EVENTS:
        try:
            await service.verify_enrollment(event.session_id)
        except PaymentNotCompletedError:
            # Delayed payment methods: completed now, paid later via
            # async_payment_succeeded
            logger.info("Webhook %s: payment still processing", event.type, extra=extra)
    elif event.type in _FAILURE_EVENTS:
        await service.fail_enrollment(event.session_id)
    else:
        logger.debug("Webhook %s ignored", event.type, extra=extra)

    return {"received": True}
