"""Inbound Stripe webhook.

Served on both ``/stripe/webhook`` and ``/webhook/stripe``.  The endpoint
bypasses identity authentication; the Stripe signature over the raw body
is verified before anything is parsed or stored.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from accessgate.dependencies import GatewayDep, WorkflowDep
from accessgate.exceptions import SignatureError
from accessgate.schemas import WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/stripe/webhook", response_model=WebhookAck)
@router.post("/webhook/stripe", response_model=WebhookAck, include_in_schema=False)
async def stripe_webhook(
    request: Request,
    gateway: GatewayDep,
    workflow: WorkflowDep,
) -> WebhookAck:
    """Verify a Stripe event and apply it when it grants access.

    Returns 400 on a bad signature (nothing is written), 500 when the
    record store fails (so Stripe retries), and ``{"received": true}``
    otherwise, including for event types that are ignored.
    """
    body = await request.body()
    try:
        event = gateway.verify_and_parse_webhook(body, request.headers.get("stripe-signature"))
    except SignatureError as exc:
        logger.warning("Stripe webhook rejected: %s", exc.reason)
        raise

    outcome = await workflow.apply_event(event)
    logger.info(
        "Stripe event %s processed",
        event.get("id"),
        extra={
            "event_id": event.get("id"),
            "event_type": outcome.event_type,
            "uid": outcome.uid,
        },
    )
    return WebhookAck()
