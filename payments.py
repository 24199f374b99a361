# GoClaw Payments
# Stripe webhook intake: verify, resolve the deployment, hand off, acknowledge.
#
# Stripe delivers at least once and retries anything that is not a fast 2xx,
# so this path only records the payment intent and enqueues the run. The
# orchestrator's compare-and-set makes redeliveries harmless.

import json
import logging
import os
from dataclasses import dataclass
from typing import Optional

import stripe

from errors import ConfigurationError, WebhookSignatureError
from events import EventType

log = logging.getLogger("goclaw.stripe")

STRIPE_SECRET_KEY = os.environ.get("GOCLAW_STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("GOCLAW_STRIPE_WEBHOOK_SECRET", "")

if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY

CHECKOUT_COMPLETED = "checkout.session.completed"


@dataclass
class PaymentEvent:
    event_id: str
    event_type: str
    session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    deployment_id: Optional[str] = None


def _webhook_secret():
    return os.environ.get("GOCLAW_STRIPE_WEBHOOK_SECRET", STRIPE_WEBHOOK_SECRET)


def parse_webhook(payload: bytes, sig_header: str) -> PaymentEvent:
    """Verify a Stripe webhook and extract what provisioning needs."""
    secret = _webhook_secret()
    if not secret:
        raise ConfigurationError("GOCLAW_STRIPE_WEBHOOK_SECRET", "webhook secret is not configured")
    if not sig_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    try:
        stripe.Webhook.construct_event(payload, sig_header, secret)
    except ValueError as e:
        raise WebhookSignatureError(f"Invalid webhook payload: {e}")
    except stripe.SignatureVerificationError as e:
        log.error("Webhook signature verification failed: %s", e)
        raise WebhookSignatureError("Invalid signature")

    event = json.loads(payload)
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    payment_intent = obj.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")

    return PaymentEvent(
        event_id=event.get("id", ""),
        event_type=event.get("type", ""),
        session_id=obj.get("id"),
        payment_intent_id=payment_intent,
        deployment_id=metadata.get("deploymentId"),
    )


def handle_payment_event(event: PaymentEvent, repository, dispatcher, events=None) -> dict:
    """Route a verified event. Only completed checkouts start a deployment.

    Returns a small summary for the webhook log; never raises for unknown
    deployments so Stripe does not retry a delivery that can never succeed.
    """
    if event.event_type != CHECKOUT_COMPLETED:
        log.debug("Ignoring Stripe event %s (%s)", event.event_id, event.event_type)
        return {"handled": False, "type": event.event_type}

    record = None
    if event.deployment_id:
        record = repository.get(event.deployment_id)
    if record is None:
        record = repository.find_by_stripe_session(event.session_id)
    if record is None:
        log.error("No deployment for checkout session %s (metadata id %s)",
                  event.session_id, event.deployment_id)
        return {"handled": False, "type": event.event_type, "reason": "deployment not found"}

    changes = {}
    if event.payment_intent_id and record.stripe_payment_intent_id != event.payment_intent_id:
        changes["stripe_payment_intent_id"] = event.payment_intent_id
    if event.session_id and not record.stripe_session_id:
        changes["stripe_session_id"] = event.session_id
    if changes:
        repository.update(record.id, **changes)

    if events is not None:
        try:
            events.record(EventType.DEPLOYMENT_PAID, "deployment", record.id,
                          actor="webhook:stripe", stripe_event_id=event.event_id,
                          session_id=event.session_id)
        except Exception as e:
            log.error("Failed to record payment event for %s: %s", record.id, e)

    dispatcher.submit(record.id)
    log.info("Checkout %s paid, deployment %s queued", event.session_id, record.id)
    return {"handled": True, "type": event.event_type, "deployment_id": record.id}
