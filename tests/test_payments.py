"""Tests for Stripe webhook verification and payment routing.

Signatures are computed the way Stripe computes them, so these exercise the
real stripe.Webhook verification path.
"""

import hashlib
import hmac
import json
import time

import pytest

from errors import ConfigurationError, WebhookSignatureError
from payments import PaymentEvent, handle_payment_event, parse_webhook

SECRET = "whsec_test_secret"


def sign(payload: bytes, secret=SECRET, timestamp=None):
    timestamp = int(timestamp or time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def checkout_payload(deployment_id="dep-1", session_id="cs_test_1",
                     event_type="checkout.session.completed", payment_intent="pi_1"):
    return json.dumps({
        "id": "evt_1",
        "object": "event",
        "type": event_type,
        "data": {"object": {
            "id": session_id,
            "object": "checkout.session",
            "payment_intent": payment_intent,
            "metadata": {"deploymentId": deployment_id} if deployment_id else {},
        }},
    }).encode("utf-8")


class _RecordingDispatcher:
    def __init__(self):
        self.submitted = []

    def submit(self, deployment_id):
        self.submitted.append(deployment_id)


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setenv("GOCLAW_STRIPE_WEBHOOK_SECRET", SECRET)


class TestParseWebhook:
    def test_valid_checkout(self):
        payload = checkout_payload()
        event = parse_webhook(payload, sign(payload))
        assert event == PaymentEvent(
            event_id="evt_1",
            event_type="checkout.session.completed",
            session_id="cs_test_1",
            payment_intent_id="pi_1",
            deployment_id="dep-1",
        )

    def test_expanded_payment_intent(self):
        payload = checkout_payload(payment_intent={"id": "pi_expanded"})
        assert parse_webhook(payload, sign(payload)).payment_intent_id == "pi_expanded"

    def test_wrong_secret(self):
        payload = checkout_payload()
        with pytest.raises(WebhookSignatureError):
            parse_webhook(payload, sign(payload, secret="whsec_other"))

    def test_tampered_body(self):
        payload = checkout_payload()
        header = sign(payload)
        with pytest.raises(WebhookSignatureError):
            parse_webhook(checkout_payload(deployment_id="dep-evil"), header)

    def test_stale_timestamp(self):
        payload = checkout_payload()
        with pytest.raises(WebhookSignatureError):
            parse_webhook(payload, sign(payload, timestamp=time.time() - 3600))

    def test_missing_header(self):
        with pytest.raises(WebhookSignatureError):
            parse_webhook(checkout_payload(), "")

    def test_missing_secret(self, monkeypatch):
        monkeypatch.setenv("GOCLAW_STRIPE_WEBHOOK_SECRET", "")
        payload = checkout_payload()
        with pytest.raises(ConfigurationError):
            parse_webhook(payload, sign(payload))


class TestHandlePaymentEvent:
    def _create(self, repo, **overrides):
        values = dict(user_id="u1", model="gpt-3.2", channel="telegram",
                      channel_token="sealed")
        values.update(overrides)
        return repo.create(**values)

    def test_dispatches_by_metadata_id(self, repo, event_store):
        record = self._create(repo)
        dispatcher = _RecordingDispatcher()
        event = PaymentEvent("evt_1", "checkout.session.completed",
                             session_id="cs_1", payment_intent_id="pi_1",
                             deployment_id=record.id)
        result = handle_payment_event(event, repo, dispatcher, events=event_store)

        assert result == {"handled": True, "type": "checkout.session.completed",
                          "deployment_id": record.id}
        assert dispatcher.submitted == [record.id]
        stored = repo.get(record.id)
        assert stored.stripe_payment_intent_id == "pi_1"
        assert stored.stripe_session_id == "cs_1"
        assert stored.status == "pending"
        types = [e["event_type"] for e in event_store.deployment_timeline(record.id)]
        assert types == ["deployment.paid"]

    def test_falls_back_to_session_lookup(self, repo):
        record = self._create(repo, stripe_session_id="cs_known")
        dispatcher = _RecordingDispatcher()
        event = PaymentEvent("evt_2", "checkout.session.completed", session_id="cs_known")
        handle_payment_event(event, repo, dispatcher)
        assert dispatcher.submitted == [record.id]

    def test_unknown_deployment_not_dispatched(self, repo):
        dispatcher = _RecordingDispatcher()
        event = PaymentEvent("evt_3", "checkout.session.completed",
                             session_id="cs_none", deployment_id="missing")
        result = handle_payment_event(event, repo, dispatcher)
        assert result["handled"] is False
        assert dispatcher.submitted == []

    def test_other_event_types_ignored(self, repo):
        record = self._create(repo)
        dispatcher = _RecordingDispatcher()
        event = PaymentEvent("evt_4", "payment_intent.created", deployment_id=record.id)
        assert handle_payment_event(event, repo, dispatcher)["handled"] is False
        assert dispatcher.submitted == []

    def test_redelivery_dispatches_again(self, repo):
        record = self._create(repo)
        dispatcher = _RecordingDispatcher()
        event = PaymentEvent("evt_1", "checkout.session.completed",
                             session_id="cs_1", deployment_id=record.id)
        handle_payment_event(event, repo, dispatcher)
        handle_payment_event(event, repo, dispatcher)
        assert dispatcher.submitted == [record.id, record.id]
