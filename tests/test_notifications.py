"""
Tests for event parsing, notification strategies and delivery.
"""

import json
from datetime import timedelta

import pytest
from botocore.exceptions import EndpointConnectionError

from esign import models
from esign.errors import (
    DeliveryError,
    EventAlreadyProcessedError,
    EventValidationError,
    InvalidNotificationStateError,
    UnknownEventError,
)
from esign.models import NotificationChannel, NotificationStatus, RecipientType
from esign.notifications import processor
from esign.notifications.delivery import NotificationDelivery
from esign.notifications.events import NotificationEvent, parse_event
from esign.notifications.strategies import build_requests

INVITATION = {
    "envelopeId": "env-1",
    "envelopeTitle": "Lease agreement",
    "signerId": "signer-1",
    "signerEmail": "alice@example.com",
    "signerName": "Alice Signer",
    "invitationToken": "raw-token",
    "message": "Please sign by Friday",
    "expiresAt": "2026-12-01T00:00:00+00:00",
}


def outbox_event(event_type="ENVELOPE_INVITATION", payload=None, event_id="evt-1"):
    """An EventBridge event as published by the outbox dispatcher."""
    return {
        "id": "eventbridge-id",
        "source": "signature-service",
        "detail-type": event_type,
        "time": "2026-10-19T10:00:00Z",
        "detail": {
            "id": event_id,
            "type": event_type,
            "payload": INVITATION if payload is None else payload,
            "occurredAt": "2026-10-19T09:59:59+00:00",
            "traceId": "trace-1",
        },
    }


def event(event_type="ENVELOPE_INVITATION", payload=None, source="signature-service", event_id="evt-1"):
    return NotificationEvent(
        event_id=event_id, event_type=event_type, source=source,
        payload=INVITATION if payload is None else payload,
    )


@pytest.fixture
def delivery(ses_client, sns_client):
    return NotificationDelivery(ses_client, sns_client)


class UnreachableClient:
    """SES/SNS client whose endpoint cannot be reached."""

    def send_email(self, **kwargs):
        raise EndpointConnectionError(endpoint_url="https://email.us-east-1.amazonaws.com")

    def publish(self, **kwargs):
        raise EndpointConnectionError(endpoint_url="https://sns.us-east-1.amazonaws.com")


class TestParseEvent:

    def test_outbox_envelope(self):
        parsed = parse_event(outbox_event())
        assert parsed.event_id == "evt-1"
        assert parsed.event_type == "ENVELOPE_INVITATION"
        assert parsed.source == "signature-service"
        assert parsed.payload == INVITATION
        assert parsed.trace_id == "trace-1"

    def test_detail_as_json_string(self):
        raw = outbox_event()
        raw["detail"] = json.dumps(raw["detail"])
        assert parse_event(raw).payload == INVITATION

    def test_flat_detail_from_other_producers(self):
        parsed = parse_event({
            "id": "eb-42",
            "source": "auth-service",
            "detail-type": "USER_REGISTERED",
            "detail": {"email": "new@example.com"},
        })
        assert parsed.event_id == "eb-42"
        assert parsed.event_type == "USER_REGISTERED"
        assert parsed.payload == {"email": "new@example.com"}

    @pytest.mark.parametrize("broken", [
        {"detail": {"id": "x", "type": "T", "payload": {}}},
        {"source": "s", "detail": {"id": "x", "payload": {}}},
        {"source": "s", "detail": "{not json"},
        {"source": "s", "detail-type": "T", "detail": {"id": "x", "payload": ["list"]}},
    ])
    def test_invalid_events(self, broken):
        with pytest.raises(EventValidationError):
            parse_event(broken)


class TestStrategies:

    def test_invitation_email(self):
        (request,) = build_requests(event())
        assert request.channel == NotificationChannel.EMAIL
        assert request.recipient == "alice@example.com"
        assert request.subject == "Signature requested: Lease agreement"
        assert "https://sign.example.com/sign/env-1?token=raw-token" in request.body
        assert "Please sign by Friday" in request.body
        assert request.envelope_id == "env-1"
        assert request.signer_id == "signer-1"
        assert request.metadata["eventType"] == "ENVELOPE_INVITATION"

    def test_completed_email(self):
        (request,) = build_requests(event("ENVELOPE_COMPLETED", {
            "envelopeId": "env-1", "envelopeTitle": "Lease agreement",
            "recipientEmail": "owner@example.com",
        }))
        assert request.recipient == "owner@example.com"
        assert "https://sign.example.com/envelopes/env-1" in request.body

    def test_declined_goes_to_owner(self):
        (request,) = build_requests(event("SIGNER_DECLINED", {
            "envelopeId": "env-1", "envelopeTitle": "Lease agreement",
            "ownerEmail": "owner@example.com", "ownerId": "owner-123",
            "signerName": "Bob", "declineReason": "Wrong rent",
        }))
        assert request.recipient == "owner@example.com"
        assert request.user_id == "owner-123"
        assert "Wrong rent" in request.body

    def test_user_registered_with_phone_adds_sms(self):
        requests = build_requests(event("USER_REGISTERED", {
            "email": "new@example.com", "phoneNumber": "+15555550100",
        }, source="auth-service"))
        assert [r.channel for r in requests] == [NotificationChannel.EMAIL, NotificationChannel.SMS]

    def test_missing_fields(self):
        with pytest.raises(EventValidationError, match="signerEmail"):
            build_requests(event(payload={"envelopeId": "env-1", "envelopeTitle": "T"}))

    def test_unknown_event(self):
        with pytest.raises(UnknownEventError):
            build_requests(event("SOMETHING_ELSE"))

    def test_source_is_part_of_the_key(self):
        with pytest.raises(UnknownEventError):
            build_requests(event(source="auth-service"))


class TestProcessEvent:

    def test_email_is_sent_and_recorded(self, db, delivery):
        result = processor.process_event(db, event(), delivery)

        assert result == {"email_sent": 1, "sms_sent": 0, "failed": 0, "errors": []}
        notification = db.query(models.Notification).one()
        assert notification.status == NotificationStatus.SENT
        assert notification.provider_message_id
        assert notification.event_id == "evt-1"

    def test_sms_via_sns(self, db, delivery):
        result = processor.process_event(db, event("USER_REGISTERED", {
            "email": "new@example.com", "phoneNumber": "+15555550100",
        }, source="auth-service"), delivery)
        assert result["email_sent"] == 1
        assert result["sms_sent"] == 1

    def test_same_event_twice(self, db, delivery):
        processor.process_event(db, event(), delivery)
        with pytest.raises(EventAlreadyProcessedError):
            processor.process_event(db, event(), delivery)
        assert db.query(models.Notification).count() == 1

    def test_rejected_email_is_recorded_as_failed(self, db, ses_client, sns_client):
        unverified = NotificationDelivery(ses_client, sns_client, from_email="unverified@example.com")

        result = processor.process_event(db, event(), unverified)

        assert result["failed"] == 1
        assert result["errors"][0]["recipient"] == "alice@example.com"
        notification = db.query(models.Notification).one()
        assert notification.status == NotificationStatus.FAILED
        assert notification.error_code == "MessageRejected"

    def test_retry_failed(self, db, ses_client, sns_client, delivery):
        unverified = NotificationDelivery(ses_client, sns_client, from_email="unverified@example.com")
        processor.process_event(db, event(), unverified)

        assert processor.retry_failed(db, delivery) == {"retried": 1, "sent": 1, "failed": 0}
        notification = db.query(models.Notification).one()
        assert notification.status == NotificationStatus.SENT
        assert notification.retry_count == 1
        assert processor.retry_failed(db, delivery) == {"retried": 0, "sent": 0, "failed": 0}

    def test_retries_stop_at_max(self, db, ses_client, sns_client):
        unverified = NotificationDelivery(ses_client, sns_client, from_email="unverified@example.com")
        processor.process_event(db, event(), unverified)

        for _ in range(3):
            processor.retry_failed(db, unverified)

        notification = db.query(models.Notification).one()
        assert notification.retry_count == 3
        assert processor.can_retry(notification) is False
        assert processor.retry_failed(db, unverified)["retried"] == 0

    def test_unreachable_provider_does_not_stop_other_requests(self, db, sns_client, delivery):
        unreachable = NotificationDelivery(UnreachableClient(), sns_client)

        result = processor.process_event(db, event("USER_REGISTERED", {
            "email": "new@example.com", "phoneNumber": "+15555550100",
        }, source="auth-service"), unreachable)

        assert result["failed"] == 1
        assert result["sms_sent"] == 1
        email = db.query(models.Notification).filter(
            models.Notification.channel == NotificationChannel.EMAIL
        ).one()
        assert email.status == NotificationStatus.FAILED
        assert email.error_code == "EndpointConnectionError"

        assert processor.retry_failed(db, delivery) == {"retried": 1, "sent": 1, "failed": 0}

    def test_stale_pending_rows_are_retried(self, db, delivery):
        for event_id, age in (("evt-stale", timedelta(hours=1)), ("evt-fresh", timedelta(0))):
            db.add(models.Notification(
                event_id=event_id,
                event_type="ENVELOPE_INVITATION",
                source="signature-service",
                channel=NotificationChannel.EMAIL,
                recipient="alice@example.com",
                recipient_type=RecipientType.EMAIL,
                status=NotificationStatus.PENDING,
                subject="Signature requested",
                body="Please sign",
                retry_count=0,
                max_retries=3,
                created_at=models.utc_now() - age,
            ))
        db.commit()

        assert processor.retry_failed(db, delivery) == {"retried": 1, "sent": 1, "failed": 0}
        statuses = {n.event_id: n.status for n in db.query(models.Notification)}
        assert statuses == {"evt-stale": NotificationStatus.SENT, "evt-fresh": NotificationStatus.PENDING}

    def test_concurrent_delivery_of_same_event(self, db, delivery, monkeypatch):
        processor.process_event(db, event(), delivery)
        # Both invocations passed the lookup before either stored its rows
        monkeypatch.setattr(processor, "is_processed", lambda db, event_id: False)

        with pytest.raises(EventAlreadyProcessedError):
            processor.process_event(db, event(), delivery)
        assert db.query(models.Notification).count() == 1


class TestDelivery:

    def test_unconfigured_channel(self):
        with pytest.raises(DeliveryError):
            NotificationDelivery(ses_client=None).send_email("a@example.com", "s", "b")

    def test_email_message_id(self, delivery):
        assert delivery.send(NotificationChannel.EMAIL, "a@example.com", "body", "subject")

    @pytest.mark.parametrize("channel, recipient", [
        (NotificationChannel.EMAIL, "a@example.com"),
        (NotificationChannel.SMS, "+15555550100"),
    ])
    def test_unreachable_endpoint(self, channel, recipient):
        unreachable = NotificationDelivery(UnreachableClient(), UnreachableClient())
        with pytest.raises(DeliveryError) as exc_info:
            unreachable.send(channel, recipient, "body", "subject")
        assert exc_info.value.code == "EndpointConnectionError"


class TestNotificationState:

    def make(self, status):
        return models.Notification(status=status, retry_count=0, max_retries=3)

    def test_mark_sent_requires_pending(self):
        notification = self.make(NotificationStatus.FAILED)
        with pytest.raises(InvalidNotificationStateError):
            processor.mark_sent(notification, "msg-1")

    def test_delivered_cannot_fail(self):
        notification = self.make(NotificationStatus.DELIVERED)
        with pytest.raises(InvalidNotificationStateError):
            processor.mark_failed(notification, "boom")

    def test_can_retry(self):
        notification = self.make(NotificationStatus.PENDING)
        processor.mark_failed(notification, "boom", "Throttling")
        assert notification.error_code == "Throttling"
        assert processor.can_retry(notification) is True
