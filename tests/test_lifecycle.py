"""
Tests for envelope and signer status rules.
"""

from datetime import datetime, timedelta, timezone

import pytest

from esign import models
from esign.errors import (
    ConsentRequiredError,
    InvalidEnvelopeStateError,
    InvalidSignerStateError,
    SignerEmailDuplicateError,
    SigningOrderViolationError,
)
from esign.models import EnvelopeStatus, ParticipantRole, SignerStatus, SigningOrderType
from esign.services import lifecycle

OWNER = "owner-1"


def build_envelope(order_type=SigningOrderType.OWNER_FIRST, status=EnvelopeStatus.DRAFT,
                   owner_signs=True, invitees=2, source_key="envelopes/e1/source/doc.pdf"):
    envelope = models.SignatureEnvelope(
        id="e1",
        created_by=OWNER,
        title="Lease",
        status=status,
        signing_order_type=order_type,
        source_key=source_key,
    )
    order = 1
    if owner_signs:
        envelope.signers.append(models.EnvelopeSigner(
            id="s-owner", user_id=OWNER, is_external=False, email="owner@example.com",
            full_name="Owner", participant_role=ParticipantRole.SIGNER, order=order,
            status=SignerStatus.PENDING,
        ))
        order += 1
    for i in range(invitees):
        envelope.signers.append(models.EnvelopeSigner(
            id=f"s-{i}", is_external=True, email=f"invitee{i}@example.com",
            full_name=f"Invitee {i}", participant_role=ParticipantRole.SIGNER, order=order,
            status=SignerStatus.PENDING,
        ))
        order += 1
    return envelope


def signer(envelope, signer_id):
    return next(s for s in envelope.signers if s.id == signer_id)


def sign(envelope, signer_id):
    lifecycle.mark_signer_signed(
        envelope, signer(envelope, signer_id),
        document_hash="a" * 64, signature_hash="b" * 64,
        signed_s3_key="k", kms_key_id="key", algorithm="RSASSA_PSS_SHA_256",
    )


class TestSend:
    """Tests for sending a draft."""

    def test_send_moves_draft_to_ready(self):
        envelope = build_envelope()
        lifecycle.send(envelope)
        assert envelope.status == EnvelopeStatus.READY_FOR_SIGNATURE
        assert envelope.sent_at is not None

    def test_send_requires_draft(self):
        envelope = build_envelope(status=EnvelopeStatus.READY_FOR_SIGNATURE)
        with pytest.raises(InvalidEnvelopeStateError):
            lifecycle.send(envelope)

    def test_send_requires_signers(self):
        envelope = build_envelope(owner_signs=False, invitees=0)
        with pytest.raises(InvalidEnvelopeStateError, match="without signers"):
            lifecycle.send(envelope)

    def test_send_requires_document(self):
        envelope = build_envelope(source_key=None)
        with pytest.raises(InvalidEnvelopeStateError, match="document"):
            lifecycle.send(envelope)

    def test_external_signer_needs_name(self):
        envelope = build_envelope()
        signer(envelope, "s-0").full_name = None
        with pytest.raises(InvalidEnvelopeStateError):
            lifecycle.send(envelope)

    def test_viewers_do_not_count_as_signers(self):
        envelope = build_envelope(owner_signs=False, invitees=0)
        envelope.signers.append(models.EnvelopeSigner(
            id="v", is_external=True, email="viewer@example.com", full_name="Viewer",
            participant_role=ParticipantRole.VIEWER, order=1, status=SignerStatus.PENDING,
        ))
        with pytest.raises(InvalidEnvelopeStateError):
            lifecycle.send(envelope)


class TestCancelAndExpire:

    @pytest.mark.parametrize("status", [EnvelopeStatus.DRAFT, EnvelopeStatus.READY_FOR_SIGNATURE])
    def test_cancel_open_envelope(self, status):
        envelope = build_envelope(status=status)
        lifecycle.cancel(envelope)
        assert envelope.status == EnvelopeStatus.CANCELLED
        assert envelope.cancelled_at is not None

    @pytest.mark.parametrize("status", sorted(models.FINAL_ENVELOPE_STATUSES))
    def test_cancel_final_envelope_rejected(self, status):
        envelope = build_envelope(status=status)
        with pytest.raises(InvalidEnvelopeStateError):
            lifecycle.cancel(envelope)

    def test_expire_completed_rejected(self):
        envelope = build_envelope(status=EnvelopeStatus.COMPLETED)
        with pytest.raises(InvalidEnvelopeStateError):
            lifecycle.expire(envelope)

    def test_is_expired(self):
        envelope = build_envelope()
        now = datetime.now(timezone.utc)
        envelope.expires_at = now - timedelta(minutes=1)
        assert lifecycle.is_expired(envelope, now) is True
        envelope.expires_at = now + timedelta(days=1)
        assert lifecycle.is_expired(envelope, now) is False

    def test_naive_expiry_is_treated_as_utc(self):
        envelope = build_envelope()
        envelope.expires_at = datetime.utcnow() - timedelta(hours=1)
        assert lifecycle.is_expired(envelope) is True


class TestSigningOrder:

    def test_owner_first_blocks_invitees(self):
        envelope = build_envelope(status=EnvelopeStatus.READY_FOR_SIGNATURE)
        with pytest.raises(SigningOrderViolationError):
            lifecycle.validate_signing_order(envelope, signer(envelope, "s-0"))
        lifecycle.validate_signing_order(envelope, signer(envelope, "s-owner"))

    def test_owner_first_allows_invitees_after_owner_signed(self):
        envelope = build_envelope(status=EnvelopeStatus.READY_FOR_SIGNATURE)
        sign(envelope, "s-owner")
        lifecycle.validate_signing_order(envelope, signer(envelope, "s-1"))

    def test_invitees_first_blocks_owner(self):
        envelope = build_envelope(SigningOrderType.INVITEES_FIRST, EnvelopeStatus.READY_FOR_SIGNATURE)
        with pytest.raises(SigningOrderViolationError):
            lifecycle.validate_signing_order(envelope, signer(envelope, "s-owner"))
        sign(envelope, "s-0")
        sign(envelope, "s-1")
        lifecycle.validate_signing_order(envelope, signer(envelope, "s-owner"))

    def test_next_signer(self):
        envelope = build_envelope(status=EnvelopeStatus.READY_FOR_SIGNATURE)
        assert lifecycle.next_signer(envelope).id == "s-owner"

        envelope.signing_order_type = SigningOrderType.INVITEES_FIRST
        assert lifecycle.next_signer(envelope).id == "s-0"

    def test_next_signer_none_unless_ready(self):
        assert lifecycle.next_signer(build_envelope()) is None


class TestSignerTransitions:

    def test_all_signed_completes_envelope(self):
        envelope = build_envelope(status=EnvelopeStatus.READY_FOR_SIGNATURE)
        sign(envelope, "s-owner")
        sign(envelope, "s-0")
        assert envelope.status == EnvelopeStatus.READY_FOR_SIGNATURE
        sign(envelope, "s-1")
        assert envelope.status == EnvelopeStatus.COMPLETED
        assert envelope.completed_at is not None
        assert lifecycle.signer_counts(envelope) == {"total": 3, "pending": 0, "signed": 3, "declined": 0}

    def test_decline_declines_envelope(self):
        envelope = build_envelope(status=EnvelopeStatus.READY_FOR_SIGNATURE)
        lifecycle.mark_signer_declined(envelope, signer(envelope, "s-0"), "Terms are wrong")
        assert envelope.status == EnvelopeStatus.DECLINED
        assert envelope.declined_by_signer_id == "s-0"
        assert envelope.declined_reason == "Terms are wrong"

    def test_signed_cannot_decline(self):
        envelope = build_envelope(status=EnvelopeStatus.READY_FOR_SIGNATURE)
        sign(envelope, "s-owner")
        with pytest.raises(InvalidSignerStateError):
            lifecycle.mark_signer_declined(envelope, signer(envelope, "s-owner"), "changed my mind")

    def test_declined_cannot_sign(self):
        envelope = build_envelope(status=EnvelopeStatus.READY_FOR_SIGNATURE)
        lifecycle.mark_signer_declined(envelope, signer(envelope, "s-0"), "no")
        envelope.status = EnvelopeStatus.READY_FOR_SIGNATURE
        with pytest.raises(InvalidSignerStateError):
            sign(envelope, "s-0")

    def test_signing_requires_ready_envelope(self):
        envelope = build_envelope()
        with pytest.raises(InvalidEnvelopeStateError):
            sign(envelope, "s-owner")

    def test_consent_text_required(self):
        envelope = build_envelope()
        with pytest.raises(ConsentRequiredError):
            lifecycle.record_consent(signer(envelope, "s-0"), "   ")


class TestHelpers:

    def test_duplicate_emails_case_insensitive(self):
        with pytest.raises(SignerEmailDuplicateError):
            lifecycle.validate_unique_emails(["a@example.com", "A@Example.com "])

    def test_unique_emails_ignore_missing(self):
        lifecycle.validate_unique_emails(["a@example.com", None, "b@example.com"])

    def test_can_be_modified(self):
        assert lifecycle.can_be_modified(build_envelope()) is True
        assert lifecycle.can_be_modified(build_envelope(status=EnvelopeStatus.COMPLETED)) is False
