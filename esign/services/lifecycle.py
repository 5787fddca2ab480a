# services/lifecycle.py
"""
Envelope and signer status rules.

These functions only mutate the in-memory model objects; callers own the
session and decide when to commit. Every transition that is not allowed
raises a ConflictError subclass so the API answers 409.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from .. import models
from ..errors import (
    ConsentRequiredError,
    InvalidEnvelopeStateError,
    InvalidSignerStateError,
    SignerEmailDuplicateError,
    SigningOrderViolationError,
)
from ..models import EnvelopeStatus, SignerStatus, SigningOrderType, ParticipantRole


def is_final(envelope: models.SignatureEnvelope) -> bool:
    return envelope.status in models.FINAL_ENVELOPE_STATUSES


def can_be_modified(envelope: models.SignatureEnvelope) -> bool:
    """Signers and metadata may change only before anyone could have acted on the envelope."""
    return envelope.status in (EnvelopeStatus.DRAFT, EnvelopeStatus.READY_FOR_SIGNATURE)


def signing_participants(envelope: models.SignatureEnvelope) -> List[models.EnvelopeSigner]:
    return [s for s in envelope.signers if s.participant_role == ParticipantRole.SIGNER]


def is_owner_signer(envelope: models.SignatureEnvelope, signer: models.EnvelopeSigner) -> bool:
    return not signer.is_external and signer.user_id == envelope.created_by


def signer_counts(envelope: models.SignatureEnvelope) -> dict:
    signers = signing_participants(envelope)
    return {
        "total": len(signers),
        "pending": sum(1 for s in signers if s.status == SignerStatus.PENDING),
        "signed": sum(1 for s in signers if s.status == SignerStatus.SIGNED),
        "declined": sum(1 for s in signers if s.status == SignerStatus.DECLINED),
    }


def all_signed(envelope: models.SignatureEnvelope) -> bool:
    signers = signing_participants(envelope)
    return bool(signers) and all(s.status == SignerStatus.SIGNED for s in signers)


def is_expired(envelope: models.SignatureEnvelope, now: Optional[datetime] = None) -> bool:
    expires_at = models.ensure_utc(envelope.expires_at)
    if expires_at is None:
        return False
    return (now or models.utc_now()) > expires_at


def validate_unique_emails(emails: Iterable[Optional[str]]) -> None:
    normalized = [e.strip().lower() for e in emails if e]
    if len(normalized) != len(set(normalized)):
        raise SignerEmailDuplicateError("Duplicate email addresses found in signer data")


def send(envelope: models.SignatureEnvelope) -> None:
    """DRAFT -> READY_FOR_SIGNATURE."""
    if envelope.status != EnvelopeStatus.DRAFT:
        raise InvalidEnvelopeStateError("Can only send envelope in DRAFT status")

    signers = signing_participants(envelope)
    if not signers:
        raise InvalidEnvelopeStateError("Cannot send envelope without signers")

    for signer in signers:
        if signer.is_external and not (signer.email and signer.full_name):
            raise InvalidEnvelopeStateError(
                f"External signer {signer.id} must have an email and a full name"
            )

    if not envelope.source_key:
        raise InvalidEnvelopeStateError("Cannot send envelope without a document")

    now = models.utc_now()
    envelope.status = EnvelopeStatus.READY_FOR_SIGNATURE
    envelope.sent_at = now
    envelope.updated_at = now


def cancel(envelope: models.SignatureEnvelope) -> None:
    if is_final(envelope):
        raise InvalidEnvelopeStateError(
            f"Cannot cancel envelope in {envelope.status.value} status"
        )
    now = models.utc_now()
    envelope.status = EnvelopeStatus.CANCELLED
    envelope.cancelled_at = now
    envelope.updated_at = now


def expire(envelope: models.SignatureEnvelope) -> None:
    if envelope.status == EnvelopeStatus.COMPLETED:
        raise InvalidEnvelopeStateError("Cannot expire completed envelope")
    envelope.status = EnvelopeStatus.EXPIRED
    envelope.updated_at = models.utc_now()


def next_signer(envelope: models.SignatureEnvelope) -> Optional[models.EnvelopeSigner]:
    """Who is expected to sign next, or None when nobody can sign right now."""
    if envelope.status != EnvelopeStatus.READY_FOR_SIGNATURE:
        return None

    pending = [s for s in signing_participants(envelope) if s.status == SignerStatus.PENDING]
    if not pending:
        return None

    owners = [s for s in pending if is_owner_signer(envelope, s)]
    invitees = [s for s in pending if not is_owner_signer(envelope, s)]

    if envelope.signing_order_type == SigningOrderType.OWNER_FIRST and owners:
        return owners[0]
    if envelope.signing_order_type == SigningOrderType.INVITEES_FIRST and invitees:
        return invitees[0]
    return pending[0]


def validate_signing_order(envelope: models.SignatureEnvelope, signer: models.EnvelopeSigner) -> None:
    pending = [
        s for s in signing_participants(envelope)
        if s.status == SignerStatus.PENDING and s.id != signer.id
    ]
    signer_is_owner = is_owner_signer(envelope, signer)

    if envelope.signing_order_type == SigningOrderType.OWNER_FIRST and not signer_is_owner:
        if any(is_owner_signer(envelope, s) for s in pending):
            raise SigningOrderViolationError("Owner must sign before invitees")

    if envelope.signing_order_type == SigningOrderType.INVITEES_FIRST and signer_is_owner:
        if any(not is_owner_signer(envelope, s) for s in pending):
            raise SigningOrderViolationError("All invitees must sign before the owner")


def _ensure_can_act(envelope: models.SignatureEnvelope, signer: models.EnvelopeSigner) -> None:
    if envelope.status != EnvelopeStatus.READY_FOR_SIGNATURE:
        raise InvalidEnvelopeStateError(
            "Cannot update signer status when envelope is not ready for signing"
        )
    if signer.participant_role != ParticipantRole.SIGNER:
        raise InvalidSignerStateError("Viewers cannot sign or decline")
    if signer.status == SignerStatus.SIGNED:
        raise InvalidSignerStateError("Signer has already signed")
    if signer.status == SignerStatus.DECLINED:
        raise InvalidSignerStateError("Signer has already declined")


def mark_signer_signed(
    envelope: models.SignatureEnvelope,
    signer: models.EnvelopeSigner,
    *,
    document_hash: str,
    signature_hash: str,
    signed_s3_key: str,
    kms_key_id: str,
    algorithm: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    reason: Optional[str] = None,
    location: Optional[str] = None,
) -> None:
    _ensure_can_act(envelope, signer)

    now = models.utc_now()
    signer.status = SignerStatus.SIGNED
    signer.signed_at = now
    signer.document_hash = document_hash
    signer.signature_hash = signature_hash
    signer.signed_s3_key = signed_s3_key
    signer.kms_key_id = kms_key_id
    signer.algorithm = algorithm
    signer.ip_address = ip_address
    signer.user_agent = user_agent
    signer.reason = reason
    signer.location = location
    signer.updated_at = now

    _recompute_status(envelope, now)


def mark_signer_declined(
    envelope: models.SignatureEnvelope,
    signer: models.EnvelopeSigner,
    reason: str,
) -> None:
    _ensure_can_act(envelope, signer)

    now = models.utc_now()
    signer.status = SignerStatus.DECLINED
    signer.declined_at = now
    signer.decline_reason = reason
    signer.updated_at = now

    _recompute_status(envelope, now)


def refresh_status(envelope: models.SignatureEnvelope) -> None:
    """Re-derive the status of a sent envelope after its signer list changed."""
    if envelope.status == EnvelopeStatus.READY_FOR_SIGNATURE:
        _recompute_status(envelope, models.utc_now())


def record_consent(signer: models.EnvelopeSigner, consent_text: str) -> None:
    if not consent_text or not consent_text.strip():
        raise ConsentRequiredError("Consent text cannot be empty")
    signer.consent_given = True
    signer.consent_timestamp = models.utc_now()


def _recompute_status(envelope: models.SignatureEnvelope, now: datetime) -> None:
    signers = signing_participants(envelope)
    declined = [s for s in signers if s.status == SignerStatus.DECLINED]

    if declined:
        envelope.status = EnvelopeStatus.DECLINED
        envelope.declined_at = now
        envelope.declined_by_signer_id = declined[0].id
        envelope.declined_reason = declined[0].decline_reason
    elif signers and all(s.status == SignerStatus.SIGNED for s in signers):
        envelope.status = EnvelopeStatus.COMPLETED
        envelope.completed_at = now
    else:
        envelope.status = EnvelopeStatus.READY_FOR_SIGNATURE
    envelope.updated_at = now
