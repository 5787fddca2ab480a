# services/signing.py
"""
Signing and declining.

sign_document runs the whole signing sequence for one signer: access and
flow checks, consent capture, KMS-backed PDF signature, upload of the new
document version, and the database updates that go with it. The database
changes are committed in one transaction at the end.

Both commands lock the envelope row first, so a second signer waits and then
signs the version the first one produced.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from .. import models
from ..errors import (
    ConsentRequiredError,
    DocumentNotFoundError,
    EnvelopeAccessDeniedError,
    InvalidEnvelopeStateError,
    InvalidSignerStateError,
)
from ..models import AuditEventType, EnvelopeStatus, ParticipantRole, SignerStatus
from . import audit, invitations, lifecycle, outbox
from .audit import SecurityContext
from .envelopes import (
    EnvelopeAccess,
    expire_envelope,
    find_signer,
    load_envelope,
    record_completion,
    resolve_access,
)
from .kms import KmsSigningService, certificate_subject
from .pdf_signing import KmsPdfSigner, embed_signature, signature_field_name
from .storage import DocumentStorage, sha256_hex, signed_key

logger = logging.getLogger(__name__)


@dataclass
class SignResult:
    envelope: models.SignatureEnvelope
    signer: models.EnvelopeSigner
    signed_key: str
    document_hash: str
    signature_hash: str
    completed: bool


def _authorize_signer(access: EnvelopeAccess, signer: models.EnvelopeSigner) -> None:
    """Callers may only act for themselves."""
    if access.token is not None:
        if access.token.signer_id != signer.id:
            raise EnvelopeAccessDeniedError("Invitation token does not belong to this signer")
        return
    if signer.is_external or signer.user_id != access.user_id:
        raise EnvelopeAccessDeniedError("You can only sign or decline as yourself")


def _ensure_open(db: Session, envelope: models.SignatureEnvelope) -> None:
    if envelope.status == EnvelopeStatus.READY_FOR_SIGNATURE and lifecycle.is_expired(envelope):
        expire_envelope(db, envelope)
        db.commit()
        raise InvalidEnvelopeStateError("Envelope has expired")
    if envelope.status != EnvelopeStatus.READY_FOR_SIGNATURE:
        raise InvalidEnvelopeStateError(
            f"Envelope is not ready for signing (status {envelope.status.value})"
        )


def _ensure_pending_signer(signer: models.EnvelopeSigner) -> None:
    if signer.participant_role != ParticipantRole.SIGNER:
        raise InvalidSignerStateError("Viewers cannot sign or decline")
    if signer.status != SignerStatus.PENDING:
        raise InvalidSignerStateError(f"Signer has already {signer.status.value.lower()}")


def sign_document(
    db: Session,
    storage: DocumentStorage,
    kms: KmsSigningService,
    envelope_id: str,
    signer_id: str,
    consent_given: bool,
    consent_text: str,
    reason: Optional[str] = None,
    location: Optional[str] = None,
    user_id: Optional[str] = None,
    invitation_token: Optional[str] = None,
    security_context: Optional[SecurityContext] = None,
) -> SignResult:
    ctx = security_context or SecurityContext()

    # 1. Access
    envelope = load_envelope(db, envelope_id, for_update=True)
    access = resolve_access(db, envelope, user_id, invitation_token, for_signing=True)
    signer = find_signer(envelope, signer_id)
    _authorize_signer(access, signer)

    # 2. Flow validation
    _ensure_open(db, envelope)
    _ensure_pending_signer(signer)
    lifecycle.validate_signing_order(envelope, signer)
    if not consent_given:
        raise ConsentRequiredError("Consent is required before signing")

    # 3. Consent
    lifecycle.record_consent(signer, consent_text)
    consent = models.Consent(
        envelope_id=envelope.id,
        signer_id=signer.id,
        consent_given=True,
        consent_timestamp=signer.consent_timestamp,
        consent_text=consent_text,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        country=ctx.country,
    )
    db.add(consent)

    # 4. Current document version
    current_key = envelope.signed_key or envelope.source_key
    if not current_key:
        raise DocumentNotFoundError("Envelope has no document to sign")
    pdf_bytes = storage.get_pdf(current_key)
    document_hash = sha256_hex(pdf_bytes)

    # 5. Signature
    certificate = kms.build_certificate(certificate_subject(signer.full_name, signer.email))
    signed_pdf = embed_signature(
        pdf_bytes,
        KmsPdfSigner(kms, certificate),
        field_name=signature_field_name(signer.id),
        reason=reason,
        location=location,
        signer_name=signer.full_name,
    )

    # 6. Upload
    key = signed_key(envelope.id, signer.id)
    signature_hash = storage.put_pdf(key, signed_pdf, metadata={
        "envelope-id": envelope.id,
        "signer-id": signer.id,
    })

    # 7-10. Signer, consent, token and envelope
    lifecycle.mark_signer_signed(
        envelope, signer,
        document_hash=document_hash,
        signature_hash=signature_hash,
        signed_s3_key=key,
        kms_key_id=kms.key_id,
        algorithm=kms.algorithm,
        ip_address=ctx.ip_address or None,
        user_agent=ctx.user_agent or None,
        reason=reason,
        location=location,
    )
    consent.signature_id = signer.id
    if access.token is not None:
        invitations.mark_signed(access.token, signer.id)
    envelope.signed_key = key
    envelope.signed_sha256 = signature_hash

    # 11. Audit and owner notification
    audit.record(
        db, envelope.id, AuditEventType.CONSENT_GIVEN,
        f"Consent given by {signer.email or signer.user_id}",
        user_id=signer.user_id, user_email=signer.email, signer_id=signer.id,
        security_context=ctx,
    )
    audit.record(
        db, envelope.id, AuditEventType.SIGNER_SIGNED,
        f"Document signed by {signer.full_name or signer.email or signer.user_id}",
        user_id=signer.user_id, user_email=signer.email, signer_id=signer.id,
        security_context=ctx,
        metadata={
            "documentHash": document_hash,
            "signatureHash": signature_hash,
            "kmsKeyId": kms.key_id,
            "algorithm": kms.algorithm,
            "s3Key": key,
        },
    )
    signed_at = models.ensure_utc(signer.signed_at)
    if envelope.created_by_email and not lifecycle.is_owner_signer(envelope, signer):
        outbox.enqueue(db, "DOCUMENT_SIGNED", {
            "envelopeId": envelope.id,
            "envelopeTitle": envelope.title,
            "ownerId": envelope.created_by,
            "ownerEmail": envelope.created_by_email,
            "signerId": signer.id,
            "signerName": signer.full_name,
            "signerEmail": signer.email,
            "signedAt": signed_at.isoformat(),
        })

    # 12. Completion
    completed = envelope.status == EnvelopeStatus.COMPLETED
    if completed:
        record_completion(db, envelope)

    db.commit()
    db.refresh(envelope)
    logger.info(f"Signer {signer.id} signed envelope {envelope.id} (completed={completed})")
    return SignResult(
        envelope=envelope,
        signer=signer,
        signed_key=key,
        document_hash=document_hash,
        signature_hash=signature_hash,
        completed=completed,
    )


def decline_signer(
    db: Session,
    envelope_id: str,
    signer_id: str,
    reason: str,
    user_id: Optional[str] = None,
    invitation_token: Optional[str] = None,
    security_context: Optional[SecurityContext] = None,
) -> models.SignatureEnvelope:
    envelope = load_envelope(db, envelope_id, for_update=True)
    access = resolve_access(db, envelope, user_id, invitation_token, for_signing=True)
    signer = find_signer(envelope, signer_id)
    _authorize_signer(access, signer)
    _ensure_open(db, envelope)
    _ensure_pending_signer(signer)

    lifecycle.mark_signer_declined(envelope, signer, reason)
    invitations.revoke_for_signer(db, signer.id, "Signer declined")

    audit.record(
        db, envelope.id, AuditEventType.SIGNER_DECLINED,
        f"Signer {signer.email or signer.user_id} declined: {reason}",
        user_id=signer.user_id, user_email=signer.email, signer_id=signer.id,
        security_context=security_context, metadata={"reason": reason},
    )
    audit.record(
        db, envelope.id, AuditEventType.ENVELOPE_DECLINED,
        "Envelope declined",
        signer_id=signer.id, security_context=security_context,
    )
    if envelope.created_by_email:
        outbox.enqueue(db, "SIGNER_DECLINED", {
            "envelopeId": envelope.id,
            "envelopeTitle": envelope.title,
            "ownerId": envelope.created_by,
            "ownerEmail": envelope.created_by_email,
            "signerId": signer.id,
            "signerName": signer.full_name,
            "signerEmail": signer.email,
            "declineReason": reason,
        })

    db.commit()
    db.refresh(envelope)
    logger.info(f"Signer {signer.id} declined envelope {envelope.id}")
    return envelope
