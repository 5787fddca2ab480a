# services/envelopes.py
"""
Envelope service: creation, documents, participants and lifecycle commands.

Every command commits its own transaction, so the status change, the audit
rows and the outbox rows it produced land together or not at all.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .. import models
from ..config import settings
from ..errors import (
    DocumentNotFoundError,
    EnvelopeAccessDeniedError,
    EnvelopeNotFoundError,
    InvalidEnvelopeStateError,
    InvalidSignerStateError,
    SignerEmailDuplicateError,
    SignerNotFoundError,
    ValidationError,
)
from ..models import AuditEventType, EnvelopeStatus, ParticipantRole, SignerStatus
from . import audit, invitations, lifecycle, outbox
from .audit import SecurityContext
from .pdf_signing import inspect_pdf
from .storage import DocumentStorage, source_key

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


@dataclass
class EnvelopeAccess:
    """How the caller reached the envelope."""
    envelope: models.SignatureEnvelope
    user_id: Optional[str] = None
    is_owner: bool = False
    signer: Optional[models.EnvelopeSigner] = None
    token: Optional[models.InvitationToken] = None


# Lookups

def envelope_query(db: Session, envelope_id: str, for_update: bool = False):
    query = db.query(models.SignatureEnvelope).filter(
        models.SignatureEnvelope.id == envelope_id
    )
    if for_update:
        # Holds the row until commit so signers of one envelope apply their
        # signatures one after another on the latest document version
        query = query.with_for_update().populate_existing()
    return query


def load_envelope(db: Session, envelope_id: str, for_update: bool = False) -> models.SignatureEnvelope:
    envelope = envelope_query(db, envelope_id, for_update=for_update).first()
    if not envelope:
        raise EnvelopeNotFoundError(envelope_id)
    return envelope


def load_owned_envelope(db: Session, envelope_id: str, owner_id: str) -> models.SignatureEnvelope:
    envelope = load_envelope(db, envelope_id)
    if envelope.created_by != owner_id:
        raise EnvelopeAccessDeniedError("Only the envelope owner can perform this action")
    return envelope


def find_signer(envelope: models.SignatureEnvelope, signer_id: str) -> models.EnvelopeSigner:
    for signer in envelope.signers:
        if signer.id == signer_id:
            return signer
    raise SignerNotFoundError(signer_id)


def resolve_access(
    db: Session,
    envelope: models.SignatureEnvelope,
    user_id: Optional[str] = None,
    invitation_token: Optional[str] = None,
    for_signing: bool = False,
) -> EnvelopeAccess:
    """Grant access to the owner, an internal signer, or the holder of a valid token."""
    if user_id and envelope.created_by == user_id:
        own_signer = next(
            (s for s in envelope.signers if not s.is_external and s.user_id == user_id), None
        )
        return EnvelopeAccess(envelope=envelope, user_id=user_id, is_owner=True, signer=own_signer)

    if user_id:
        for signer in envelope.signers:
            if not signer.is_external and signer.user_id == user_id:
                return EnvelopeAccess(envelope=envelope, user_id=user_id, signer=signer)

    if invitation_token:
        token = invitations.resolve_token(db, invitation_token, for_signing=for_signing)
        if token.envelope_id != envelope.id:
            raise EnvelopeAccessDeniedError("Invitation token does not belong to this envelope")
        return EnvelopeAccess(envelope=envelope, user_id=user_id, signer=token.signer, token=token)

    raise EnvelopeAccessDeniedError("You do not have access to this envelope")


# Validation helpers

def _ensure_modifiable(envelope: models.SignatureEnvelope) -> None:
    if not lifecycle.can_be_modified(envelope):
        raise InvalidEnvelopeStateError(
            f"Envelope cannot be modified in {envelope.status.value} status"
        )


def _ensure_future(expires_at: Optional[datetime]) -> Optional[datetime]:
    expires_at = models.ensure_utc(expires_at)
    if expires_at is not None and expires_at <= models.utc_now():
        raise ValidationError("Expiration date must be in the future")
    return expires_at


def _ensure_capacity(envelope: models.SignatureEnvelope, adding: int = 1) -> None:
    if len(envelope.signers) + adding > settings.MAX_PARTICIPANTS:
        raise ValidationError(
            f"An envelope can have at most {settings.MAX_PARTICIPANTS} participants"
        )


def _ensure_email_available(envelope: models.SignatureEnvelope, email: Optional[str]) -> None:
    if not email:
        return
    existing = {s.email.strip().lower() for s in envelope.signers if s.email}
    if email.strip().lower() in existing:
        raise SignerEmailDuplicateError(f"A participant with email {email} already exists")


def _next_order(envelope: models.SignatureEnvelope) -> int:
    return max((s.order for s in envelope.signers), default=0) + 1


def _new_signer(envelope: models.SignatureEnvelope, data: Dict[str, Any], invited_by: str,
                order: int, role: ParticipantRole = ParticipantRole.SIGNER) -> models.EnvelopeSigner:
    user_id = data.get("user_id")
    signer = models.EnvelopeSigner(
        id=models.new_id(),
        envelope_id=envelope.id,
        user_id=user_id,
        is_external=user_id is None,
        email=data.get("email"),
        full_name=data.get("full_name"),
        invited_by_user_id=invited_by,
        participant_role=role,
        order=data.get("order") or order,
        status=SignerStatus.PENDING,
        created_at=models.utc_now(),
    )
    if signer.is_external and not signer.email:
        raise ValidationError("External participants need an email address")
    envelope.signers.append(signer)
    return signer


# Commands

def create_envelope(
    db: Session,
    owner_id: str,
    data: Dict[str, Any],
    owner_email: Optional[str] = None,
    security_context: Optional[SecurityContext] = None,
) -> models.SignatureEnvelope:
    signers_data = data.get("signers") or []
    if len(signers_data) > settings.MAX_PARTICIPANTS:
        raise ValidationError(
            f"An envelope can have at most {settings.MAX_PARTICIPANTS} participants"
        )
    lifecycle.validate_unique_emails(s.get("email") for s in signers_data)

    now = models.utc_now()
    envelope = models.SignatureEnvelope(
        id=models.new_id(),
        created_by=owner_id,
        created_by_email=owner_email,
        title=data["title"],
        description=data.get("description"),
        status=EnvelopeStatus.DRAFT,
        expires_at=_ensure_future(data.get("expires_at")),
        created_at=now,
        updated_at=now,
    )
    if data.get("signing_order_type"):
        envelope.signing_order_type = data["signing_order_type"]
    if data.get("origin_type"):
        envelope.origin_type = data["origin_type"]
    envelope.template_id = data.get("template_id")
    envelope.template_version = data.get("template_version")
    db.add(envelope)

    for index, signer_data in enumerate(signers_data, start=1):
        _new_signer(envelope, signer_data, invited_by=owner_id, order=index)

    audit.record(
        db, envelope.id, AuditEventType.ENVELOPE_CREATED,
        f"Envelope '{envelope.title}' created",
        user_id=owner_id, user_email=owner_email,
        security_context=security_context,
        metadata={"signerCount": len(signers_data)},
    )
    db.commit()
    db.refresh(envelope)
    logger.info(f"Envelope {envelope.id} created by {owner_id} with {len(signers_data)} signer(s)")
    return envelope


def update_envelope(
    db: Session,
    envelope_id: str,
    owner_id: str,
    changes: Dict[str, Any],
    security_context: Optional[SecurityContext] = None,
) -> models.SignatureEnvelope:
    envelope = load_owned_envelope(db, envelope_id, owner_id)
    _ensure_modifiable(envelope)

    updated = []
    for field in ("title", "description", "signing_order_type"):
        if changes.get(field) is not None:
            setattr(envelope, field, changes[field])
            updated.append(field)
    if changes.get("expires_at") is not None:
        envelope.expires_at = _ensure_future(changes["expires_at"])
        updated.append("expires_at")

    if updated:
        envelope.updated_at = models.utc_now()
        audit.record(
            db, envelope.id, AuditEventType.ENVELOPE_UPDATED,
            f"Envelope updated: {', '.join(updated)}",
            user_id=owner_id, security_context=security_context,
            metadata={"fields": updated},
        )
    db.commit()
    db.refresh(envelope)
    return envelope


def attach_document(
    db: Session,
    storage: DocumentStorage,
    envelope_id: str,
    owner_id: str,
    pdf_bytes: bytes,
    filename: Optional[str] = None,
    security_context: Optional[SecurityContext] = None,
) -> models.SignatureEnvelope:
    envelope = load_owned_envelope(db, envelope_id, owner_id)
    _ensure_modifiable(envelope)
    if any(s.status == SignerStatus.SIGNED for s in envelope.signers):
        raise InvalidEnvelopeStateError("Cannot replace the document after signing started")

    info = inspect_pdf(pdf_bytes)
    key = source_key(envelope.id)
    digest = storage.put_pdf(key, pdf_bytes, metadata={"envelope-id": envelope.id})

    envelope.source_key = key
    envelope.source_sha256 = digest
    envelope.signed_key = None
    envelope.signed_sha256 = None
    envelope.updated_at = models.utc_now()

    audit.record(
        db, envelope.id, AuditEventType.DOCUMENT_ATTACHED,
        f"Document {filename or 'document.pdf'} attached ({info.page_count} page(s))",
        user_id=owner_id, security_context=security_context,
        metadata={"s3Key": key, "sha256": digest, "pageCount": info.page_count},
    )
    db.commit()
    db.refresh(envelope)
    return envelope


def add_signer(
    db: Session,
    envelope_id: str,
    owner_id: str,
    data: Dict[str, Any],
    security_context: Optional[SecurityContext] = None,
) -> models.EnvelopeSigner:
    envelope = load_owned_envelope(db, envelope_id, owner_id)
    _ensure_modifiable(envelope)
    _ensure_capacity(envelope)
    _ensure_email_available(envelope, data.get("email"))

    signer = _new_signer(envelope, data, invited_by=owner_id, order=_next_order(envelope))
    envelope.updated_at = models.utc_now()
    audit.record(
        db, envelope.id, AuditEventType.SIGNER_ADDED,
        f"Signer {signer.email or signer.user_id} added",
        user_id=owner_id, signer_id=signer.id, security_context=security_context,
    )
    db.commit()
    db.refresh(signer)
    return signer


def remove_signer(
    db: Session,
    envelope_id: str,
    signer_id: str,
    owner_id: str,
    security_context: Optional[SecurityContext] = None,
) -> None:
    envelope = load_owned_envelope(db, envelope_id, owner_id)
    _ensure_modifiable(envelope)
    signer = find_signer(envelope, signer_id)
    if signer.status == SignerStatus.SIGNED:
        raise InvalidSignerStateError("Cannot remove a signer who has already signed")

    remaining = [s for s in lifecycle.signing_participants(envelope) if s.id != signer.id]
    if envelope.status == EnvelopeStatus.READY_FOR_SIGNATURE and not remaining:
        raise InvalidEnvelopeStateError("Cannot remove the last signer of a sent envelope")

    db.query(models.InvitationToken).filter(
        models.InvitationToken.signer_id == signer.id
    ).delete(synchronize_session=False)
    db.query(models.SignerReminderTracking).filter(
        models.SignerReminderTracking.signer_id == signer.id
    ).delete(synchronize_session=False)

    envelope.signers.remove(signer)
    envelope.updated_at = models.utc_now()
    audit.record(
        db, envelope.id, AuditEventType.SIGNER_REMOVED,
        f"Signer {signer.email or signer.user_id} removed",
        user_id=owner_id, signer_id=signer.id, security_context=security_context,
    )

    # Everyone left may already have signed
    lifecycle.refresh_status(envelope)
    if envelope.status == EnvelopeStatus.COMPLETED:
        record_completion(db, envelope)
        logger.info(f"Envelope {envelope.id} completed after removing signer {signer.id}")
    db.commit()


def invitation_payload(envelope: models.SignatureEnvelope, signer: models.EnvelopeSigner,
                       raw_token: Optional[str], message: Optional[str] = None) -> Dict[str, Any]:
    expires_at = models.ensure_utc(envelope.expires_at)
    return {
        "envelopeId": envelope.id,
        "envelopeTitle": envelope.title,
        "signerId": signer.id,
        "signerEmail": signer.email,
        "signerName": signer.full_name,
        "invitationToken": raw_token,
        "ownerEmail": envelope.created_by_email,
        "message": message,
        "expiresAt": expires_at.isoformat() if expires_at else None,
    }


def send_envelope(
    db: Session,
    envelope_id: str,
    owner_id: str,
    signer_ids: Optional[List[str]] = None,
    message: Optional[str] = None,
    owner_email: Optional[str] = None,
    security_context: Optional[SecurityContext] = None,
) -> Tuple[models.SignatureEnvelope, List[models.EnvelopeSigner]]:
    """Send a draft, or re-invite pending signers of an envelope already out for signature."""
    envelope = load_owned_envelope(db, envelope_id, owner_id)
    ctx = security_context or SecurityContext()

    if lifecycle.is_expired(envelope):
        if envelope.status == EnvelopeStatus.READY_FOR_SIGNATURE:
            expire_envelope(db, envelope)
            db.commit()
            raise InvalidEnvelopeStateError("Envelope has expired")
        if envelope.status == EnvelopeStatus.DRAFT:
            raise ValidationError("Expiration date must be in the future")

    if envelope.status == EnvelopeStatus.DRAFT:
        lifecycle.send(envelope)
        audit.record(
            db, envelope.id, AuditEventType.ENVELOPE_SENT,
            f"Envelope '{envelope.title}' sent for signature",
            user_id=owner_id, user_email=owner_email, security_context=ctx,
        )
    elif envelope.status != EnvelopeStatus.READY_FOR_SIGNATURE:
        raise InvalidEnvelopeStateError(
            f"Cannot send envelope in {envelope.status.value} status"
        )

    targets = [
        s for s in lifecycle.signing_participants(envelope)
        if s.status == SignerStatus.PENDING and not lifecycle.is_owner_signer(envelope, s)
    ]
    if signer_ids:
        wanted = set(signer_ids)
        unknown = wanted - {s.id for s in envelope.signers}
        if unknown:
            raise SignerNotFoundError(sorted(unknown)[0])
        targets = [s for s in targets if s.id in wanted]

    for signer in targets:
        raw_token = None
        if signer.is_external:
            invitations.revoke_for_signer(db, signer.id, "Superseded by a new invitation")
            _, raw_token = invitations.issue_token(
                db, envelope, signer, created_by=owner_id,
                ip_address=ctx.ip_address, user_agent=ctx.user_agent, country=ctx.country,
            )
        if signer.email:
            outbox.enqueue(db, "ENVELOPE_INVITATION",
                           invitation_payload(envelope, signer, raw_token, message))
        audit.record(
            db, envelope.id, AuditEventType.SIGNER_INVITED,
            f"Signer {signer.email or signer.user_id} invited",
            user_id=owner_id, signer_id=signer.id, security_context=ctx,
        )

    db.commit()
    db.refresh(envelope)
    logger.info(f"Envelope {envelope.id} sent, {len(targets)} signer(s) invited")
    return envelope, targets


def share_document_view(
    db: Session,
    envelope_id: str,
    owner_id: str,
    email: str,
    full_name: str,
    message: Optional[str] = None,
    security_context: Optional[SecurityContext] = None,
) -> models.EnvelopeSigner:
    """Give read-only access to someone who is not a signer."""
    envelope = load_owned_envelope(db, envelope_id, owner_id)
    ctx = security_context or SecurityContext()
    if envelope.status in (EnvelopeStatus.CANCELLED, EnvelopeStatus.EXPIRED):
        raise InvalidEnvelopeStateError(
            f"Cannot share envelope in {envelope.status.value} status"
        )
    if not envelope.source_key:
        raise DocumentNotFoundError("Envelope has no document to share")
    _ensure_capacity(envelope)
    _ensure_email_available(envelope, email)

    viewer = _new_signer(
        envelope, {"email": email, "full_name": full_name}, invited_by=owner_id,
        order=_next_order(envelope), role=ParticipantRole.VIEWER,
    )
    _, raw_token = invitations.issue_token(
        db, envelope, viewer, created_by=owner_id,
        ip_address=ctx.ip_address, user_agent=ctx.user_agent, country=ctx.country,
    )
    outbox.enqueue(db, "DOCUMENT_VIEW_INVITATION", {
        "envelopeId": envelope.id,
        "envelopeTitle": envelope.title,
        "viewerEmail": email,
        "viewerName": full_name,
        "invitationToken": raw_token,
        "ownerEmail": envelope.created_by_email,
        "message": message,
    })
    audit.record(
        db, envelope.id, AuditEventType.DOCUMENT_VIEW_SHARED,
        f"Document shared with {email} for viewing",
        user_id=owner_id, signer_id=viewer.id, security_context=ctx,
    )
    db.commit()
    db.refresh(viewer)
    return viewer


def cancel_envelope(
    db: Session,
    envelope_id: str,
    owner_id: str,
    reason: Optional[str] = None,
    security_context: Optional[SecurityContext] = None,
) -> models.SignatureEnvelope:
    envelope = load_owned_envelope(db, envelope_id, owner_id)
    lifecycle.cancel(envelope)
    invitations.revoke_for_envelope(db, envelope.id, "Envelope cancelled")

    audit.record(
        db, envelope.id, AuditEventType.ENVELOPE_CANCELLED,
        f"Envelope cancelled{': ' + reason if reason else ''}",
        user_id=owner_id, security_context=security_context,
        metadata={"reason": reason} if reason else None,
    )
    for participant in envelope.signers:
        if participant.is_external and participant.email and participant.status != SignerStatus.SIGNED:
            outbox.enqueue(db, "ENVELOPE_CANCELLED", {
                "envelopeId": envelope.id,
                "envelopeTitle": envelope.title,
                "recipientEmail": participant.email,
                "recipientName": participant.full_name,
                "reason": reason,
            })

    db.commit()
    db.refresh(envelope)
    logger.info(f"Envelope {envelope.id} cancelled by {owner_id}")
    return envelope


def expire_envelope(db: Session, envelope: models.SignatureEnvelope) -> None:
    """Mark an overdue envelope EXPIRED inside the caller's transaction."""
    lifecycle.expire(envelope)
    invitations.revoke_for_envelope(db, envelope.id, "Envelope expired")
    audit.record(
        db, envelope.id, AuditEventType.ENVELOPE_EXPIRED,
        "Envelope expired before all signers signed",
    )


def record_completion(db: Session, envelope: models.SignatureEnvelope) -> None:
    """Audit row and completion notices for an envelope that just became COMPLETED."""
    audit.record(
        db, envelope.id, AuditEventType.ENVELOPE_COMPLETED,
        "All signers have signed the envelope",
        metadata={"signedKey": envelope.signed_key, "signedSha256": envelope.signed_sha256},
    )

    completed_at = models.ensure_utc(envelope.completed_at)
    recipients = {}
    if envelope.created_by_email:
        recipients[envelope.created_by_email.lower()] = (envelope.created_by_email, None)
    for participant in envelope.signers:
        if participant.email:
            recipients.setdefault(participant.email.lower(), (participant.email, participant.full_name))

    for email, name in recipients.values():
        outbox.enqueue(db, "ENVELOPE_COMPLETED", {
            "envelopeId": envelope.id,
            "envelopeTitle": envelope.title,
            "recipientEmail": email,
            "recipientName": name,
            "completedAt": completed_at.isoformat(),
        })


def expire_overdue(db: Session, now: Optional[datetime] = None) -> int:
    now = now or models.utc_now()
    overdue = db.query(models.SignatureEnvelope).filter(
        models.SignatureEnvelope.status == EnvelopeStatus.READY_FOR_SIGNATURE,
        models.SignatureEnvelope.expires_at.isnot(None),
        models.SignatureEnvelope.expires_at < now,
    ).all()

    for envelope in overdue:
        expire_envelope(db, envelope)
    db.commit()

    if overdue:
        logger.info(f"Expired {len(overdue)} overdue envelope(s)")
    return len(overdue)


# Queries

def get_envelope(
    db: Session,
    envelope_id: str,
    user_id: Optional[str] = None,
    invitation_token: Optional[str] = None,
    security_context: Optional[SecurityContext] = None,
) -> EnvelopeAccess:
    envelope = load_envelope(db, envelope_id)
    access = resolve_access(db, envelope, user_id, invitation_token)

    if access.token is not None:
        ctx = security_context or SecurityContext()
        invitations.mark_viewed(access.token, ctx.ip_address, ctx.user_agent, ctx.country)
        audit.record(
            db, envelope.id, AuditEventType.DOCUMENT_ACCESSED,
            f"Document accessed by {access.signer.email}",
            user_email=access.signer.email, signer_id=access.signer.id,
            security_context=ctx,
        )
        db.commit()
        db.refresh(envelope)
    return access


def list_envelopes(
    db: Session,
    owner_id: str,
    status: Optional[EnvelopeStatus] = None,
    skip: int = 0,
    limit: int = DEFAULT_PAGE_SIZE,
) -> Tuple[List[models.SignatureEnvelope], int]:
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")
    if skip < 0:
        raise ValidationError("Skip must not be negative")

    query = db.query(models.SignatureEnvelope).filter(
        models.SignatureEnvelope.created_by == owner_id
    )
    if status is not None:
        query = query.filter(models.SignatureEnvelope.status == status)

    total = query.count()
    items = query.order_by(
        models.SignatureEnvelope.created_at.desc()
    ).offset(skip).limit(limit).all()
    return items, total


def get_download_url(
    db: Session,
    storage: DocumentStorage,
    envelope_id: str,
    user_id: Optional[str] = None,
    invitation_token: Optional[str] = None,
    security_context: Optional[SecurityContext] = None,
) -> Dict[str, Any]:
    envelope = load_envelope(db, envelope_id)
    access = resolve_access(db, envelope, user_id, invitation_token)

    key = envelope.signed_key or envelope.source_key
    if not key:
        raise DocumentNotFoundError("Envelope has no document yet")

    url = storage.presigned_get_url(key)
    audit.record(
        db, envelope.id, AuditEventType.DOCUMENT_DOWNLOADED,
        "Signed document downloaded" if envelope.signed_key else "Source document downloaded",
        user_id=user_id,
        user_email=access.signer.email if access.signer else None,
        signer_id=access.signer.id if access.signer else None,
        security_context=security_context,
        metadata={"s3Key": key},
    )
    db.commit()
    return {
        "download_url": url,
        "key": key,
        "signed": envelope.signed_key is not None,
        "expires_in": settings.DOWNLOAD_URL_TTL_SECONDS,
    }


def get_audit_trail(db: Session, envelope_id: str, owner_id: str) -> List[models.SignatureAuditEvent]:
    envelope = load_owned_envelope(db, envelope_id, owner_id)
    return audit.trail(db, envelope.id)
