# models/envelope.py
"""SQLAlchemy models for envelopes, signers and their signing records."""

import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Text, Integer, Boolean, DateTime, ForeignKey, JSON, Enum,
)
from sqlalchemy.orm import relationship
from ..database import Base
from .enums import (
    EnvelopeStatus, SignerStatus, SigningOrderType, ParticipantRole,
    DocumentOriginType, InvitationTokenStatus,
)


def utc_now():
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def ensure_utc(value):
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id():
    return str(uuid.uuid4())


def _enum(enum_cls):
    return Enum(enum_cls, native_enum=False, length=32)


class SignatureEnvelope(Base):
    """A document plus the ordered set of people who must sign it."""
    __tablename__ = "signature_envelopes"

    id = Column(String(36), primary_key=True, default=new_id)
    created_by = Column(String(64), nullable=False, index=True)  # Owner user id
    created_by_email = Column(String(320), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(_enum(EnvelopeStatus), nullable=False, default=EnvelopeStatus.DRAFT, index=True)
    signing_order_type = Column(_enum(SigningOrderType), nullable=False, default=SigningOrderType.OWNER_FIRST)
    origin_type = Column(_enum(DocumentOriginType), nullable=False, default=DocumentOriginType.USER_UPLOAD)
    template_id = Column(String(128), nullable=True)
    template_version = Column(String(64), nullable=True)

    # S3 document keys
    source_key = Column(String(512), nullable=True)
    meta_key = Column(String(512), nullable=True)
    flattened_key = Column(String(512), nullable=True)
    signed_key = Column(String(512), nullable=True)

    # Content integrity hashes (hex SHA-256)
    source_sha256 = Column(String(64), nullable=True)
    flattened_sha256 = Column(String(64), nullable=True)
    signed_sha256 = Column(String(64), nullable=True)

    sent_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    declined_at = Column(DateTime(timezone=True), nullable=True)
    declined_by_signer_id = Column(String(36), nullable=True)
    declined_reason = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    signers = relationship(
        "EnvelopeSigner",
        back_populates="envelope",
        cascade="all, delete-orphan",
        order_by="EnvelopeSigner.order",
    )
    audit_events = relationship(
        "SignatureAuditEvent",
        back_populates="envelope",
        cascade="all, delete-orphan",
        order_by="SignatureAuditEvent.created_at",
    )


class EnvelopeSigner(Base):
    """A participant of an envelope: a signer, or a viewer the document was shared with."""
    __tablename__ = "envelope_signers"

    id = Column(String(36), primary_key=True, default=new_id)
    envelope_id = Column(String(36), ForeignKey("signature_envelopes.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=True, index=True)  # Set for internal users
    is_external = Column(Boolean, nullable=False, default=False)
    email = Column(String(320), nullable=True)
    full_name = Column(String(255), nullable=True)
    invited_by_user_id = Column(String(64), nullable=True)
    participant_role = Column(_enum(ParticipantRole), nullable=False, default=ParticipantRole.SIGNER)
    order = Column(Integer, nullable=False, default=1)
    status = Column(_enum(SignerStatus), nullable=False, default=SignerStatus.PENDING)
    signed_at = Column(DateTime(timezone=True), nullable=True)
    declined_at = Column(DateTime(timezone=True), nullable=True)
    decline_reason = Column(Text, nullable=True)
    consent_given = Column(Boolean, default=False)
    consent_timestamp = Column(DateTime(timezone=True), nullable=True)

    # Cryptographic signature data
    document_hash = Column(String(64), nullable=True)
    signature_hash = Column(Text, nullable=True)
    signed_s3_key = Column(String(512), nullable=True)
    kms_key_id = Column(String(256), nullable=True)
    algorithm = Column(String(64), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    envelope = relationship("SignatureEnvelope", back_populates="signers")


class Consent(Base):
    """Electronic-records consent captured right before a signature."""
    __tablename__ = "consents"

    id = Column(String(36), primary_key=True, default=new_id)
    envelope_id = Column(String(36), ForeignKey("signature_envelopes.id"), nullable=False, index=True)
    signer_id = Column(String(36), ForeignKey("envelope_signers.id"), nullable=False, index=True)
    signature_id = Column(String(36), nullable=True)
    consent_given = Column(Boolean, nullable=False)
    consent_timestamp = Column(DateTime(timezone=True), nullable=False)
    consent_text = Column(Text, nullable=False)
    ip_address = Column(String(64), nullable=False, default="")
    user_agent = Column(Text, nullable=False, default="")
    country = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class InvitationToken(Base):
    """Signing link credential for an external participant. Only the hash is stored."""
    __tablename__ = "invitation_tokens"

    id = Column(String(36), primary_key=True, default=new_id)
    envelope_id = Column(String(36), ForeignKey("signature_envelopes.id"), nullable=False, index=True)
    signer_id = Column(String(36), ForeignKey("envelope_signers.id"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    status = Column(_enum(InvitationTokenStatus), nullable=False, default=InvitationTokenStatus.ACTIVE)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    last_sent_at = Column(DateTime(timezone=True), nullable=True)
    resend_count = Column(Integer, nullable=False, default=0)
    view_count = Column(Integer, nullable=False, default=0)
    last_viewed_at = Column(DateTime(timezone=True), nullable=True)
    signed_at = Column(DateTime(timezone=True), nullable=True)
    signed_by = Column(String(36), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_reason = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    country = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    signer = relationship("EnvelopeSigner")


class SignatureAuditEvent(Base):
    """Append-only audit trail entry for an envelope."""
    __tablename__ = "signature_audit_events"

    id = Column(String(36), primary_key=True, default=new_id)
    envelope_id = Column(String(36), ForeignKey("signature_envelopes.id"), nullable=False, index=True)
    signer_id = Column(String(36), nullable=True)
    event_type = Column(String(64), nullable=False)
    description = Column(Text, nullable=False)
    user_id = Column(String(64), nullable=True)
    user_email = Column(String(320), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    country = Column(String(64), nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)

    envelope = relationship("SignatureEnvelope", back_populates="audit_events")


class SignerReminderTracking(Base):
    """How many reminders a signer received for an envelope, and when the last one went out."""
    __tablename__ = "signer_reminder_tracking"

    id = Column(String(36), primary_key=True, default=new_id)
    signer_id = Column(String(36), ForeignKey("envelope_signers.id"), nullable=False, index=True)
    envelope_id = Column(String(36), ForeignKey("signature_envelopes.id"), nullable=False, index=True)
    last_reminder_at = Column(DateTime(timezone=True), nullable=True)
    reminder_count = Column(Integer, nullable=False, default=0)
    last_reminder_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
