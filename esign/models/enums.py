# models/enums.py
"""Status and type enumerations shared by the models and services."""

import enum


class EnvelopeStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    READY_FOR_SIGNATURE = "READY_FOR_SIGNATURE"
    COMPLETED = "COMPLETED"
    DECLINED = "DECLINED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


FINAL_ENVELOPE_STATUSES = frozenset({
    EnvelopeStatus.COMPLETED,
    EnvelopeStatus.DECLINED,
    EnvelopeStatus.CANCELLED,
    EnvelopeStatus.EXPIRED,
})


class SignerStatus(str, enum.Enum):
    PENDING = "PENDING"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"


class SigningOrderType(str, enum.Enum):
    OWNER_FIRST = "OWNER_FIRST"
    INVITEES_FIRST = "INVITEES_FIRST"


class ParticipantRole(str, enum.Enum):
    SIGNER = "SIGNER"
    VIEWER = "VIEWER"


class DocumentOriginType(str, enum.Enum):
    USER_UPLOAD = "USER_UPLOAD"
    TEMPLATE = "TEMPLATE"


class InvitationTokenStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    VIEWED = "VIEWED"
    SIGNED = "SIGNED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class OutboxStatus(str, enum.Enum):
    PENDING = "PENDING"
    DISPATCHED = "DISPATCHED"
    FAILED = "FAILED"


class NotificationChannel(str, enum.Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"


class RecipientType(str, enum.Enum):
    EMAIL = "EMAIL"
    PHONE = "PHONE"


class NotificationStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    BOUNCED = "BOUNCED"


class AuditEventType(str, enum.Enum):
    ENVELOPE_CREATED = "ENVELOPE_CREATED"
    ENVELOPE_UPDATED = "ENVELOPE_UPDATED"
    ENVELOPE_SENT = "ENVELOPE_SENT"
    ENVELOPE_COMPLETED = "ENVELOPE_COMPLETED"
    ENVELOPE_DECLINED = "ENVELOPE_DECLINED"
    ENVELOPE_CANCELLED = "ENVELOPE_CANCELLED"
    ENVELOPE_EXPIRED = "ENVELOPE_EXPIRED"
    DOCUMENT_ATTACHED = "DOCUMENT_ATTACHED"
    DOCUMENT_ACCESSED = "DOCUMENT_ACCESSED"
    DOCUMENT_DOWNLOADED = "DOCUMENT_DOWNLOADED"
    DOCUMENT_VIEW_SHARED = "DOCUMENT_VIEW_SHARED"
    SIGNER_ADDED = "SIGNER_ADDED"
    SIGNER_REMOVED = "SIGNER_REMOVED"
    SIGNER_INVITED = "SIGNER_INVITED"
    SIGNER_SIGNED = "SIGNER_SIGNED"
    SIGNER_DECLINED = "SIGNER_DECLINED"
    SIGNER_REMINDER_SENT = "SIGNER_REMINDER_SENT"
    CONSENT_GIVEN = "CONSENT_GIVEN"
