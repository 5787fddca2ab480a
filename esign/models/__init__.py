from .enums import (
    EnvelopeStatus,
    FINAL_ENVELOPE_STATUSES,
    SignerStatus,
    SigningOrderType,
    ParticipantRole,
    DocumentOriginType,
    InvitationTokenStatus,
    OutboxStatus,
    NotificationChannel,
    RecipientType,
    NotificationStatus,
    AuditEventType,
)
from .envelope import (
    utc_now,
    ensure_utc,
    new_id,
    SignatureEnvelope,
    EnvelopeSigner,
    Consent,
    InvitationToken,
    SignatureAuditEvent,
    SignerReminderTracking,
)
from .outbox import OutboxEvent
from .notification import Notification
