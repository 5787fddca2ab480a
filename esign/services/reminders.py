# services/reminders.py
"""Manual reminders for external signers who have not signed yet."""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .. import models
from ..config import settings
from ..errors import InvalidEnvelopeStateError
from ..models import AuditEventType, EnvelopeStatus, SignerStatus
from . import audit, invitations, lifecycle, outbox
from .audit import SecurityContext
from .envelopes import invitation_payload, load_owned_envelope

logger = logging.getLogger(__name__)


def _tracking(db: Session, envelope_id: str, signer_id: str) -> models.SignerReminderTracking:
    tracking = db.query(models.SignerReminderTracking).filter(
        models.SignerReminderTracking.envelope_id == envelope_id,
        models.SignerReminderTracking.signer_id == signer_id,
    ).first()
    if tracking is None:
        tracking = models.SignerReminderTracking(
            envelope_id=envelope_id, signer_id=signer_id, reminder_count=0,
        )
        db.add(tracking)
    return tracking


def reminder_block_reason(tracking: models.SignerReminderTracking, now=None) -> Optional[str]:
    """Why a reminder cannot go out right now, or None when it can."""
    now = now or models.utc_now()
    if (tracking.reminder_count or 0) >= settings.MAX_REMINDERS_PER_SIGNER:
        return f"Maximum of {settings.MAX_REMINDERS_PER_SIGNER} reminders reached"
    last = models.ensure_utc(tracking.last_reminder_at)
    if last and now - last < timedelta(hours=settings.MIN_HOURS_BETWEEN_REMINDERS):
        return f"Last reminder sent less than {settings.MIN_HOURS_BETWEEN_REMINDERS} hours ago"
    return None


def send_reminders(
    db: Session,
    envelope_id: str,
    owner_id: str,
    signer_ids: Optional[List[str]] = None,
    message: Optional[str] = None,
    security_context: Optional[SecurityContext] = None,
) -> Dict[str, Any]:
    envelope = load_owned_envelope(db, envelope_id, owner_id)
    ctx = security_context or SecurityContext()
    if envelope.status != EnvelopeStatus.READY_FOR_SIGNATURE:
        raise InvalidEnvelopeStateError("Reminders can only be sent for envelopes awaiting signatures")

    candidates = [
        s for s in lifecycle.signing_participants(envelope)
        if s.status == SignerStatus.PENDING and s.is_external
    ]
    skipped = []
    if signer_ids:
        candidate_ids = {s.id for s in candidates}
        for signer_id in signer_ids:
            if signer_id not in candidate_ids:
                skipped.append({"id": signer_id, "email": None,
                                "reason": "Signer not found or not pending"})
        candidates = [s for s in candidates if s.id in set(signer_ids)]

    now = models.utc_now()
    notified = []
    for signer in candidates:
        tracking = _tracking(db, envelope.id, signer.id)
        blocked = reminder_block_reason(tracking, now)
        if blocked:
            skipped.append({"id": signer.id, "email": signer.email, "reason": blocked})
            continue

        invitations.revoke_for_signer(db, signer.id, "Superseded by reminder")
        _, raw_token = invitations.issue_token(
            db, envelope, signer, created_by=owner_id,
            ip_address=ctx.ip_address, user_agent=ctx.user_agent, country=ctx.country,
        )
        tracking.reminder_count = (tracking.reminder_count or 0) + 1
        tracking.last_reminder_at = now
        tracking.last_reminder_message = message

        payload = invitation_payload(envelope, signer, raw_token, message)
        payload["reminderCount"] = tracking.reminder_count
        outbox.enqueue(db, "REMINDER_NOTIFICATION", payload)
        audit.record(
            db, envelope.id, AuditEventType.SIGNER_REMINDER_SENT,
            f"Reminder {tracking.reminder_count} sent to {signer.email}",
            user_id=owner_id, signer_id=signer.id, security_context=ctx,
            metadata={"reminderCount": tracking.reminder_count},
        )
        notified.append(signer.id)

    db.commit()
    logger.info(f"Sent {len(notified)} reminder(s) for envelope {envelope.id}, skipped {len(skipped)}")
    return {
        "reminders_sent": len(notified),
        "signers_notified": notified,
        "skipped_signers": skipped,
    }
