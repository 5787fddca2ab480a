# notifications/processor.py
"""
Notification processing: idempotency, persistence and delivery.

Every message produced by a strategy is stored as a Notification row before
it is sent. The rows double as the idempotency record for the event id, with
a unique (event_id, channel, recipient) constraint behind the lookup.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..config import settings
from ..errors import EventAlreadyProcessedError, InvalidNotificationStateError, SignatureServiceError
from ..models import NotificationStatus
from .delivery import NotificationDelivery
from .events import NotificationEvent
from .strategies import build_requests

logger = logging.getLogger(__name__)


def mark_sent(notification: models.Notification, provider_message_id: Optional[str]) -> None:
    if notification.status != NotificationStatus.PENDING:
        raise InvalidNotificationStateError(
            f"Cannot mark {notification.status.value} notification as sent"
        )
    notification.status = NotificationStatus.SENT
    notification.sent_at = models.utc_now()
    notification.provider_message_id = provider_message_id
    notification.error_message = None
    notification.error_code = None


def mark_failed(notification: models.Notification, message: str, code: Optional[str] = None) -> None:
    if notification.status == NotificationStatus.DELIVERED:
        raise InvalidNotificationStateError("Cannot mark a delivered notification as failed")
    notification.status = NotificationStatus.FAILED
    notification.failed_at = models.utc_now()
    notification.error_message = message
    notification.error_code = code


def can_retry(notification: models.Notification) -> bool:
    return (
        notification.status == NotificationStatus.FAILED
        and (notification.retry_count or 0) < (notification.max_retries or 0)
    )


def is_processed(db: Session, event_id: str) -> bool:
    return db.query(models.Notification.id).filter(
        models.Notification.event_id == event_id
    ).first() is not None


def _deliver(notification: models.Notification, delivery: NotificationDelivery) -> Optional[str]:
    """Send one notification. Returns the error message when delivery failed."""
    try:
        message_id = delivery.send(
            notification.channel, notification.recipient, notification.body, notification.subject,
        )
    except SignatureServiceError as e:
        mark_failed(notification, e.message, e.code)
        logger.warning(f"Notification {notification.id} to {notification.recipient} failed: {e.message}")
        return e.message
    mark_sent(notification, message_id)
    return None


def process_event(db: Session, event: NotificationEvent, delivery: NotificationDelivery) -> Dict[str, Any]:
    if is_processed(db, event.event_id):
        raise EventAlreadyProcessedError(f"Event {event.event_id} was already processed")

    requests = build_requests(event)
    notifications = []
    for request in requests:
        notification = models.Notification(
            id=models.new_id(),
            event_id=event.event_id,
            event_type=event.event_type,
            source=event.source,
            channel=request.channel,
            recipient=request.recipient,
            recipient_type=request.recipient_type,
            status=NotificationStatus.PENDING,
            subject=request.subject,
            body=request.body,
            notification_metadata=request.metadata,
            retry_count=0,
            max_retries=settings.NOTIFICATION_MAX_RETRIES,
            user_id=request.user_id,
            envelope_id=request.envelope_id,
            signer_id=request.signer_id,
        )
        db.add(notification)
        notifications.append(notification)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event stored its rows first
        db.rollback()
        raise EventAlreadyProcessedError(f"Event {event.event_id} was already processed")

    result: Dict[str, Any] = {"email_sent": 0, "sms_sent": 0, "failed": 0, "errors": []}
    for notification in notifications:
        error = _deliver(notification, delivery)
        if error:
            result["failed"] += 1
            result["errors"].append({"recipient": notification.recipient, "error": error})
        else:
            result[f"{notification.channel.value.lower()}_sent"] += 1
    db.commit()

    logger.info(
        f"Processed {event.source}/{event.event_type} ({event.event_id}): "
        f"{result['email_sent']} email, {result['sms_sent']} sms, {result['failed']} failed"
    )
    return result


def retry_failed(db: Session, delivery: NotificationDelivery, limit: int = 50) -> Dict[str, int]:
    """Resend FAILED rows, and PENDING rows whose sending invocation never finished."""
    stale_before = models.utc_now() - timedelta(minutes=settings.NOTIFICATION_PENDING_STALE_MINUTES)
    failed = db.query(models.Notification).filter(
        or_(
            models.Notification.status == NotificationStatus.FAILED,
            and_(
                models.Notification.status == NotificationStatus.PENDING,
                models.Notification.created_at < stale_before,
            ),
        ),
        models.Notification.retry_count < models.Notification.max_retries,
    ).order_by(models.Notification.created_at).limit(limit).all()

    resent = still_failing = 0
    for notification in failed:
        notification.retry_count = (notification.retry_count or 0) + 1
        notification.status = NotificationStatus.PENDING
        if _deliver(notification, delivery):
            still_failing += 1
        else:
            resent += 1
    db.commit()

    if failed:
        logger.info(f"Retried {len(failed)} notification(s): {resent} sent, {still_failing} failed")
    return {"retried": len(failed), "sent": resent, "failed": still_failing}
