# notifications/strategies.py
"""
One function per (source, event type) pair.

Each strategy validates the payload it needs and returns the messages to
deliver. Message bodies are plain text.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import settings
from ..errors import EventValidationError, UnknownEventError
from ..models import NotificationChannel, RecipientType
from .events import NotificationEvent

logger = logging.getLogger(__name__)

SIGNATURE_SERVICE = "signature-service"
AUTH_SERVICE = "auth-service"


@dataclass
class NotificationRequest:
    channel: NotificationChannel
    recipient: str
    recipient_type: RecipientType
    body: str
    subject: Optional[str] = None
    user_id: Optional[str] = None
    envelope_id: Optional[str] = None
    signer_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def _require(payload: Dict[str, Any], *names: str) -> None:
    missing = [name for name in names if not payload.get(name)]
    if missing:
        raise EventValidationError(f"Event payload is missing {', '.join(missing)}")


def signing_link(envelope_id: str, token: Optional[str] = None) -> str:
    base = settings.SIGNING_APP_URL.rstrip("/")
    if token:
        return f"{base}/sign/{envelope_id}?token={token}"
    return f"{base}/sign/{envelope_id}"


def envelope_link(envelope_id: str) -> str:
    return f"{settings.SIGNING_APP_URL.rstrip('/')}/envelopes/{envelope_id}"


def _greeting(name: Optional[str]) -> str:
    return f"Hello {name}," if name else "Hello,"


def _email(recipient: str, subject: str, body: str, payload: Dict[str, Any],
           signer_id: Optional[str] = None, user_id: Optional[str] = None) -> NotificationRequest:
    return NotificationRequest(
        channel=NotificationChannel.EMAIL,
        recipient=recipient,
        recipient_type=RecipientType.EMAIL,
        subject=subject,
        body=body,
        envelope_id=payload.get("envelopeId"),
        signer_id=signer_id,
        user_id=user_id,
    )


def _personal_message(payload: Dict[str, Any]) -> str:
    message = payload.get("message")
    return f"\nMessage from the sender:\n{message}\n" if message else ""


def envelope_invitation(event: NotificationEvent) -> List[NotificationRequest]:
    p = event.payload
    _require(p, "envelopeId", "envelopeTitle", "signerEmail")
    body = (
        f"{_greeting(p.get('signerName'))}\n\n"
        f"You have been asked to sign \"{p['envelopeTitle']}\".\n"
        f"{_personal_message(p)}\n"
        f"Review and sign the document here:\n{signing_link(p['envelopeId'], p.get('invitationToken'))}\n"
    )
    if p.get("expiresAt"):
        body += f"\nThis invitation expires on {p['expiresAt']}.\n"
    return [_email(p["signerEmail"], f"Signature requested: {p['envelopeTitle']}", body, p,
                   signer_id=p.get("signerId"))]


def document_view_invitation(event: NotificationEvent) -> List[NotificationRequest]:
    p = event.payload
    _require(p, "envelopeId", "envelopeTitle", "viewerEmail", "invitationToken")
    body = (
        f"{_greeting(p.get('viewerName'))}\n\n"
        f"A document has been shared with you: \"{p['envelopeTitle']}\".\n"
        f"{_personal_message(p)}\n"
        f"View it here:\n{signing_link(p['envelopeId'], p['invitationToken'])}\n"
    )
    return [_email(p["viewerEmail"], f"Document shared with you: {p['envelopeTitle']}", body, p)]


def reminder_notification(event: NotificationEvent) -> List[NotificationRequest]:
    p = event.payload
    _require(p, "envelopeId", "envelopeTitle", "signerEmail", "invitationToken")
    body = (
        f"{_greeting(p.get('signerName'))}\n\n"
        f"This is a reminder that \"{p['envelopeTitle']}\" is still waiting for your signature.\n"
        f"{_personal_message(p)}\n"
        f"Sign the document here:\n{signing_link(p['envelopeId'], p['invitationToken'])}\n"
    )
    return [_email(p["signerEmail"], f"Reminder: please sign {p['envelopeTitle']}", body, p,
                   signer_id=p.get("signerId"))]


def signer_declined(event: NotificationEvent) -> List[NotificationRequest]:
    p = event.payload
    _require(p, "envelopeId", "envelopeTitle", "ownerEmail")
    who = p.get("signerName") or p.get("signerEmail") or "A signer"
    body = (
        f"Hello,\n\n"
        f"{who} declined to sign \"{p['envelopeTitle']}\".\n"
        f"Reason: {p.get('declineReason') or 'not given'}\n\n"
        f"Details: {envelope_link(p['envelopeId'])}\n"
    )
    return [_email(p["ownerEmail"], f"Signature declined: {p['envelopeTitle']}", body, p,
                   signer_id=p.get("signerId"), user_id=p.get("ownerId"))]


def envelope_cancelled(event: NotificationEvent) -> List[NotificationRequest]:
    p = event.payload
    _require(p, "envelopeId", "envelopeTitle", "recipientEmail")
    body = (
        f"{_greeting(p.get('recipientName'))}\n\n"
        f"The signature request for \"{p['envelopeTitle']}\" has been cancelled by the sender.\n"
    )
    if p.get("reason"):
        body += f"Reason: {p['reason']}\n"
    body += "\nNo further action is needed.\n"
    return [_email(p["recipientEmail"], f"Signature request cancelled: {p['envelopeTitle']}", body, p)]


def document_signed(event: NotificationEvent) -> List[NotificationRequest]:
    p = event.payload
    _require(p, "envelopeId", "envelopeTitle", "ownerEmail")
    who = p.get("signerName") or p.get("signerEmail") or "A signer"
    body = (
        f"Hello,\n\n"
        f"{who} signed \"{p['envelopeTitle']}\".\n\n"
        f"Track progress here: {envelope_link(p['envelopeId'])}\n"
    )
    return [_email(p["ownerEmail"], f"{who} signed {p['envelopeTitle']}", body, p,
                   signer_id=p.get("signerId"), user_id=p.get("ownerId"))]


def envelope_completed(event: NotificationEvent) -> List[NotificationRequest]:
    p = event.payload
    _require(p, "envelopeId", "envelopeTitle", "recipientEmail")
    body = (
        f"{_greeting(p.get('recipientName'))}\n\n"
        f"All parties have signed \"{p['envelopeTitle']}\".\n\n"
        f"Download the completed document here: {envelope_link(p['envelopeId'])}\n"
    )
    return [_email(p["recipientEmail"], f"Completed: {p['envelopeTitle']}", body, p)]


def user_registered(event: NotificationEvent) -> List[NotificationRequest]:
    p = event.payload
    _require(p, "email")
    name = p.get("name") or p.get("fullName")
    requests = [NotificationRequest(
        channel=NotificationChannel.EMAIL,
        recipient=p["email"],
        recipient_type=RecipientType.EMAIL,
        subject="Welcome to eSign",
        body=(
            f"{_greeting(name)}\n\n"
            f"Your account is ready. You can now send documents for signature "
            f"at {settings.SIGNING_APP_URL.rstrip('/')}.\n"
        ),
        user_id=p.get("userId"),
    )]
    if p.get("phoneNumber"):
        requests.append(NotificationRequest(
            channel=NotificationChannel.SMS,
            recipient=p["phoneNumber"],
            recipient_type=RecipientType.PHONE,
            body="Welcome to eSign! Your account is ready.",
            user_id=p.get("userId"),
        ))
    return requests


Strategy = Callable[[NotificationEvent], List[NotificationRequest]]

STRATEGIES: Dict[Tuple[str, str], Strategy] = {
    (SIGNATURE_SERVICE, "ENVELOPE_INVITATION"): envelope_invitation,
    (SIGNATURE_SERVICE, "DOCUMENT_VIEW_INVITATION"): document_view_invitation,
    (SIGNATURE_SERVICE, "REMINDER_NOTIFICATION"): reminder_notification,
    (SIGNATURE_SERVICE, "SIGNER_DECLINED"): signer_declined,
    (SIGNATURE_SERVICE, "ENVELOPE_CANCELLED"): envelope_cancelled,
    (SIGNATURE_SERVICE, "DOCUMENT_SIGNED"): document_signed,
    (SIGNATURE_SERVICE, "ENVELOPE_COMPLETED"): envelope_completed,
    (AUTH_SERVICE, "USER_REGISTERED"): user_registered,
}


def build_requests(event: NotificationEvent) -> List[NotificationRequest]:
    strategy = STRATEGIES.get((event.source, event.event_type))
    if strategy is None:
        raise UnknownEventError(f"No notification strategy for {event.source}/{event.event_type}")
    requests = strategy(event)
    for request in requests:
        request.metadata.setdefault("eventType", event.event_type)
        if event.trace_id:
            request.metadata.setdefault("traceId", event.trace_id)
    return requests
