# notifications/events.py
"""Turn an EventBridge event into the fields the notification strategies need."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..errors import EventValidationError

logger = logging.getLogger(__name__)


@dataclass
class NotificationEvent:
    event_id: str
    event_type: str
    source: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: Optional[str] = None
    trace_id: Optional[str] = None


def parse_event(event: Dict[str, Any]) -> NotificationEvent:
    """
    Parse an EventBridge event.

    Events published from the outbox carry {id, type, payload, occurredAt,
    traceId} in their detail; other producers may put the payload directly
    in the detail. The outbox id wins over the EventBridge id so that a
    republished row is still recognised as the same event.
    """
    if not isinstance(event, dict):
        raise EventValidationError("Event must be a JSON object")

    detail = event.get("detail") or {}
    if isinstance(detail, str):
        try:
            detail = json.loads(detail)
        except ValueError:
            raise EventValidationError("Event detail is not valid JSON")
    if not isinstance(detail, dict):
        raise EventValidationError("Event detail must be a JSON object")

    source = event.get("source")
    event_type = detail.get("type") or event.get("detail-type")
    event_id = detail.get("id") or event.get("id")
    if not source:
        raise EventValidationError("Event source is missing")
    if not event_type:
        raise EventValidationError("Event type is missing")
    if not event_id:
        raise EventValidationError("Event id is missing")

    payload = detail.get("payload") if "payload" in detail else detail
    if not isinstance(payload, dict):
        raise EventValidationError("Event payload must be a JSON object")

    return NotificationEvent(
        event_id=str(event_id),
        event_type=event_type,
        source=source,
        payload=payload,
        occurred_at=detail.get("occurredAt") or event.get("time"),
        trace_id=detail.get("traceId"),
    )
