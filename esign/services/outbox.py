# services/outbox.py
"""
Transactional outbox.

Domain events are inserted next to the state change that caused them and
published to EventBridge later by OutboxDispatcher. A row is only marked
DISPATCHED once EventBridge accepted its entry.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from .. import models
from ..config import settings
from ..models import OutboxStatus

logger = logging.getLogger(__name__)

# PutEvents accepts at most 10 entries per call
EVENTBRIDGE_BATCH_SIZE = 10


def enqueue(
    db: Session,
    event_type: str,
    payload: Dict[str, Any],
    source: Optional[str] = None,
    trace_id: Optional[str] = None,
) -> models.OutboxEvent:
    now = models.utc_now()
    event = models.OutboxEvent(
        source=source or settings.EVENT_SOURCE,
        event_type=event_type,
        payload=payload,
        status=OutboxStatus.PENDING,
        attempts=0,
        trace_id=trace_id,
        occurred_at=now,
        created_at=now,
    )
    db.add(event)
    return event


def event_detail(event: models.OutboxEvent) -> str:
    occurred_at = models.ensure_utc(event.occurred_at)
    return json.dumps({
        "id": event.id,
        "type": event.event_type,
        "payload": event.payload,
        "occurredAt": occurred_at.isoformat() if occurred_at else None,
        "traceId": event.trace_id,
    })


class OutboxDispatcher:
    """Publishes pending outbox rows to an EventBridge bus."""

    def __init__(self, events_client, event_bus_name: Optional[str] = None,
                 max_attempts: Optional[int] = None):
        self.events = events_client
        self.event_bus_name = event_bus_name or settings.EVENT_BUS_NAME
        self.max_attempts = max_attempts or settings.OUTBOX_MAX_ATTEMPTS

    def pending(self, db: Session, limit: int) -> List[models.OutboxEvent]:
        return db.query(models.OutboxEvent).filter(
            or_(
                models.OutboxEvent.status == OutboxStatus.PENDING,
                and_(
                    models.OutboxEvent.status == OutboxStatus.FAILED,
                    models.OutboxEvent.attempts < self.max_attempts,
                ),
            )
        ).order_by(models.OutboxEvent.occurred_at).limit(limit).all()

    def dispatch_pending(self, db: Session, limit: Optional[int] = None) -> Dict[str, int]:
        events = self.pending(db, limit or settings.OUTBOX_BATCH_LIMIT)
        if not events:
            return {"dispatched": 0, "failed": 0}

        dispatched = failed = 0
        for start in range(0, len(events), EVENTBRIDGE_BATCH_SIZE):
            batch = events[start:start + EVENTBRIDGE_BATCH_SIZE]
            ok, ko = self._publish_batch(batch)
            dispatched += ok
            failed += ko
            db.commit()

        logger.info(f"Outbox dispatch finished: {dispatched} dispatched, {failed} failed")
        return {"dispatched": dispatched, "failed": failed}

    def _publish_batch(self, batch: List[models.OutboxEvent]):
        entries = [
            {
                "Source": event.source,
                "DetailType": event.event_type,
                "Detail": event_detail(event),
                "EventBusName": self.event_bus_name,
            }
            for event in batch
        ]

        try:
            response = self.events.put_events(Entries=entries)
        except ClientError as e:
            message = e.response.get("Error", {}).get("Message", str(e))
            logger.error(f"PutEvents failed for {len(batch)} outbox events: {message}")
            for event in batch:
                self._mark_failed(event, message)
            return 0, len(batch)

        ok = ko = 0
        for event, result in zip(batch, response.get("Entries", [])):
            if result.get("ErrorCode"):
                error = f"{result['ErrorCode']}: {result.get('ErrorMessage', '')}"
                logger.warning(f"Outbox event {event.id} rejected: {error}")
                self._mark_failed(event, error)
                ko += 1
            else:
                self._mark_dispatched(event)
                ok += 1
        return ok, ko

    @staticmethod
    def _mark_dispatched(event: models.OutboxEvent) -> None:
        event.status = OutboxStatus.DISPATCHED
        event.dispatched_at = models.utc_now()
        event.last_error = None

    @staticmethod
    def _mark_failed(event: models.OutboxEvent, error: str) -> None:
        event.status = OutboxStatus.FAILED
        event.attempts = (event.attempts or 0) + 1
        event.last_error = error
