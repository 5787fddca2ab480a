# handler.py
"""AWS Lambda entry points.

handler               API Gateway -> FastAPI, through the Mangum adapter.
scheduled_handler     EventBridge schedule: expires overdue envelopes,
                      publishes pending outbox events and retries failed
                      notifications.
notifications_handler EventBridge rule target: delivers the notifications
                      for one domain event.
"""

import logging

from mangum import Mangum

from esign.aws import get_client
from esign.config import settings
from esign.database import SessionLocal
from esign.errors import EventAlreadyProcessedError
from esign.main import app
from esign.notifications.delivery import NotificationDelivery
from esign.notifications.events import parse_event
from esign.notifications.processor import process_event, retry_failed
from esign.services.envelopes import expire_overdue
from esign.services.outbox import OutboxDispatcher

logging.getLogger().setLevel(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# lifespan="off" disables ASGI lifespan events which aren't needed in Lambda
handler = Mangum(app, lifespan="off")


def scheduled_handler(event, context):
    db = SessionLocal()
    try:
        expired = expire_overdue(db)
        result = OutboxDispatcher(get_client("events")).dispatch_pending(db)
        retried = retry_failed(db, NotificationDelivery(get_client("ses"), get_client("sns")))
    finally:
        db.close()
    return {"expired": expired, **result, "notifications_retried": retried["retried"]}


def notifications_handler(event, context):
    notification_event = parse_event(event)
    delivery = NotificationDelivery(get_client("ses"), get_client("sns"))

    db = SessionLocal()
    try:
        return process_event(db, notification_event, delivery)
    except EventAlreadyProcessedError:
        logger.info(f"Event {notification_event.event_id} already processed, skipping")
        return {"skipped": True, "event_id": notification_event.event_id}
    finally:
        db.close()
