# notifications/delivery.py
"""Channel senders: SES for email, SNS for SMS."""

import logging
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..config import settings
from ..errors import DeliveryError
from ..models import NotificationChannel

logger = logging.getLogger(__name__)


class NotificationDelivery:
    def __init__(self, ses_client=None, sns_client=None, from_email: Optional[str] = None):
        self.ses = ses_client
        self.sns = sns_client
        self.from_email = from_email or settings.NOTIFICATIONS_FROM_EMAIL

    def send(self, channel: NotificationChannel, recipient: str, body: str,
             subject: Optional[str] = None) -> str:
        """Send one message and return the provider's message id."""
        if channel == NotificationChannel.EMAIL:
            return self.send_email(recipient, subject or "", body)
        if channel == NotificationChannel.SMS:
            return self.send_sms(recipient, body)
        raise DeliveryError(f"Unsupported channel {channel}", code="NOTIFICATION_CHANNEL_UNSUPPORTED")

    def send_email(self, recipient: str, subject: str, body: str) -> str:
        if self.ses is None:
            raise DeliveryError("Email delivery is not configured")
        try:
            response = self.ses.send_email(
                Source=self.from_email,
                Destination={"ToAddresses": [recipient]},
                Message={
                    "Subject": {"Data": subject, "Charset": "UTF-8"},
                    "Body": {"Text": {"Data": body, "Charset": "UTF-8"}},
                },
            )
        except ClientError as e:
            error = e.response.get("Error", {})
            logger.error(f"SES rejected email to {recipient}: {error.get('Code')} {error.get('Message')}")
            raise DeliveryError(error.get("Message", str(e)), code=error.get("Code") or None)
        except BotoCoreError as e:
            logger.error(f"Could not reach SES for email to {recipient}: {e}")
            raise DeliveryError(str(e), code=type(e).__name__)
        return response["MessageId"]

    def send_sms(self, phone_number: str, body: str) -> str:
        if self.sns is None:
            raise DeliveryError("SMS delivery is not configured")
        try:
            response = self.sns.publish(PhoneNumber=phone_number, Message=body)
        except ClientError as e:
            error = e.response.get("Error", {})
            logger.error(f"SNS rejected SMS to {phone_number}: {error.get('Code')} {error.get('Message')}")
            raise DeliveryError(error.get("Message", str(e)), code=error.get("Code") or None)
        except BotoCoreError as e:
            logger.error(f"Could not reach SNS for SMS to {phone_number}: {e}")
            raise DeliveryError(str(e), code=type(e).__name__)
        return response["MessageId"]
