# models/notification.py
"""Delivery record for one notification on one channel."""

from sqlalchemy import Column, String, Text, Integer, DateTime, JSON, Enum, UniqueConstraint
from ..database import Base
from .enums import NotificationChannel, NotificationStatus, RecipientType
from .envelope import utc_now, new_id


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint("event_id", "channel", "recipient", name="uq_notifications_event_channel_recipient"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(64), nullable=False, index=True)  # Idempotency key
    event_type = Column(String(64), nullable=False)
    source = Column(String(64), nullable=False)
    channel = Column(Enum(NotificationChannel, native_enum=False, length=16), nullable=False)
    recipient = Column(String(320), nullable=False)
    recipient_type = Column(Enum(RecipientType, native_enum=False, length=16), nullable=False)
    status = Column(
        Enum(NotificationStatus, native_enum=False, length=16),
        nullable=False,
        default=NotificationStatus.PENDING,
        index=True,
    )
    subject = Column(String(255), nullable=True)
    body = Column(Text, nullable=True)
    notification_metadata = Column("metadata", JSON, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(64), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    provider_message_id = Column(String(255), nullable=True)
    user_id = Column(String(64), nullable=True)
    envelope_id = Column(String(36), nullable=True, index=True)
    signer_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
