# models/outbox.py
"""Outbox table: domain events written in the same transaction as the state change."""

from sqlalchemy import Column, String, Text, Integer, DateTime, JSON, Enum
from ..database import Base
from .enums import OutboxStatus
from .envelope import utc_now, new_id


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(String(36), primary_key=True, default=new_id)
    source = Column(String(64), nullable=False)
    event_type = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(
        Enum(OutboxStatus, native_enum=False, length=16),
        nullable=False,
        default=OutboxStatus.PENDING,
        index=True,
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    trace_id = Column(String(64), nullable=True)
    occurred_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    dispatched_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
