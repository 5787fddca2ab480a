# services/audit.py
"""Audit trail writes. Rows join the caller's transaction and are never updated."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .. import models
from ..models import AuditEventType

logger = logging.getLogger(__name__)


@dataclass
class SecurityContext:
    """Network details of the request that triggered an action."""
    ip_address: str = ""
    user_agent: str = ""
    country: Optional[str] = None


def record(
    db: Session,
    envelope_id: str,
    event_type: AuditEventType,
    description: str,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
    signer_id: Optional[str] = None,
    security_context: Optional[SecurityContext] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> models.SignatureAuditEvent:
    ctx = security_context or SecurityContext()
    event = models.SignatureAuditEvent(
        envelope_id=envelope_id,
        signer_id=signer_id,
        event_type=event_type.value,
        description=description,
        user_id=user_id,
        user_email=user_email,
        ip_address=ctx.ip_address or None,
        user_agent=ctx.user_agent or None,
        country=ctx.country,
        event_metadata=metadata,
        created_at=models.utc_now(),
    )
    db.add(event)
    logger.debug(f"Audit {event_type.value} recorded for envelope {envelope_id}")
    return event


def trail(db: Session, envelope_id: str) -> List[models.SignatureAuditEvent]:
    return db.query(models.SignatureAuditEvent).filter(
        models.SignatureAuditEvent.envelope_id == envelope_id
    ).order_by(models.SignatureAuditEvent.created_at, models.SignatureAuditEvent.id).all()
