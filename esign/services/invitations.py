# services/invitations.py
"""
Invitation tokens for external participants.

The raw token is handed out once (inside the invitation event) and only its
SHA-256 is persisted, so a database dump cannot be replayed as signing links.
"""

import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from .. import models
from ..config import settings
from ..errors import (
    InvitationTokenAlreadyUsedError,
    InvitationTokenExpiredError,
    InvitationTokenInvalidError,
)
from ..models import InvitationTokenStatus

logger = logging.getLogger(__name__)

LIVE_STATUSES = (InvitationTokenStatus.ACTIVE, InvitationTokenStatus.VIEWED)


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def issue_token(
    db: Session,
    envelope: models.SignatureEnvelope,
    signer: models.EnvelopeSigner,
    created_by: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    country: Optional[str] = None,
) -> Tuple[models.InvitationToken, str]:
    """Create a token for the signer. Returns the row and the raw token."""
    now = models.utc_now()
    expires_at = now + timedelta(days=settings.INVITATION_TOKEN_TTL_DAYS)
    envelope_expiry = models.ensure_utc(envelope.expires_at)
    if envelope_expiry and envelope_expiry < expires_at:
        expires_at = envelope_expiry

    raw_token = secrets.token_urlsafe(48)
    token = models.InvitationToken(
        envelope_id=envelope.id,
        signer_id=signer.id,
        token_hash=hash_token(raw_token),
        status=InvitationTokenStatus.ACTIVE,
        expires_at=expires_at,
        sent_at=now,
        last_sent_at=now,
        created_by=created_by,
        ip_address=ip_address,
        user_agent=user_agent,
        country=country,
        created_at=now,
    )
    db.add(token)
    return token, raw_token


def find_token(db: Session, raw_token: str) -> Optional[models.InvitationToken]:
    return db.query(models.InvitationToken).filter(
        models.InvitationToken.token_hash == hash_token(raw_token)
    ).first()


def resolve_token(db: Session, raw_token: str, for_signing: bool = False) -> models.InvitationToken:
    """Look up a raw token and check it can still be used."""
    token = find_token(db, raw_token) if raw_token else None
    if token is None:
        raise InvitationTokenInvalidError("Invitation token not found")

    if token.status == InvitationTokenStatus.REVOKED:
        raise InvitationTokenInvalidError("Invitation token has been revoked")
    if token.status == InvitationTokenStatus.EXPIRED:
        raise InvitationTokenExpiredError("Invitation token has expired")

    expires_at = models.ensure_utc(token.expires_at)
    if expires_at and models.utc_now() > expires_at:
        token.status = InvitationTokenStatus.EXPIRED
        db.commit()
        raise InvitationTokenExpiredError("Invitation token has expired")

    if token.status == InvitationTokenStatus.SIGNED and for_signing:
        raise InvitationTokenAlreadyUsedError("Invitation token has already been used to sign")

    return token


def mark_viewed(token: models.InvitationToken, ip_address: Optional[str] = None,
                user_agent: Optional[str] = None, country: Optional[str] = None) -> None:
    now = models.utc_now()
    if token.status == InvitationTokenStatus.ACTIVE:
        token.status = InvitationTokenStatus.VIEWED
    token.view_count = (token.view_count or 0) + 1
    token.last_viewed_at = now
    token.ip_address = ip_address or token.ip_address
    token.user_agent = user_agent or token.user_agent
    token.country = country or token.country


def mark_signed(token: models.InvitationToken, signer_id: str) -> None:
    token.status = InvitationTokenStatus.SIGNED
    token.signed_at = models.utc_now()
    token.signed_by = signer_id


def _revoke(query, reason: str) -> int:
    now = models.utc_now()
    count = 0
    for token in query.filter(models.InvitationToken.status.in_(LIVE_STATUSES)).all():
        token.status = InvitationTokenStatus.REVOKED
        token.revoked_at = now
        token.revoked_reason = reason
        count += 1
    return count


def revoke_for_signer(db: Session, signer_id: str, reason: str) -> int:
    count = _revoke(
        db.query(models.InvitationToken).filter(models.InvitationToken.signer_id == signer_id),
        reason,
    )
    if count:
        logger.info(f"Revoked {count} invitation token(s) for signer {signer_id}")
    return count


def revoke_for_envelope(db: Session, envelope_id: str, reason: str) -> int:
    count = _revoke(
        db.query(models.InvitationToken).filter(models.InvitationToken.envelope_id == envelope_id),
        reason,
    )
    if count:
        logger.info(f"Revoked {count} invitation token(s) for envelope {envelope_id}")
    return count
