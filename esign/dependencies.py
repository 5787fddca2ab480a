# dependencies.py
"""Centralized dependencies for FastAPI application."""

from typing import Optional
from fastapi import Header, Request

from .aws import get_client
from .database import SessionLocal
from .services.audit import SecurityContext
from .services.kms import KmsSigningService
from .services.storage import DocumentStorage


def get_db():
    """Database session dependency.

    Yields a database session and ensures it's closed after use.
    Usage: db: Session = Depends(get_db)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_security_context(
    request: Request,
    user_agent: Optional[str] = Header(None),
    x_forwarded_for: Optional[str] = Header(None),
    cloudfront_viewer_country: Optional[str] = Header(None),
) -> SecurityContext:
    """IP, user agent and country of the caller, as seen behind API Gateway/CloudFront."""
    if x_forwarded_for:
        ip_address = x_forwarded_for.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else ""
    return SecurityContext(
        ip_address=ip_address,
        user_agent=user_agent or "",
        country=cloudfront_viewer_country,
    )


def get_invitation_token(
    token: Optional[str] = None,
    x_invitation_token: Optional[str] = Header(None),
) -> Optional[str]:
    """Invitation token from the X-Invitation-Token header or the ?token= query parameter."""
    return x_invitation_token or token


def get_storage() -> DocumentStorage:
    return DocumentStorage(get_client("s3"))


def get_kms() -> KmsSigningService:
    return KmsSigningService(get_client("kms"))
