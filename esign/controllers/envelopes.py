# controllers/envelopes.py
"""Envelope API endpoints: creation, documents, participants and lifecycle."""

import base64
import binascii
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_optional_user, get_user_email, require_identity
from ..dependencies import get_db, get_invitation_token, get_security_context, get_storage
from ..models import EnvelopeStatus
from ..schemas import envelope as schemas
from ..services import envelopes as service
from ..services import reminders
from ..services.audit import SecurityContext
from ..services.storage import DocumentStorage

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/", response_model=schemas.Envelope, status_code=status.HTTP_201_CREATED,
             summary="Create an envelope")
def create_envelope(
    envelope_data: schemas.EnvelopeCreate,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    user_email: Optional[str] = Depends(get_user_email),
    ctx: SecurityContext = Depends(get_security_context),
):
    """Create a draft envelope with its signers."""
    logger.info(f"Creating envelope '{envelope_data.title}' for {current_user}")
    return service.create_envelope(
        db, current_user, envelope_data.model_dump(), owner_email=user_email, security_context=ctx,
    )


@router.get("/", response_model=schemas.EnvelopeList, summary="List my envelopes")
def list_envelopes(
    status_filter: Optional[EnvelopeStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(service.DEFAULT_PAGE_SIZE, ge=1, le=service.MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
):
    items, total = service.list_envelopes(db, current_user, status_filter, skip, limit)
    return {"items": items, "total": total, "skip": skip, "limit": limit}


@router.get("/{envelope_id}", response_model=schemas.Envelope, summary="Get an envelope")
def get_envelope(
    envelope_id: str,
    db: Session = Depends(get_db),
    current_user: Optional[str] = Depends(get_optional_user),
    invitation_token: Optional[str] = Depends(get_invitation_token),
    ctx: SecurityContext = Depends(get_security_context),
):
    """Owner, internal signers and invitation token holders can read an envelope."""
    require_identity(current_user, invitation_token)
    access = service.get_envelope(db, envelope_id, current_user, invitation_token, ctx)
    return access.envelope


@router.put("/{envelope_id}", response_model=schemas.Envelope, summary="Update an envelope")
def update_envelope(
    envelope_id: str,
    update_data: schemas.EnvelopeUpdate,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
):
    return service.update_envelope(
        db, envelope_id, current_user, update_data.model_dump(exclude_unset=True), ctx,
    )


@router.put("/{envelope_id}/document", response_model=schemas.Envelope, summary="Attach the PDF")
def attach_document(
    envelope_id: str,
    upload: schemas.DocumentUpload,
    db: Session = Depends(get_db),
    storage: DocumentStorage = Depends(get_storage),
    current_user: str = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
):
    """Upload the source document as base64; it replaces any previous one."""
    try:
        pdf_bytes = base64.b64decode(upload.content_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="content_base64 is not valid base64")

    return service.attach_document(
        db, storage, envelope_id, current_user, pdf_bytes, upload.filename, ctx,
    )


@router.post("/{envelope_id}/signers", response_model=schemas.Signer,
             status_code=status.HTTP_201_CREATED, summary="Add a signer")
def add_signer(
    envelope_id: str,
    signer_data: schemas.SignerCreate,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
):
    return service.add_signer(db, envelope_id, current_user, signer_data.model_dump(), ctx)


@router.delete("/{envelope_id}/signers/{signer_id}", status_code=status.HTTP_204_NO_CONTENT,
               summary="Remove a signer")
def remove_signer(
    envelope_id: str,
    signer_id: str,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
):
    service.remove_signer(db, envelope_id, signer_id, current_user, ctx)


@router.post("/{envelope_id}/send", response_model=schemas.SendEnvelopeResponse,
             summary="Send for signature")
def send_envelope(
    envelope_id: str,
    send_data: Optional[schemas.SendEnvelopeRequest] = None,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    user_email: Optional[str] = Depends(get_user_email),
    ctx: SecurityContext = Depends(get_security_context),
):
    """Send a draft, or re-invite pending signers when it is already out."""
    send_data = send_data or schemas.SendEnvelopeRequest()
    envelope, invited = service.send_envelope(
        db, envelope_id, current_user,
        signer_ids=send_data.signer_ids,
        message=send_data.message,
        owner_email=user_email,
        security_context=ctx,
    )
    return {"envelope": envelope, "invited_signer_ids": [s.id for s in invited]}


@router.post("/{envelope_id}/cancel", response_model=schemas.Envelope, summary="Cancel an envelope")
def cancel_envelope(
    envelope_id: str,
    cancel_data: Optional[schemas.CancelEnvelopeRequest] = None,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
):
    reason = cancel_data.reason if cancel_data else None
    return service.cancel_envelope(db, envelope_id, current_user, reason, ctx)


@router.post("/{envelope_id}/share", response_model=schemas.Signer,
             status_code=status.HTTP_201_CREATED, summary="Share read-only access")
def share_document_view(
    envelope_id: str,
    share_data: schemas.ShareViewRequest,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
):
    return service.share_document_view(
        db, envelope_id, current_user,
        email=share_data.email,
        full_name=share_data.full_name,
        message=share_data.message,
        security_context=ctx,
    )


@router.post("/{envelope_id}/reminders", response_model=schemas.ReminderResponse,
             summary="Remind pending signers")
def send_reminders(
    envelope_id: str,
    reminder_data: Optional[schemas.ReminderRequest] = None,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
):
    reminder_data = reminder_data or schemas.ReminderRequest()
    return reminders.send_reminders(
        db, envelope_id, current_user,
        signer_ids=reminder_data.signer_ids,
        message=reminder_data.message,
        security_context=ctx,
    )


@router.get("/{envelope_id}/download", response_model=schemas.DownloadUrl,
            summary="Get a download URL")
def get_download_url(
    envelope_id: str,
    db: Session = Depends(get_db),
    storage: DocumentStorage = Depends(get_storage),
    current_user: Optional[str] = Depends(get_optional_user),
    invitation_token: Optional[str] = Depends(get_invitation_token),
    ctx: SecurityContext = Depends(get_security_context),
):
    """Presigned URL for the latest signed version, or the source while nobody has signed."""
    require_identity(current_user, invitation_token)
    return service.get_download_url(db, storage, envelope_id, current_user, invitation_token, ctx)


@router.get("/{envelope_id}/audit", response_model=List[schemas.AuditEvent],
            summary="Get the audit trail")
def get_audit_trail(
    envelope_id: str,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
):
    return service.get_audit_trail(db, envelope_id, current_user)
