# controllers/signing.py
"""Signing endpoints. Internal users authenticate with a bearer JWT, external ones with their invitation token."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_optional_user, require_identity
from ..dependencies import get_db, get_invitation_token, get_kms, get_security_context, get_storage
from ..schemas import envelope as schemas
from ..services import signing as service
from ..services.audit import SecurityContext
from ..services.kms import KmsSigningService
from ..services.storage import DocumentStorage

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{envelope_id}/signers/{signer_id}/sign", response_model=schemas.SignResponse,
             summary="Sign the document")
def sign_document(
    envelope_id: str,
    signer_id: str,
    sign_data: schemas.SignRequest,
    db: Session = Depends(get_db),
    storage: DocumentStorage = Depends(get_storage),
    kms: KmsSigningService = Depends(get_kms),
    current_user: Optional[str] = Depends(get_optional_user),
    invitation_token: Optional[str] = Depends(get_invitation_token),
    ctx: SecurityContext = Depends(get_security_context),
):
    require_identity(current_user, invitation_token)
    logger.info(f"Signing request for envelope {envelope_id} by signer {signer_id}")

    result = service.sign_document(
        db, storage, kms, envelope_id, signer_id,
        consent_given=sign_data.consent_given,
        consent_text=sign_data.consent_text,
        reason=sign_data.reason,
        location=sign_data.location,
        user_id=current_user,
        invitation_token=invitation_token,
        security_context=ctx,
    )
    return {
        "envelope": result.envelope,
        "signer": result.signer,
        "document_hash": result.document_hash,
        "signature_hash": result.signature_hash,
        "completed": result.completed,
    }


@router.post("/{envelope_id}/signers/{signer_id}/decline", response_model=schemas.Envelope,
             summary="Decline to sign")
def decline_signer(
    envelope_id: str,
    signer_id: str,
    decline_data: schemas.DeclineRequest,
    db: Session = Depends(get_db),
    current_user: Optional[str] = Depends(get_optional_user),
    invitation_token: Optional[str] = Depends(get_invitation_token),
    ctx: SecurityContext = Depends(get_security_context),
):
    require_identity(current_user, invitation_token)
    return service.decline_signer(
        db, envelope_id, signer_id, decline_data.reason,
        user_id=current_user,
        invitation_token=invitation_token,
        security_context=ctx,
    )
