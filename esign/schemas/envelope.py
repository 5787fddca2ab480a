from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models import (
    DocumentOriginType,
    EnvelopeStatus,
    ParticipantRole,
    SignerStatus,
    SigningOrderType,
)


def _clean_title(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not v.strip():
        raise ValueError('Title cannot be blank')
    return v.strip()


class SignerCreate(BaseModel):
    email: Optional[EmailStr] = None
    full_name: Optional[str] = Field(None, max_length=255)
    user_id: Optional[str] = None
    order: Optional[int] = Field(None, ge=1)

    @model_validator(mode='after')
    def external_signers_need_contact(self):
        if self.user_id is None and not (self.email and self.full_name):
            raise ValueError('External signers need an email and a full name')
        return self


class EnvelopeCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    signing_order_type: SigningOrderType = SigningOrderType.OWNER_FIRST
    origin_type: DocumentOriginType = DocumentOriginType.USER_UPLOAD
    template_id: Optional[str] = None
    template_version: Optional[str] = None
    expires_at: Optional[datetime] = None
    signers: List[SignerCreate] = Field(default_factory=list, max_length=50)

    @field_validator('title')
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        return _clean_title(v)

    @model_validator(mode='after')
    def template_needs_id(self):
        if self.origin_type == DocumentOriginType.TEMPLATE and not self.template_id:
            raise ValueError('Template envelopes need a template_id')
        return self


class EnvelopeUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    signing_order_type: Optional[SigningOrderType] = None
    expires_at: Optional[datetime] = None

    @field_validator('title')
    @classmethod
    def title_not_blank(cls, v: Optional[str]) -> Optional[str]:
        return _clean_title(v)


class SendEnvelopeRequest(BaseModel):
    signer_ids: Optional[List[str]] = None
    message: Optional[str] = Field(None, max_length=1000)


class CancelEnvelopeRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class ShareViewRequest(BaseModel):
    email: EmailStr
    full_name: str = Field(..., min_length=1, max_length=255)
    message: Optional[str] = Field(None, max_length=1000)


class SignRequest(BaseModel):
    consent_given: bool
    consent_text: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=500)
    location: Optional[str] = Field(None, max_length=255)


class DeclineRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)

    @field_validator('reason')
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Decline reason cannot be blank')
        return v.strip()


class ReminderRequest(BaseModel):
    signer_ids: Optional[List[str]] = None
    message: Optional[str] = Field(None, max_length=1000)


class Signer(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    user_id: Optional[str] = None
    is_external: bool
    participant_role: ParticipantRole
    order: int
    status: SignerStatus
    signed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    decline_reason: Optional[str] = None

    class Config:
        from_attributes = True


class Envelope(BaseModel):
    id: str
    created_by: str
    title: str
    description: Optional[str] = None
    status: EnvelopeStatus
    signing_order_type: SigningOrderType
    origin_type: DocumentOriginType
    template_id: Optional[str] = None
    template_version: Optional[str] = None
    source_sha256: Optional[str] = None
    signed_sha256: Optional[str] = None
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    declined_reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    signers: List[Signer] = []

    class Config:
        from_attributes = True


class EnvelopeList(BaseModel):
    items: List[Envelope]
    total: int
    skip: int
    limit: int


class SendEnvelopeResponse(BaseModel):
    envelope: Envelope
    invited_signer_ids: List[str]


class SignResponse(BaseModel):
    envelope: Envelope
    signer: Signer
    document_hash: str
    signature_hash: str
    completed: bool


class SkippedSigner(BaseModel):
    id: str
    email: Optional[str] = None
    reason: str


class ReminderResponse(BaseModel):
    reminders_sent: int
    signers_notified: List[str]
    skipped_signers: List[SkippedSigner]


class DownloadUrl(BaseModel):
    download_url: str
    key: str
    signed: bool
    expires_in: int


class AuditEvent(BaseModel):
    id: str
    event_type: str
    description: str
    signer_id: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias='event_metadata')
    created_at: datetime

    class Config:
        from_attributes = True


class DocumentUpload(BaseModel):
    filename: Optional[str] = Field(None, max_length=255)
    content_base64: str = Field(..., min_length=1)
