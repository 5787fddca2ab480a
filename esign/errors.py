# errors.py
"""Service exceptions. Each carries the HTTP status and a stable error code."""

from typing import Any, Optional


class SignatureServiceError(Exception):
    """Base exception for signing workflow errors"""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details


class BadRequestError(SignatureServiceError):
    status_code = 400
    code = "BAD_REQUEST"


class UnauthorizedError(SignatureServiceError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(SignatureServiceError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(SignatureServiceError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(SignatureServiceError):
    """Raised when an operation is not allowed in the current state"""
    status_code = 409
    code = "CONFLICT"


class ValidationError(SignatureServiceError):
    status_code = 422
    code = "VALIDATION_FAILED"


class UpstreamServiceError(SignatureServiceError):
    """Raised when a managed AWS service call fails"""
    status_code = 502
    code = "UPSTREAM_FAILURE"


# Envelopes

class EnvelopeNotFoundError(NotFoundError):
    code = "ENVELOPE_NOT_FOUND"

    def __init__(self, envelope_id: str):
        super().__init__(f"Envelope {envelope_id} not found")


class InvalidEnvelopeStateError(ConflictError):
    code = "ENVELOPE_INVALID_STATE"


class EnvelopeAccessDeniedError(ForbiddenError):
    code = "ENVELOPE_ACCESS_DENIED"


# Signers

class SignerNotFoundError(NotFoundError):
    code = "SIGNER_NOT_FOUND"

    def __init__(self, signer_id: str):
        super().__init__(f"Signer {signer_id} not found in envelope")


class InvalidSignerStateError(ConflictError):
    code = "SIGNER_INVALID_STATE"


class SigningOrderViolationError(ConflictError):
    code = "SIGNER_SIGNING_ORDER_VIOLATION"


class SignerEmailDuplicateError(ConflictError):
    code = "SIGNER_EMAIL_DUPLICATE"


class ConsentRequiredError(ValidationError):
    code = "CONSENT_REQUIRED"


# Invitation tokens

class InvitationTokenInvalidError(UnauthorizedError):
    code = "INVITATION_TOKEN_INVALID"


class InvitationTokenExpiredError(UnauthorizedError):
    code = "INVITATION_TOKEN_EXPIRED"


class InvitationTokenAlreadyUsedError(ConflictError):
    code = "INVITATION_TOKEN_ALREADY_USED"


# Documents, KMS and PDF

class DocumentNotFoundError(NotFoundError):
    code = "DOCUMENT_NOT_FOUND"


class InvalidDocumentError(ValidationError):
    code = "PDF_INVALID_STRUCTURE"


class PdfSigningError(SignatureServiceError):
    """Raised when embedding a signature into a PDF fails"""
    code = "PDF_SIGNATURE_EMBEDDING_FAILED"


class KmsError(UpstreamServiceError):
    code = "KMS_SIGNING_FAILED"


class StorageError(UpstreamServiceError):
    code = "S3_OPERATION_FAILED"


# Notifications

class UnknownEventError(BadRequestError):
    """Raised when no strategy handles an event's source and type"""
    code = "NOTIFICATION_UNKNOWN_EVENT"


class EventValidationError(ValidationError):
    code = "NOTIFICATION_EVENT_INVALID"


class EventAlreadyProcessedError(ConflictError):
    code = "NOTIFICATION_EVENT_ALREADY_PROCESSED"


class InvalidNotificationStateError(ConflictError):
    code = "NOTIFICATION_INVALID_STATE"


class DeliveryError(UpstreamServiceError):
    """Raised by channel senders when the provider rejects a message"""
    code = "NOTIFICATION_DELIVERY_FAILED"
