# services/pdf_signing.py
"""
PAdES signature embedding.

Signatures are appended as incremental updates so every earlier signature
in the document stays valid. The CMS SignedData is produced by pyHanko with
a Signer whose raw signing operation is delegated to KMS.
"""

import hashlib
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional

from asn1crypto import x509
from pyhanko.pdf_utils.incremental_writer import IncrementalPdfFileWriter
from pyhanko.pdf_utils.reader import PdfFileReader
from pyhanko.sign import fields, signers
from pyhanko.sign.fields import SigFieldSpec, SigSeedSubFilter

from ..config import settings
from ..errors import InvalidDocumentError, PdfSigningError, SignatureServiceError
from .kms import KmsSigningService, hash_algorithm, signature_mechanism

logger = logging.getLogger(__name__)

PDF_HEADER = b"%PDF-"


class KmsPdfSigner(signers.Signer):
    """pyHanko signer that asks KMS to sign the CMS signed attributes."""

    def __init__(self, kms: KmsSigningService, certificate: x509.Certificate,
                 key_id: Optional[str] = None, algorithm: Optional[str] = None):
        self.kms = kms
        self.key_id = key_id or kms.key_id
        self.algorithm = algorithm or kms.algorithm
        super().__init__(
            signing_cert=certificate,
            signature_mechanism=signature_mechanism(self.algorithm),
        )

    async def async_sign_raw(self, data: bytes, digest_algorithm: str, dry_run=False) -> bytes:
        if dry_run:
            # Large enough for RSA-4096 and any ECDSA curve KMS offers
            return bytes(512)
        digest = hashlib.new(digest_algorithm, data).digest()
        return self.kms.sign_digest(digest, key_id=self.key_id, algorithm=self.algorithm)


@dataclass
class PdfInfo:
    page_count: int
    signature_fields: List[str]


def inspect_pdf(pdf_bytes: bytes, max_bytes: Optional[int] = None) -> PdfInfo:
    """Check the document can be signed: size, parseable, not encrypted, has pages."""
    max_bytes = max_bytes or settings.MAX_PDF_BYTES
    if not pdf_bytes:
        raise InvalidDocumentError("Document is empty")
    if len(pdf_bytes) > max_bytes:
        raise InvalidDocumentError(
            f"Document exceeds the maximum size of {max_bytes} bytes",
            code="PDF_TOO_LARGE",
        )
    if not pdf_bytes.startswith(PDF_HEADER):
        raise InvalidDocumentError("Document is not a PDF")

    try:
        reader = PdfFileReader(BytesIO(pdf_bytes))
        encrypted = reader.encrypted
    except Exception as e:
        raise InvalidDocumentError(f"Document could not be parsed: {e}")

    if encrypted:
        raise InvalidDocumentError("Encrypted PDFs cannot be signed", code="PDF_ENCRYPTED")

    try:
        page_count = int(reader.root["/Pages"]["/Count"])
        field_names = [name for name, _, _ in fields.enumerate_sig_fields(reader)]
    except Exception as e:
        raise InvalidDocumentError(f"Document structure is invalid: {e}")

    if page_count < 1:
        raise InvalidDocumentError("Document has no pages", code="PDF_NO_PAGES")

    return PdfInfo(page_count=page_count, signature_fields=field_names)


def list_signature_fields(pdf_bytes: bytes) -> List[str]:
    return inspect_pdf(pdf_bytes).signature_fields


def signature_field_name(signer_id: str) -> str:
    return f"Signature-{signer_id}"


def _service_error_cause(error: BaseException) -> Optional[SignatureServiceError]:
    """A KMS failure raised inside pyHanko may come back wrapped in its own error types."""
    seen = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, SignatureServiceError):
            return error
        seen.add(id(error))
        error = error.__cause__ or error.__context__
    return None


def embed_signature(
    pdf_bytes: bytes,
    signer: KmsPdfSigner,
    field_name: str,
    reason: Optional[str] = None,
    location: Optional[str] = None,
    signer_name: Optional[str] = None,
) -> bytes:
    """Append a PAdES signature in a new field and return the updated PDF."""
    info = inspect_pdf(pdf_bytes)
    if field_name in info.signature_fields:
        raise InvalidDocumentError(
            f"Signature field {field_name} already exists",
            code="PDF_SIGNATURE_FIELD_EXISTS",
        )

    output = BytesIO()
    try:
        writer = IncrementalPdfFileWriter(BytesIO(pdf_bytes))
        signers.sign_pdf(
            writer,
            signature_meta=signers.PdfSignatureMetadata(
                field_name=field_name,
                md_algorithm=hash_algorithm(signer.algorithm),
                reason=reason,
                location=location,
                name=signer_name,
                subfilter=SigSeedSubFilter.PADES,
            ),
            signer=signer,
            new_field_spec=SigFieldSpec(sig_field_name=field_name),
            output=output,
        )
    except SignatureServiceError:
        raise
    except Exception as e:
        cause = _service_error_cause(e)
        if cause is not None:
            raise cause
        logger.error(f"Failed to embed signature {field_name}: {e}")
        raise PdfSigningError(f"Failed to embed PDF signature: {e}")

    logger.info(f"Embedded signature {field_name} ({info.page_count} page(s))")
    return output.getvalue()
