"""
Tests for PDF validation and PAdES signature embedding.
"""

from io import BytesIO

import pytest
from pyhanko.pdf_utils.reader import PdfFileReader
from pyhanko.sign.validation import validate_pdf_signature
from pyhanko_certvalidator import ValidationContext

from conftest import make_pdf
from esign.errors import InvalidDocumentError, KmsError
from esign.services.kms import certificate_subject
from esign.services.pdf_signing import (
    KmsPdfSigner,
    embed_signature,
    inspect_pdf,
    list_signature_fields,
    signature_field_name,
)


@pytest.fixture
def pdf_signer(kms):
    certificate = kms.build_certificate(certificate_subject("Alice Signer", "alice@example.com"))
    return KmsPdfSigner(kms, certificate)


class TestInspectPdf:

    def test_valid_pdf(self):
        info = inspect_pdf(make_pdf(page_count=3))
        assert info.page_count == 3
        assert info.signature_fields == []

    def test_empty_document(self):
        with pytest.raises(InvalidDocumentError):
            inspect_pdf(b"")

    def test_not_a_pdf(self):
        with pytest.raises(InvalidDocumentError, match="not a PDF"):
            inspect_pdf(b"PK\x03\x04 zip file")

    def test_too_large(self):
        with pytest.raises(InvalidDocumentError) as exc_info:
            inspect_pdf(make_pdf(), max_bytes=100)
        assert exc_info.value.code == "PDF_TOO_LARGE"

    def test_no_pages(self):
        with pytest.raises(InvalidDocumentError) as exc_info:
            inspect_pdf(make_pdf(page_count=0))
        assert exc_info.value.code == "PDF_NO_PAGES"

    def test_garbage_after_header(self):
        with pytest.raises(InvalidDocumentError):
            inspect_pdf(b"%PDF-1.7\nthis is not really a pdf")


class TestEmbedSignature:

    def test_signature_is_appended_incrementally(self, pdf_signer, pdf_bytes):
        signed = embed_signature(
            pdf_bytes, pdf_signer, signature_field_name("signer-1"),
            reason="I agree", location="Berlin", signer_name="Alice Signer",
        )

        # Incremental update keeps the original bytes as a prefix
        assert signed.startswith(pdf_bytes)
        assert len(signed) > len(pdf_bytes)
        assert list_signature_fields(signed) == ["Signature-signer-1"]

    def test_embedded_signature_validates(self, pdf_signer, pdf_bytes):
        signed = embed_signature(pdf_bytes, pdf_signer, "Signature-signer-1")

        reader = PdfFileReader(BytesIO(signed))
        embedded = reader.embedded_signatures[0]
        status = validate_pdf_signature(
            embedded, ValidationContext(trust_roots=[pdf_signer.signing_cert])
        )
        assert status.intact
        assert status.valid

    def test_ecdsa_signature_validates(self, ecdsa_kms, pdf_bytes):
        certificate = ecdsa_kms.build_certificate(certificate_subject("Alice Signer", "alice@example.com"))
        signer = KmsPdfSigner(ecdsa_kms, certificate)

        signed = embed_signature(pdf_bytes, signer, "Signature-signer-1")

        embedded = PdfFileReader(BytesIO(signed)).embedded_signatures[0]
        assert "ecdsa" in embedded.signer_info["signature_algorithm"]["algorithm"].native
        status = validate_pdf_signature(embedded, ValidationContext(trust_roots=[certificate]))
        assert status.intact
        assert status.valid

    def test_second_signature_keeps_first(self, kms, pdf_signer, pdf_bytes):
        once = embed_signature(pdf_bytes, pdf_signer, "Signature-signer-1")
        second_signer = KmsPdfSigner(
            kms, kms.build_certificate(certificate_subject("Bob Signer", "bob@example.com"))
        )
        twice = embed_signature(once, second_signer, "Signature-signer-2")

        assert twice.startswith(once)
        assert sorted(list_signature_fields(twice)) == ["Signature-signer-1", "Signature-signer-2"]

        reader = PdfFileReader(BytesIO(twice))
        first = reader.embedded_signatures[0]
        status = validate_pdf_signature(first, ValidationContext(trust_roots=[pdf_signer.signing_cert]))
        assert status.intact

    def test_duplicate_field_rejected(self, pdf_signer, pdf_bytes):
        signed = embed_signature(pdf_bytes, pdf_signer, "Signature-signer-1")
        with pytest.raises(InvalidDocumentError) as exc_info:
            embed_signature(signed, pdf_signer, "Signature-signer-1")
        assert exc_info.value.code == "PDF_SIGNATURE_FIELD_EXISTS"

    def test_kms_failure_surfaces_as_kms_error(self, pdf_signer, fake_kms, pdf_bytes):
        fake_kms.fail_with = "AccessDeniedException"
        with pytest.raises(KmsError) as exc_info:
            embed_signature(pdf_bytes, pdf_signer, "Signature-signer-1")
        assert exc_info.value.code == "KMS_PERMISSION_DENIED"

    def test_signs_through_kms(self, pdf_signer, fake_kms, pdf_bytes):
        calls_before = len(fake_kms.sign_calls)
        embed_signature(pdf_bytes, pdf_signer, "Signature-signer-1")
        assert len(fake_kms.sign_calls) == calls_before + 1
