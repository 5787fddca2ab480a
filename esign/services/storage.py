# services/storage.py
"""S3 document storage for source and signed PDFs."""

import hashlib
import logging
import uuid
from typing import Dict, Optional

from botocore.exceptions import ClientError

from .. import models
from ..config import settings
from ..errors import DocumentNotFoundError, StorageError

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def source_key(envelope_id: str) -> str:
    return f"envelopes/{envelope_id}/source/{uuid.uuid4()}.pdf"


def signed_key(envelope_id: str, signer_id: str) -> str:
    timestamp = models.utc_now().strftime("%Y%m%dT%H%M%S%fZ")
    return f"envelopes/{envelope_id}/signed/{timestamp}-{signer_id}.pdf"


class DocumentStorage:
    """Thin wrapper around an S3 client bound to the documents bucket."""

    def __init__(self, s3_client, bucket: Optional[str] = None):
        self.s3 = s3_client
        self.bucket = bucket or settings.DOCUMENTS_BUCKET

    def put_pdf(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> str:
        """Upload PDF bytes and return their SHA-256."""
        digest = sha256_hex(data)
        upload_metadata = {"sha256": digest}
        if metadata:
            upload_metadata.update(metadata)
        try:
            logger.info(f"Uploading s3://{self.bucket}/{key} ({len(data)} bytes)")
            self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=PDF_CONTENT_TYPE,
                Metadata=upload_metadata,
            )
        except ClientError as e:
            logger.error(f"Failed to upload s3://{self.bucket}/{key}: {e}")
            raise StorageError(f"Failed to upload document: {e}")
        return digest

    def get_pdf(self, key: str) -> bytes:
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code")
            if error_code in ("NoSuchKey", "404"):
                raise DocumentNotFoundError(f"Document {key} not found")
            logger.error(f"Failed to download s3://{self.bucket}/{key}: {e}")
            raise StorageError(f"Failed to download document: {e}")

    def presigned_get_url(self, key: str, expires_in: Optional[int] = None) -> str:
        try:
            return self.s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in or settings.DOWNLOAD_URL_TTL_SECONDS,
            )
        except ClientError as e:
            raise StorageError(f"Failed to create download URL: {e}")
