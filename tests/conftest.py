"""
Shared pytest fixtures: in-memory database, moto-backed AWS, a local-key KMS
stand-in and small PDF builders.
"""

import os

# Settings are read at import time, so the environment must be ready first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["DOCUMENTS_BUCKET"] = "test-documents"
os.environ["KMS_SIGNER_KEY_ID"] = "test-key"
os.environ["AWS_REGION"] = "us-east-1"
os.environ["SIGNING_APP_URL"] = "https://sign.example.com"
os.environ["NOTIFICATIONS_FROM_EMAIL"] = "no-reply@example.com"
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ["AWS_SECURITY_TOKEN"] = "testing"
os.environ["AWS_SESSION_TOKEN"] = "testing"
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"

import binascii
from datetime import datetime, timedelta, timezone

import boto3
import pytest
from botocore.exceptions import ClientError
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed
from jose import jwt
from moto import mock_aws
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from esign import aws, models
from esign.database import Base
from esign.services import kms as kms_service
from esign.services.kms import KmsSigningService
from esign.services.storage import DocumentStorage

OWNER_ID = "owner-123"
OWNER_EMAIL = "owner@example.com"
BUCKET = "test-documents"
KEY_ID = "test-key"


# Database

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()


# AWS

@pytest.fixture
def aws_credentials():
    """Mock AWS credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"


@pytest.fixture
def mocked_aws(aws_credentials):
    with mock_aws():
        aws.reset_clients()
        yield
    aws.reset_clients()


@pytest.fixture
def s3_client(mocked_aws):
    s3 = boto3.client("s3", region_name="us-east-1")
    s3.create_bucket(Bucket=BUCKET)
    return s3


@pytest.fixture
def storage(s3_client):
    return DocumentStorage(s3_client, bucket=BUCKET)


@pytest.fixture
def ses_client(mocked_aws):
    ses = boto3.client("ses", region_name="us-east-1")
    ses.verify_email_identity(EmailAddress="no-reply@example.com")
    return ses


@pytest.fixture
def sns_client(mocked_aws):
    return boto3.client("sns", region_name="us-east-1")


@pytest.fixture
def events_client(mocked_aws):
    return boto3.client("events", region_name="us-east-1")


# KMS

_HASHES = {
    "SHA_256": hashes.SHA256,
    "SHA_384": hashes.SHA384,
    "SHA_512": hashes.SHA512,
}


def _client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": f"{code} raised by fake KMS"}}, operation)


class FakeKmsClient:
    """Local RSA or EC key behind the subset of the KMS API the service uses."""

    def __init__(self, private_key, key_id=KEY_ID):
        self.key_id = key_id
        self.private_key = private_key
        self.fail_with = None
        self.sign_calls = []

    @property
    def is_ec(self):
        return isinstance(self.private_key, ec.EllipticCurvePrivateKey)

    def _check(self, key_id, operation):
        if self.fail_with:
            raise _client_error(self.fail_with, operation)
        if key_id != self.key_id:
            raise _client_error("NotFoundException", operation)

    def _scheme(self, algorithm, operation):
        """Positional arguments for sign/verify after the message."""
        hash_cls = _HASHES["_".join(algorithm.split("_")[-2:])]
        hash_alg = Prehashed(hash_cls())
        if algorithm.startswith("ECDSA") and self.is_ec:
            return (ec.ECDSA(hash_alg),)
        if algorithm.startswith("RSASSA_PSS") and not self.is_ec:
            pad = padding.PSS(mgf=padding.MGF1(hash_cls()), salt_length=hash_cls.digest_size)
            return pad, hash_alg
        if algorithm.startswith("RSASSA_PKCS1_V1_5") and not self.is_ec:
            return padding.PKCS1v15(), hash_alg
        raise _client_error("InvalidKeyUsageException", operation)

    def sign(self, KeyId, Message, MessageType, SigningAlgorithm):
        self._check(KeyId, "Sign")
        assert MessageType == "DIGEST"
        scheme = self._scheme(SigningAlgorithm, "Sign")
        self.sign_calls.append((KeyId, SigningAlgorithm, Message))
        signature = self.private_key.sign(Message, *scheme)
        return {"KeyId": KeyId, "Signature": signature, "SigningAlgorithm": SigningAlgorithm}

    def verify(self, KeyId, Message, MessageType, Signature, SigningAlgorithm):
        self._check(KeyId, "Verify")
        scheme = self._scheme(SigningAlgorithm, "Verify")
        try:
            self.private_key.public_key().verify(Signature, Message, *scheme)
        except InvalidSignature:
            raise _client_error("KMSInvalidSignatureException", "Verify")
        return {"KeyId": KeyId, "SignatureValid": True, "SigningAlgorithm": SigningAlgorithm}

    def get_public_key(self, KeyId):
        self._check(KeyId, "GetPublicKey")
        der = self.private_key.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return {"KeyId": KeyId, "PublicKey": der, "KeySpec": "ECC_NIST_P256" if self.is_ec else "RSA_2048"}


@pytest.fixture(scope="session")
def ec_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def ecdsa_kms(ec_key):
    return KmsSigningService(FakeKmsClient(ec_key), key_id=KEY_ID, algorithm="ECDSA_SHA_256")


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(autouse=True)
def clear_certificates():
    kms_service.clear_certificate_cache()
    yield
    kms_service.clear_certificate_cache()


@pytest.fixture
def fake_kms(rsa_key):
    return FakeKmsClient(rsa_key)


@pytest.fixture
def kms(fake_kms):
    return KmsSigningService(fake_kms, key_id=KEY_ID, algorithm="RSASSA_PSS_SHA_256")


# PDFs

def make_pdf(page_count=1):
    """Smallest valid PDF with the given number of empty pages."""
    kids = " ".join(f"{3 + i} 0 R" for i in range(page_count))
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        f"<< /Type /Pages /Kids [{kids}] /Count {page_count} >>".encode(),
    ]
    for _ in range(page_count):
        objects.append(b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>")

    out = bytearray(b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{number} 0 obj\n".encode() + body + b"\nendobj\n"

    xref_offset = len(out)
    doc_id = binascii.hexlify(os.urandom(16)).decode()
    out += f"xref\n0 {len(objects) + 1}\n".encode()
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += f"{offset:010d} 00000 n \n".encode()
    out += (
        f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R /ID [<{doc_id}> <{doc_id}>] >>\n"
        f"startxref\n{xref_offset}\n%%EOF\n"
    ).encode()
    return bytes(out)


@pytest.fixture
def pdf_bytes():
    return make_pdf()


# Auth

def make_jwt(sub=OWNER_ID, email=OWNER_EMAIL, secret="test-jwt-secret", audience="authenticated"):
    claims = {
        "sub": sub,
        "email": email,
        "aud": audience,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(sub=OWNER_ID, email=OWNER_EMAIL):
    return {"Authorization": f"Bearer {make_jwt(sub, email)}"}


# Domain builders

def future(days=7):
    return datetime.now(timezone.utc) + timedelta(days=days)


def envelope_data(**overrides):
    data = {
        "title": "Service agreement",
        "description": "Annual services contract",
        "signing_order_type": models.SigningOrderType.OWNER_FIRST,
        "expires_at": future(30),
        "signers": [
            {"email": "alice@example.com", "full_name": "Alice Signer"},
            {"email": "bob@example.com", "full_name": "Bob Signer"},
        ],
    }
    data.update(overrides)
    return data
