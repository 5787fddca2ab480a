# services/kms.py
"""
KMS-backed signing.

The private key never leaves KMS: digests are sent with MessageType=DIGEST
and the X.509 certificate embedded in signed PDFs is self-signed through the
same key.
"""

import hashlib
import logging
import secrets
from collections import OrderedDict
from datetime import timedelta
from typing import Dict, Optional, Tuple

from asn1crypto import algos, keys, x509
from botocore.exceptions import ClientError

from .. import models
from ..config import settings
from ..errors import KmsError

logger = logging.getLogger(__name__)

# KMS algorithm -> (hash name, asn1crypto signature algorithm)
SIGNING_ALGORITHMS: Dict[str, Tuple[str, str]] = {
    "RSASSA_PSS_SHA_256": ("sha256", "rsassa_pss"),
    "RSASSA_PSS_SHA_384": ("sha384", "rsassa_pss"),
    "RSASSA_PSS_SHA_512": ("sha512", "rsassa_pss"),
    "RSASSA_PKCS1_V1_5_SHA_256": ("sha256", "sha256_rsa"),
    "RSASSA_PKCS1_V1_5_SHA_384": ("sha384", "sha384_rsa"),
    "RSASSA_PKCS1_V1_5_SHA_512": ("sha512", "sha512_rsa"),
    "ECDSA_SHA_256": ("sha256", "sha256_ecdsa"),
    "ECDSA_SHA_384": ("sha384", "sha384_ecdsa"),
    "ECDSA_SHA_512": ("sha512", "sha512_ecdsa"),
}

# Least recently used entries are dropped past settings.CERTIFICATE_CACHE_SIZE
_certificate_cache: "OrderedDict[tuple, x509.Certificate]" = OrderedDict()


def hash_algorithm(algorithm: str) -> str:
    try:
        return SIGNING_ALGORITHMS[algorithm][0]
    except KeyError:
        raise KmsError(f"Unsupported signing algorithm {algorithm}", code="KMS_UNSUPPORTED_ALGORITHM")


def signature_mechanism(algorithm: str) -> algos.SignedDigestAlgorithm:
    """asn1crypto description of a KMS signing algorithm, as used in CMS and X.509."""
    hash_name = hash_algorithm(algorithm)
    mechanism = SIGNING_ALGORITHMS[algorithm][1]
    if mechanism != "rsassa_pss":
        return algos.SignedDigestAlgorithm({"algorithm": mechanism})

    # KMS uses MGF1 with the message hash and a salt as long as the digest
    return algos.SignedDigestAlgorithm({
        "algorithm": "rsassa_pss",
        "parameters": algos.RSASSAPSSParams({
            "hash_algorithm": algos.DigestAlgorithm({"algorithm": hash_name}),
            "mask_gen_algorithm": algos.MaskGenAlgorithm({
                "algorithm": "mgf1",
                "parameters": algos.DigestAlgorithm({"algorithm": hash_name}),
            }),
            "salt_length": hashlib.new(hash_name).digest_size,
        }),
    })


def _map_client_error(e: ClientError, key_id: str, action: str) -> KmsError:
    error_code = e.response.get("Error", {}).get("Code", "")
    message = e.response.get("Error", {}).get("Message", str(e))
    logger.error(f"KMS {action} failed for key {key_id}: {error_code} {message}")

    if error_code == "NotFoundException":
        return KmsError(f"KMS key {key_id} not found", code="KMS_KEY_NOT_FOUND")
    if error_code == "AccessDeniedException":
        return KmsError(f"Permission denied for KMS key {key_id}", code="KMS_PERMISSION_DENIED")
    if error_code in ("KMSInvalidStateException", "DisabledException"):
        return KmsError(f"KMS key {key_id} is not available", code="KMS_KEY_UNAVAILABLE")
    return KmsError(f"KMS {action} failed: {message}")


class KmsSigningService:
    """Signs digests and builds certificates with one KMS asymmetric key."""

    def __init__(self, kms_client, key_id: Optional[str] = None, algorithm: Optional[str] = None):
        self.kms = kms_client
        self.key_id = key_id or settings.KMS_SIGNER_KEY_ID
        self.algorithm = algorithm or settings.KMS_SIGNING_ALGORITHM
        hash_algorithm(self.algorithm)

    def sign_digest(self, digest: bytes, key_id: Optional[str] = None,
                    algorithm: Optional[str] = None) -> bytes:
        key_id = key_id or self.key_id
        algorithm = algorithm or self.algorithm
        hash_algorithm(algorithm)
        if not key_id:
            raise KmsError("No KMS signing key configured", code="KMS_KEY_NOT_FOUND")

        try:
            response = self.kms.sign(
                KeyId=key_id,
                Message=digest,
                MessageType="DIGEST",
                SigningAlgorithm=algorithm,
            )
        except ClientError as e:
            raise _map_client_error(e, key_id, "sign")

        signature = response.get("Signature")
        if not signature:
            raise KmsError("KMS returned an empty signature")
        return signature

    def sign_message(self, message: bytes, key_id: Optional[str] = None,
                     algorithm: Optional[str] = None) -> bytes:
        algorithm = algorithm or self.algorithm
        digest = hashlib.new(hash_algorithm(algorithm), message).digest()
        return self.sign_digest(digest, key_id=key_id, algorithm=algorithm)

    def verify_digest(self, digest: bytes, signature: bytes, key_id: Optional[str] = None,
                      algorithm: Optional[str] = None) -> bool:
        key_id = key_id or self.key_id
        algorithm = algorithm or self.algorithm
        try:
            response = self.kms.verify(
                KeyId=key_id,
                Message=digest,
                MessageType="DIGEST",
                Signature=signature,
                SigningAlgorithm=algorithm,
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "KMSInvalidSignatureException":
                return False
            raise _map_client_error(e, key_id, "verify")
        return bool(response.get("SignatureValid"))

    def get_public_key(self, key_id: Optional[str] = None) -> bytes:
        """DER-encoded SubjectPublicKeyInfo of the key."""
        key_id = key_id or self.key_id
        try:
            response = self.kms.get_public_key(KeyId=key_id)
        except ClientError as e:
            raise _map_client_error(e, key_id, "get_public_key")
        return response["PublicKey"]

    def build_certificate(self, subject: Dict[str, str], key_id: Optional[str] = None,
                          algorithm: Optional[str] = None) -> x509.Certificate:
        """Self-signed certificate for the KMS key, cached per key and subject."""
        key_id = key_id or self.key_id
        algorithm = algorithm or self.algorithm
        cache_key = (key_id, algorithm, tuple(sorted(subject.items())))
        cached = _certificate_cache.get(cache_key)
        if cached is not None:
            _certificate_cache.move_to_end(cache_key)
            return cached

        public_key = keys.PublicKeyInfo.load(self.get_public_key(key_id))
        name = x509.Name.build(subject)
        mechanism = signature_mechanism(algorithm)
        not_before = models.utc_now().replace(microsecond=0)
        not_after = not_before + timedelta(days=settings.CERTIFICATE_VALIDITY_DAYS)

        tbs = x509.TbsCertificate({
            "version": "v3",
            "serial_number": secrets.randbits(63) + 1,
            "signature": mechanism,
            "issuer": name,
            "validity": {
                "not_before": x509.Time({"utc_time": not_before}),
                "not_after": x509.Time({"utc_time": not_after}),
            },
            "subject": name,
            "subject_public_key_info": public_key,
            "extensions": [
                {
                    "extn_id": "basic_constraints",
                    "critical": True,
                    "extn_value": x509.BasicConstraints({"ca": False}),
                },
                {
                    "extn_id": "key_usage",
                    "critical": True,
                    "extn_value": x509.KeyUsage({"digital_signature", "non_repudiation"}),
                },
            ],
        })

        signature = self.sign_message(tbs.dump(), key_id=key_id, algorithm=algorithm)
        certificate = x509.Certificate({
            "tbs_certificate": tbs,
            "signature_algorithm": mechanism,
            "signature_value": signature,
        })
        _certificate_cache[cache_key] = certificate
        while len(_certificate_cache) > settings.CERTIFICATE_CACHE_SIZE:
            _certificate_cache.popitem(last=False)
        logger.info(f"Built signing certificate for KMS key {key_id} ({subject.get('common_name')})")
        return certificate


def certificate_subject(full_name: Optional[str], email: Optional[str]) -> Dict[str, str]:
    subject = {
        "common_name": full_name or email or "Signer",
        "organization_name": settings.CERTIFICATE_ORGANIZATION,
        "country_name": settings.CERTIFICATE_COUNTRY,
    }
    if email:
        subject["email_address"] = email
    return subject


def clear_certificate_cache() -> None:
    _certificate_cache.clear()
