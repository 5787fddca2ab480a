# config.py
"""
Settings for the signing service, read from environment variables.

A .env file is loaded first when present, so local runs behave like the
deployed Lambda environment.
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _csv(value: str) -> list:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """Application settings loaded from environment."""

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # Auth
    JWT_SECRET: str = os.getenv("JWT_SECRET", "")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    JWT_AUDIENCE: str = os.getenv("JWT_AUDIENCE", "authenticated")

    # AWS
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")
    DOCUMENTS_BUCKET: str = os.getenv("DOCUMENTS_BUCKET", "")
    KMS_SIGNER_KEY_ID: str = os.getenv("KMS_SIGNER_KEY_ID", "")
    KMS_SIGNING_ALGORITHM: str = os.getenv("KMS_SIGNING_ALGORITHM", "RSASSA_PSS_SHA_256")
    EVENT_BUS_NAME: str = os.getenv("EVENT_BUS_NAME", "default")
    EVENT_SOURCE: str = os.getenv("EVENT_SOURCE", "signature-service")

    # Certificates generated from the KMS public key
    CERTIFICATE_VALIDITY_DAYS: int = int(os.getenv("CERTIFICATE_VALIDITY_DAYS", "365"))
    CERTIFICATE_ORGANIZATION: str = os.getenv("CERTIFICATE_ORGANIZATION", "eSign Service")
    CERTIFICATE_COUNTRY: str = os.getenv("CERTIFICATE_COUNTRY", "US")
    CERTIFICATE_CACHE_SIZE: int = int(os.getenv("CERTIFICATE_CACHE_SIZE", "128"))

    # Envelopes
    MAX_PDF_BYTES: int = int(os.getenv("MAX_PDF_BYTES", str(50 * 1024 * 1024)))
    MAX_PARTICIPANTS: int = int(os.getenv("MAX_PARTICIPANTS", "50"))
    INVITATION_TOKEN_TTL_DAYS: int = int(os.getenv("INVITATION_TOKEN_TTL_DAYS", "7"))
    DOWNLOAD_URL_TTL_SECONDS: int = int(os.getenv("DOWNLOAD_URL_TTL_SECONDS", "900"))

    # Reminders
    MAX_REMINDERS_PER_SIGNER: int = int(os.getenv("MAX_REMINDERS_PER_SIGNER", "3"))
    MIN_HOURS_BETWEEN_REMINDERS: int = int(os.getenv("MIN_HOURS_BETWEEN_REMINDERS", "24"))

    # Outbox
    OUTBOX_BATCH_LIMIT: int = int(os.getenv("OUTBOX_BATCH_LIMIT", "100"))
    OUTBOX_MAX_ATTEMPTS: int = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))

    # Notifications
    SIGNING_APP_URL: str = os.getenv("SIGNING_APP_URL", "http://localhost:5173")
    NOTIFICATIONS_FROM_EMAIL: str = os.getenv("NOTIFICATIONS_FROM_EMAIL", "no-reply@example.com")
    NOTIFICATION_MAX_RETRIES: int = int(os.getenv("NOTIFICATION_MAX_RETRIES", "3"))
    NOTIFICATION_PENDING_STALE_MINUTES: int = int(os.getenv("NOTIFICATION_PENDING_STALE_MINUTES", "15"))

    # HTTP
    CORS_ORIGINS: list = _csv(os.getenv(
        "CORS_ORIGINS", "http://localhost:5173,http://localhost:3000"
    ))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
