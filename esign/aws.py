# aws.py
"""boto3 clients, created on first use and reused across Lambda invocations."""

import logging
from typing import Any, Dict

import boto3
from botocore.config import Config

from .config import settings

logger = logging.getLogger(__name__)

BOTO_CONFIG = Config(
    retries={"max_attempts": 3, "mode": "adaptive"},
    read_timeout=30,
    connect_timeout=5,
)

_clients: Dict[str, Any] = {}


def get_client(service_name: str) -> Any:
    """Get or create the client for an AWS service ('s3', 'kms', 'events', 'ses', 'sns')."""
    client = _clients.get(service_name)
    if client is None:
        logger.debug(f"Creating boto3 client for {service_name}")
        client = boto3.client(service_name, region_name=settings.AWS_REGION, config=BOTO_CONFIG)
        _clients[service_name] = client
    return client


def reset_clients() -> None:
    """Drop cached clients (tests swap AWS backends between cases)."""
    _clients.clear()
