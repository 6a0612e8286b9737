"""Boto3 client factory.

All AWS access goes through ``create_boto_client`` so that profile, region
and retry behaviour are configured in one place and tests can patch a single
symbol per module.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig

logger = logging.getLogger(__name__)

# Adaptive retries absorb API throttling during long polling phases
DEFAULT_BOTO_CONFIG = BotoConfig(
    retries={"max_attempts": 10, "mode": "adaptive"},
    connect_timeout=10,
    read_timeout=60,
)


def create_boto_session(profile_name: Optional[str] = None, region_name: Optional[str] = None) -> boto3.Session:
    """Create a boto3 session.

    Args:
        profile_name: AWS profile name (optional)
        region_name: AWS region (optional, falls back to profile/env default)

    Returns:
        Configured boto3 Session
    """
    if profile_name:
        return boto3.Session(profile_name=profile_name, region_name=region_name)
    return boto3.Session(region_name=region_name)


def create_boto_client(
    service_name: str,
    region_name: Optional[str] = None,
    profile_name: Optional[str] = None,
) -> Any:
    """Create a boto3 client for a service.

    Args:
        service_name: AWS service name (e.g., "rds", "dms")
        region_name: AWS region (optional)
        profile_name: AWS profile name (optional)

    Returns:
        boto3 client for the service
    """
    session = create_boto_session(profile_name=profile_name, region_name=region_name)
    logger.debug(f"Creating {service_name} client (region={region_name or session.region_name})")
    return session.client(service_name, config=DEFAULT_BOTO_CONFIG)
