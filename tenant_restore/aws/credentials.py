"""AWS credential validation helpers."""

from __future__ import annotations

from typing import Dict, Optional

from botocore.exceptions import ClientError, NoCredentialsError, ProfileNotFound

from .client import create_boto_client


class CredentialValidationError(Exception):
    """Raised when AWS credentials are missing or invalid."""


def validate_credentials(profile_name: Optional[str] = None, region_name: Optional[str] = None) -> Dict[str, str]:
    """Validate credentials and return caller identity details.

    Returns:
        Dictionary with account_id and arn of the caller

    Raises:
        CredentialValidationError: If credentials cannot be resolved or are rejected
    """
    try:
        sts = create_boto_client("sts", region_name=region_name, profile_name=profile_name)
        identity = sts.get_caller_identity()
    except (NoCredentialsError, ProfileNotFound) as e:
        raise CredentialValidationError(f"AWS credentials not available: {e}") from e
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "Unknown")
        raise CredentialValidationError(f"AWS credentials rejected ({code})") from e

    return {"account_id": identity["Account"], "arn": identity["Arn"]}
