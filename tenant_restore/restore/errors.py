"""Restore workflow exceptions.

Each exception carries a ``kind`` used in audit records and CLI output.
"""

from __future__ import annotations

from typing import Optional

from ..utils.polling import PollTimeoutError


class RestoreError(Exception):
    """Base class for restore-domain errors."""

    kind = "restore"

    def __init__(self, message: str, phase: Optional[str] = None) -> None:
        super().__init__(message)
        self.phase = phase


class RequestValidationError(RestoreError):
    """Raised when a restore request is missing fields or is contradictory."""

    kind = "validation"


class ProvisioningError(RestoreError):
    """Raised when the ephemeral database cannot be created or never becomes available."""

    kind = "provisioning"


class NoCredentialAtTime(RestoreError):
    """Raised when no credential version existed at the target time."""

    kind = "resolution"


class ExtractionError(RestoreError):
    """Raised when structure extraction from the ephemeral database fails."""

    kind = "extraction"


class DDLApplyError(RestoreError):
    """Raised when a DDL document cannot be applied to production."""

    kind = "ddl-apply"


class ConnectivityError(RestoreError):
    """Raised when a replication endpoint cannot reach its database."""

    kind = "connectivity"


class MigrationError(RestoreError):
    """Raised when one or more migration units fail."""

    kind = "migration"


class CleanupError(RestoreError):
    """Recorded when a temporary resource could not be deleted.

    Never raised out of compensation.
    """

    kind = "cleanup"


class PhaseTimeoutError(PollTimeoutError, RestoreError):
    """Raised when a polled phase exceeds its time bound."""

    kind = "timeout"

    def __init__(self, description: str, timeout: float) -> None:
        PollTimeoutError.__init__(self, description, timeout)
        self.phase = None
