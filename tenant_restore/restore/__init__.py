"""Schema-level restore workflow.

This module provides the restore saga and its collaborators: provisioning of
an ephemeral database, temporal credential resolution, DDL extraction and
classification, per-schema data migration, and guaranteed compensation.

Classes:
    RestoreOrchestrator: Saga controller for one restore run
    EphemeralDatabaseProvisioner: Creates, polls and describes clones
    CredentialResolver: Finds the credential version valid at a point in time
    MigrationCoordinator: Runs one replication task per schema and joins
    CompensationManager: Idempotent parallel teardown of run resources
    ResourceDeleter: Per-resource-type deletion strategies with retries
    SafetyChecker: Refuses deletion of resources outside the run scope
    AuditStorage: Restore ledger backends (DynamoDB, YAML files)
"""

from __future__ import annotations

__all__ = [
    "RestoreOrchestrator",
    "EphemeralDatabaseProvisioner",
    "CredentialResolver",
    "MigrationCoordinator",
    "CompensationManager",
    "ResourceDeleter",
    "SafetyChecker",
    "AuditStorage",
]
