"""Safety checks for compensation deletions.

Evaluates resources before deletion so compensation can only ever remove
resources created by its own run.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from .naming import ResourceNames


class SafetyChecker:
    """Safety checker for run-scoped deletions.

    A resource may be deleted only if its identifier carries the run's
    deterministic prefix (or, for objects, the run's key prefix) and it is
    not one of the explicitly protected production identifiers.

    Attributes:
        names: Resource naming for the run being compensated
        protected_identifiers: Identifiers that are never deleted
    """

    def __init__(self, names: ResourceNames, protected_identifiers: Optional[Iterable[str]] = None) -> None:
        """Initialize safety checker.

        Args:
            names: Resource naming for the run
            protected_identifiers: Production identifiers to refuse outright
                (source instance/cluster id, production secret ARN)
        """
        self.names = names
        self.protected_identifiers = {i for i in (protected_identifiers or []) if i}

    def is_protected(self, resource: dict) -> Tuple[bool, Optional[str]]:
        """Check if a resource must not be deleted.

        Args:
            resource: Resource dictionary with ``resource_type`` and
                ``resource_id`` (and optionally ``name``)

        Returns:
            Tuple of (is_protected, reason)
        """
        resource_type = resource.get("resource_type", "")
        resource_id = resource.get("resource_id") or ""
        name = resource.get("name") or resource_id

        if not resource_id:
            return True, f"{resource_type} has no identifier"

        if resource_id in self.protected_identifiers or name in self.protected_identifiers:
            return True, f"{resource_type} {name} is a production resource"

        if not self.names.owns(name):
            return True, f"{resource_type} {name} does not belong to run {self.names.run_id}"

        return False, None

    def filter_deletable(self, resources: List[dict]) -> Tuple[List[dict], List[Tuple[dict, str]]]:
        """Split resources into deletable and protected.

        Returns:
            Tuple of (deletable, [(protected_resource, reason), ...])
        """
        deletable: List[dict] = []
        protected: List[Tuple[dict, str]] = []
        for resource in resources:
            is_protected, reason = self.is_protected(resource)
            if is_protected:
                protected.append((resource, reason or "protected"))
            else:
                deletable.append(resource)
        return deletable, protected
