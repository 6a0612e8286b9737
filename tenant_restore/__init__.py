"""Tenant Schema Restore - point-in-time restore of individual tenant schemas."""

__version__ = "0.1.0"
