"""Cloud provider contract and clients."""

from recovery_orchestrator.provider.base import (
    BackupSelector,
    CloneRequest,
    CloneResult,
    CloudProviderClient,
    DeleteResult,
    ProviderInstance,
    ValidationReport,
)
from recovery_orchestrator.provider.http_client import HttpCloudProviderClient

__all__ = [
    "BackupSelector",
    "CloneRequest",
    "CloneResult",
    "CloudProviderClient",
    "DeleteResult",
    "HttpCloudProviderClient",
    "ProviderInstance",
    "ValidationReport",
]
