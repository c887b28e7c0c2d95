"""Error taxonomy shared by the orchestrator, provider client and API layer."""

from __future__ import annotations


class RecoveryError(Exception):
    """Base class for errors raised by this service."""


class NotFoundError(RecoveryError):
    """A referenced task or instance does not exist."""


class ConflictError(RecoveryError):
    """Invalid state transition or duplicate annual task."""


class ProviderError(RecoveryError):
    """The cloud provider rejected or failed a request."""


class RecoveryTimeoutError(RecoveryError):
    """A recovery step exceeded its time ceiling."""
