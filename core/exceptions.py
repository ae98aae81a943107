"""Custom exceptions for the Fleetguard engine."""

from __future__ import annotations


class FleetguardError(Exception):
    """Base exception for all Fleetguard errors."""


class ConfigurationError(FleetguardError):
    """Raised when configuration is invalid or missing."""


class StorageError(FleetguardError):
    """Raised when the persistence provider fails."""


class ProviderNotFoundError(FleetguardError):
    """Raised when a requested integration provider is not registered."""

    def __init__(self, category: str, provider: str | None = None):
        self.category = category
        self.provider = provider
        detail = f" (provider={provider})" if provider else ""
        super().__init__(f"No provider found for category '{category}'{detail}")


class CatalogParseError(FleetguardError):
    """Raised when an action or workflow catalog YAML file cannot be parsed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"Failed to parse catalog '{path}': {reason}")


class AdmissionRejected(FleetguardError):
    """Raised when an execute request fails an admission gate. No run is created."""

    def __init__(self, reason: str, status: int, detail: str = ""):
        self.reason = reason
        self.status = status
        self.detail = detail
        suffix = f": {detail}" if detail else ""
        super().__init__(f"Admission rejected ({reason}){suffix}")


class RunNotFoundError(FleetguardError):
    """Raised when a remediation run id does not exist."""

    status = 404

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Remediation run '{run_id}' not found")


class RunConflictError(FleetguardError):
    """Raised when a run is not in the state an operation requires."""

    status = 409

    def __init__(self, run_id: str, message: str):
        self.run_id = run_id
        super().__init__(f"Run '{run_id}': {message}")


class IncidentEngineError(FleetguardError):
    """Raised for incident transition errors; carries an HTTP-style status."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(message)


class FleetRolloutError(FleetguardError):
    """Raised when a fleet preview or stage request is invalid."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(message)
