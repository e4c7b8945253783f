"""Error taxonomy for control-plane operations.

Absence of a resource is not an error: clients return the ABSENT sentinel
from get() and the reconciler takes the create path. Everything raised here
is fatal for the current run. Nothing is rolled back; re-running the
deployment picks up already-satisfied resources as skipped.

Clients built on the Azure SDK may let azure-core exceptions escape. The
reconciler translates them with translate_azure_error() so the run result
always carries one of the classes below.
"""

from __future__ import annotations

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
)
from azure.core.exceptions import ResourceNotFoundError as AzureResourceNotFoundError


class ProvisioningError(Exception):
    """Base class for every error that aborts a provisioning run."""

    pass


class ControlPlaneError(ProvisioningError):
    """Raised when a control-plane call fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConflictError(ControlPlaneError):
    """Resource exists with an incompatible configuration or was created concurrently."""

    pass


class InvalidSpecError(ControlPlaneError):
    """The control plane rejected a malformed resource specification."""

    pass


class AuthError(ControlPlaneError):
    """Caller lacks permission or is not authenticated.

    Re-authenticate (az login) or grant the missing role, then re-run.
    """

    pass


class NotLoggedInError(AuthError):
    """No authenticated principal is available."""

    pass


class ResourceNotFoundError(ControlPlaneError):
    """A resource that an earlier step should have produced is missing."""

    pass


class DependencyUnready(ProvisioningError):
    """A dependency exists but is not yet usable (e.g. principal not propagated)."""

    pass


class DependencyTimeout(DependencyUnready):
    """A dependency did not become ready before its deadline."""

    def __init__(self, message: str, *, waited_seconds: float = 0.0) -> None:
        super().__init__(message)
        self.waited_seconds = waited_seconds


def translate_azure_error(error: AzureError) -> ControlPlaneError:
    """Map an azure-core exception onto the provisioning error taxonomy.

    Args:
        error: Exception raised by an Azure SDK based client.

    Returns:
        Equivalent ControlPlaneError subclass. The original is not chained
        here; callers use ``raise translated from error``.
    """
    status_code = getattr(error, "status_code", None)
    message = getattr(error, "message", None) or str(error)

    if isinstance(error, ClientAuthenticationError):
        return AuthError(message, status_code=status_code)
    if isinstance(error, ResourceExistsError):
        return ConflictError(message, status_code=status_code)
    if isinstance(error, AzureResourceNotFoundError):
        return ResourceNotFoundError(message, status_code=status_code)

    if isinstance(error, HttpResponseError):
        match status_code:
            case 401 | 403:
                return AuthError(message, status_code=status_code)
            case 409:
                return ConflictError(message, status_code=status_code)
            case 400 | 422:
                return InvalidSpecError(message, status_code=status_code)
            case 404:
                return ResourceNotFoundError(message, status_code=status_code)

    return ControlPlaneError(message, status_code=status_code)
