"""Control-plane client contract.

The reconciler never talks to the cloud directly. Everything it needs is
expressed through the ControlPlaneClient protocol below; concrete clients
(Azure CLI wrappers, Azure SDK adapters, in-memory fakes) are supplied by
the caller. Credentials are the client's concern and assumed to be in
place before a run starts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Protocol, runtime_checkable


class ResourceKind(str, Enum):
    """Kinds of control-plane resources managed by the provisioner."""

    PROVIDER = "provider"
    CLI_EXTENSION = "cliExtension"
    RESOURCE_GROUP = "resourceGroup"
    CONTAINER_REGISTRY = "containerRegistry"
    REGISTRY_IMAGE = "registryImage"
    STORAGE_ACCOUNT = "storageAccount"
    FILE_SHARE = "fileShare"
    VIRTUAL_NETWORK = "virtualNetwork"
    SUBNET = "subnet"
    PRIVATE_ENDPOINT = "privateEndpoint"
    PRIVATE_DNS_ZONE = "privateDnsZone"
    PRIVATE_DNS_LINK = "privateDnsLink"
    PRIVATE_DNS_ZONE_GROUP = "privateDnsZoneGroup"
    CONTAINER_APP_ENVIRONMENT = "containerAppEnvironment"
    ENVIRONMENT_STORAGE = "environmentStorage"
    CONTAINER_APP = "containerApp"
    ROLE_ASSIGNMENT = "roleAssignment"


class Absent(Enum):
    """Marker type for a resource that does not exist."""

    ABSENT = "absent"

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = Absent.ABSENT


@dataclass(frozen=True)
class ResourceState:
    """Observed state of a single resource as reported by the control plane."""

    kind: ResourceKind
    name: str
    properties: dict[str, Any] = field(default_factory=dict)
    resource_id: str | None = None

    def lookup(self, path: str, default: Any = None) -> Any:
        """Read a nested property using a dotted path.

        Args:
            path: Dotted path such as "identity.principalId".
            default: Value returned when any segment is missing.

        Returns:
            The property value or ``default``.
        """
        current: Any = self.properties
        for segment in path.split("."):
            if not isinstance(current, dict) or segment not in current:
                return default
            current = current[segment]
        return current


Observed = ResourceState | Literal[Absent.ABSENT]


@dataclass(frozen=True)
class Ack:
    """Acknowledgement for calls that return no resource state."""

    operation: str
    target: str
    changed: bool = True


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as reported by whoami()."""

    principal_id: str
    name: str | None = None
    tenant_id: str | None = None
    subscription_id: str | None = None


@dataclass(frozen=True)
class ProbeResult:
    """Output of a command executed inside a running container."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class ControlPlaneClient(Protocol):
    """Operations the reconciler requires from the cloud control plane.

    Implementations raise subclasses of errors.ControlPlaneError (or
    azure-core exceptions, which the reconciler translates).
    """

    def get(self, kind: ResourceKind, name: str) -> Observed:
        """Return the current state of a resource, or ABSENT."""
        ...

    def create(self, kind: ResourceKind, name: str, spec: dict[str, Any]) -> ResourceState:
        """Create a resource from a declarative spec.

        Raises ConflictError when created concurrently, InvalidSpecError for
        a malformed spec and AuthError when permission is missing.
        """
        ...

    def update(self, kind: ResourceKind, name: str, patch: dict[str, Any]) -> ResourceState:
        """Apply a flat field patch."""
        ...

    def apply_structured_patch(
        self, kind: ResourceKind, name: str, fragment: dict[str, Any]
    ) -> ResourceState:
        """Merge a nested document fragment into the resource configuration."""
        ...

    def delete(self, kind: ResourceKind, name: str) -> Ack:
        """Delete a resource. Only used to recreate degraded resources."""
        ...

    def assign_role(self, principal_id: str, role: str, scope: str) -> Ack:
        """Grant a role at a scope. Re-granting an existing assignment is a no-op."""
        ...

    def whoami(self) -> Principal:
        """Return the authenticated principal or raise NotLoggedInError."""
        ...


@runtime_checkable
class VerificationProbe(Protocol):
    """Executes shell commands inside a deployed container app."""

    def exec(self, app_name: str, command: str) -> ProbeResult:
        ...
