"""Resource nodes: the uniform probe / reconcile / postcondition contract.

Every resource kind is handled through ResourceNode or one of its variants:

- ResourceNode: create when absent, delete-then-create when degraded
- ProviderRegistrationNode: register and block until Registered
- PatchNode: flat field update on a resource created by another node
- EnvVarsNode: PatchNode that merges into the existing env var mapping
- StructuredPatchNode: nested document merge (volumes, volume mounts)
- IdentityNode: system identity on the app, waits for its principal
- RoleAssignmentNode: idempotent role grant for the app principal

Nodes are immutable. Anything learned during a run (observed states,
principal ids) lives in the RunContext, which is discarded afterwards.
"""

from __future__ import annotations

import copy
import logging
import re
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from azure.core.exceptions import ResourceExistsError

from .client import ABSENT, ControlPlaneClient, Observed, ResourceKind, ResourceState
from .errors import ConflictError, DependencyUnready, ResourceNotFoundError
from .polling import PollPolicy, wait_until

logger = logging.getLogger(__name__)

ACA_DELEGATION = "Microsoft.App/environments"
SYSTEM_ASSIGNED = "SystemAssigned"
USER_ASSIGNED = "UserAssigned"

# Well-known Azure built-in role GUIDs (identical across tenants)
BUILTIN_ROLES: dict[str, str] = {
    "AcrPull": "7f951dda-4ed3-4680-a7ca-43fe172d538d",
    "Storage File Data SMB Share Contributor": "0c867c2a-1d8c-454a-a3db-ab2ea1bdc8bb",
}

VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"

# Keys identifying entries of named lists inside a container app template
LIST_IDENTITY_KEYS: tuple[str, ...] = ("name", "volumeName")


class Outcome(str, Enum):
    """Per-node result of a reconciliation run."""

    CREATED = "created"
    UPDATED = "updated"
    RECREATED = "recreated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class NodeOutcome:
    """What a node did during reconcile()."""

    outcome: Outcome
    detail: str = ""
    state: ResourceState | None = None


@dataclass
class RunContext:
    """Per-run scratch space shared by the nodes of one run."""

    principal_poll: PollPolicy = field(default_factory=PollPolicy)
    provider_poll: PollPolicy = field(default_factory=PollPolicy)
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    states: dict[str, ResourceState] = field(default_factory=dict)
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)

    def publish(self, node_id: str, **values: Any) -> None:
        self.outputs.setdefault(node_id, {}).update(values)

    def output(self, node_id: str, key: str) -> Any:
        return self.outputs.get(node_id, {}).get(key)


def freeze(value: Any) -> Any:
    """Return a read-only deep copy of a JSON-like value."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of freeze(): plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


def flatten(document: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested mappings into dotted paths. Lists are leaves."""
    flat: dict[str, Any] = {}
    for key, value in document.items():
        path = f"{prefix}{key}"
        if isinstance(value, Mapping) and value:
            flat.update(flatten(value, f"{path}."))
        else:
            flat[path] = thaw(value)
    return flat


def merge_template_fragment(base: Any, fragment: Any) -> Any:
    """Merge a structured patch fragment into a resource document.

    Mappings merge recursively. Lists whose entries are mappings carrying a
    "name" or "volumeName" key merge entry by entry on that key, so applying
    the same fragment twice never duplicates volumes or mounts. Any other
    value in the fragment replaces the base value.

    Neither argument is modified.
    """
    if isinstance(base, Mapping) and isinstance(fragment, Mapping):
        merged = {k: copy.deepcopy(thaw(v)) for k, v in base.items()}
        for key, value in fragment.items():
            merged[key] = merge_template_fragment(merged.get(key), value)
        return merged

    if isinstance(base, (list, tuple)) and isinstance(fragment, (list, tuple)):
        key = _list_identity_key(fragment)
        if key is not None and _list_identity_key(base) in (key, None):
            merged_list = [copy.deepcopy(thaw(item)) for item in base]
            for item in fragment:
                for index, existing in enumerate(merged_list):
                    if isinstance(existing, Mapping) and existing.get(key) == item[key]:
                        merged_list[index] = merge_template_fragment(existing, item)
                        break
                else:
                    merged_list.append(copy.deepcopy(thaw(item)))
            return merged_list

    return copy.deepcopy(thaw(fragment))


def _list_identity_key(items: Any) -> str | None:
    if not items or not all(isinstance(item, Mapping) for item in items):
        return None
    for key in LIST_IDENTITY_KEYS:
        if all(key in item for item in items):
            return key
    return None


def role_definition_id(role: str) -> str:
    """Map a built-in role name to its GUID, or accept a custom role GUID.

    Raises:
        ValueError: If the role is neither a known built-in nor a GUID.
    """
    if role in BUILTIN_ROLES:
        return BUILTIN_ROLES[role]
    if not re.match(VALID_GUID_PATTERN, role.lower()):
        raise ValueError(
            f"Role '{role}' is not a recognized built-in role and is not a valid GUID"
        )
    return role.lower()


def role_assignment_name(principal_id: str, role: str, scope: str) -> str:
    """Deterministic assignment name: same principal, role and scope give the same id.

    Clients implementing assign_role() store the assignment under this name
    so that get(ROLE_ASSIGNMENT, name) finds it on the next run.
    """
    return str(
        uuid.uuid5(uuid.NAMESPACE_DNS, f"{principal_id}:{role_definition_id(role)}:{scope.lower()}")
    )


def resource_ref(state: ResourceState | None, kind: ResourceKind, name: str) -> str:
    """Resource id of an observed state, or a logical reference when unknown."""
    if state is not None and state.resource_id:
        return state.resource_id
    return f"{kind.value}/{name}"


@dataclass(frozen=True, kw_only=True)
class ResourceNode:
    """A resource that is created when absent and recreated when degraded.

    ``expected`` maps dotted property paths to required values; a present
    resource that does not match is degraded. ``check`` adds an arbitrary
    predicate on top.
    """

    id: str
    kind: ResourceKind
    name: str
    depends_on: tuple[str, ...] = ()
    desired_spec: Mapping[str, Any] = field(default_factory=dict)
    expected: Mapping[str, Any] = field(default_factory=dict)
    check: Callable[[ResourceState], bool] | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("node id must not be empty")
        if not self.name:
            raise ValueError(f"node '{self.id}' needs a resource name")
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        object.__setattr__(self, "desired_spec", freeze(self.desired_spec))
        object.__setattr__(self, "expected", freeze(self.expected))

    def spec_document(self) -> dict[str, Any]:
        """Mutable copy of the desired spec for handing to a client."""
        return thaw(self.desired_spec)

    def probe(self, client: ControlPlaneClient, context: RunContext) -> Observed:
        return client.get(self.kind, self.name)

    def postcondition(self, state: ResourceState) -> bool:
        for path, value in self.expected.items():
            if state.lookup(path) != thaw(value):
                return False
        if self.check is not None and not self.check(state):
            return False
        return True

    def reconcile(
        self, client: ControlPlaneClient, state: Observed, context: RunContext
    ) -> NodeOutcome:
        if state is ABSENT:
            try:
                created = client.create(self.kind, self.name, self.spec_document())
            except (ConflictError, ResourceExistsError):
                # Created by another writer since the probe
                state = self.probe(client, context)
                if state is ABSENT:
                    raise
                logger.warning(
                    "Resource appeared after probe",
                    extra={"node": self.id, "kind": self.kind.value, "resource_name": self.name},
                )
            else:
                self._verify(created, "create")
                return NodeOutcome(Outcome.CREATED, "created", created)

        if self.postcondition(state):
            return NodeOutcome(Outcome.SKIPPED, "already satisfied", state)

        return self.heal(client, state, context)

    def heal(
        self, client: ControlPlaneClient, state: ResourceState, context: RunContext
    ) -> NodeOutcome:
        """Repair a degraded resource: delete it and create it again."""
        logger.warning(
            "Resource degraded, recreating",
            extra={"node": self.id, "kind": self.kind.value, "resource_name": self.name},
        )
        client.delete(self.kind, self.name)
        created = client.create(self.kind, self.name, self.spec_document())
        self._verify(created, "recreate")
        return NodeOutcome(Outcome.RECREATED, "was degraded", created)

    def _verify(self, state: ResourceState, action: str) -> None:
        if not self.postcondition(state):
            raise ConflictError(
                f"{self.kind.value} '{self.name}' does not satisfy its postcondition after {action}"
            )


@dataclass(frozen=True, kw_only=True)
class ProviderRegistrationNode(ResourceNode):
    """Resource provider that must reach the Registered state before use."""

    kind: ResourceKind = ResourceKind.PROVIDER
    expected: Mapping[str, Any] = field(
        default_factory=lambda: {"registrationState": "Registered"}
    )

    def reconcile(
        self, client: ControlPlaneClient, state: Observed, context: RunContext
    ) -> NodeOutcome:
        if state is not ABSENT and self.postcondition(state):
            return NodeOutcome(Outcome.SKIPPED, "already registered", state)

        client.create(self.kind, self.name, self.spec_document())
        registered = self._wait_registered(client, context)
        outcome = Outcome.CREATED if state is ABSENT else Outcome.UPDATED
        return NodeOutcome(outcome, "registered", registered)

    def _wait_registered(self, client: ControlPlaneClient, context: RunContext) -> ResourceState:
        def fetch() -> ResourceState | None:
            current = client.get(self.kind, self.name)
            if current is not ABSENT and self.postcondition(current):
                return current
            return None

        return wait_until(
            fetch,
            what=f"provider {self.name} registration",
            policy=context.provider_poll,
            sleep=context.sleep,
            clock=context.clock,
        )


@dataclass(frozen=True, kw_only=True)
class PatchNode(ResourceNode):
    """Flat field update on a resource owned by another node.

    ``desired_spec`` is the patch. The node is satisfied when every leaf of
    the patch already matches the observed state.
    """

    def probe(self, client: ControlPlaneClient, context: RunContext) -> Observed:
        state = client.get(self.kind, self.name)
        if state is ABSENT:
            raise ResourceNotFoundError(
                f"Cannot patch {self.kind.value} '{self.name}': resource does not exist"
            )
        return state

    def postcondition(self, state: ResourceState) -> bool:
        for path, value in flatten(self.desired_spec).items():
            if state.lookup(path) != value:
                return False
        return super().postcondition(state)

    def build_patch(self, state: ResourceState) -> dict[str, Any]:
        return self.spec_document()

    def reconcile(
        self, client: ControlPlaneClient, state: Observed, context: RunContext
    ) -> NodeOutcome:
        if state is ABSENT:
            state = self.probe(client, context)
        if self.postcondition(state):
            return NodeOutcome(Outcome.SKIPPED, "already satisfied", state)
        return self.heal(client, state, context)

    def heal(
        self, client: ControlPlaneClient, state: ResourceState, context: RunContext
    ) -> NodeOutcome:
        updated = client.update(self.kind, self.name, self.build_patch(state))
        self._verify(updated, "update")
        return NodeOutcome(Outcome.UPDATED, "patched", updated)


@dataclass(frozen=True, kw_only=True)
class EnvVarsNode(PatchNode):
    """Sets environment variables without dropping ones already on the app."""

    field_name: str = "envVars"

    def build_patch(self, state: ResourceState) -> dict[str, Any]:
        current = state.lookup(self.field_name) or {}
        desired = self.spec_document().get(self.field_name, {})
        return {self.field_name: {**current, **desired}}


@dataclass(frozen=True, kw_only=True)
class StructuredPatchNode(PatchNode):
    """Nested document merge applied with apply_structured_patch().

    Satisfied when merging the fragment into the observed properties
    changes nothing.
    """

    def postcondition(self, state: ResourceState) -> bool:
        fragment = self.spec_document()
        return merge_template_fragment(state.properties, fragment) == state.properties

    def heal(
        self, client: ControlPlaneClient, state: ResourceState, context: RunContext
    ) -> NodeOutcome:
        patched = client.apply_structured_patch(self.kind, self.name, self.spec_document())
        self._verify(patched, "structured patch")
        return NodeOutcome(Outcome.UPDATED, "structured patch applied", patched)


@dataclass(frozen=True, kw_only=True)
class IdentityNode(PatchNode):
    """System-assigned identity on an app, published once its principal exists.

    The principal id is eventually consistent; instead of sleeping a fixed
    time it is polled with backoff until context.principal_poll expires.
    """

    kind: ResourceKind = ResourceKind.CONTAINER_APP
    desired_spec: Mapping[str, Any] = field(
        default_factory=lambda: {"identity": {"type": SYSTEM_ASSIGNED}}
    )
    principal_path: str = "identity.principalId"

    def postcondition(self, state: ResourceState) -> bool:
        identity_type = state.lookup("identity.type") or ""
        return SYSTEM_ASSIGNED in identity_type and bool(state.lookup(self.principal_path))

    def reconcile(
        self, client: ControlPlaneClient, state: Observed, context: RunContext
    ) -> NodeOutcome:
        if state is ABSENT:
            state = self.probe(client, context)

        if self.postcondition(state):
            self._publish(state, context)
            return NodeOutcome(Outcome.SKIPPED, "identity present", state)

        identity_type = state.lookup("identity.type") or ""
        if SYSTEM_ASSIGNED not in identity_type:
            client.update(self.kind, self.name, self.identity_patch(state))

        ready = self._wait_principal(client, context)
        self._publish(ready, context)
        return NodeOutcome(Outcome.UPDATED, "identity assigned", ready)

    def identity_patch(self, state: ResourceState) -> dict[str, Any]:
        """Add the system identity, keeping user-assigned identities in place."""
        identity_type = state.lookup("identity.type") or ""
        if USER_ASSIGNED not in identity_type:
            return self.spec_document()
        return {
            "identity": {
                "type": f"{SYSTEM_ASSIGNED},{USER_ASSIGNED}",
                "userAssignedIdentities": state.lookup("identity.userAssignedIdentities") or {},
            }
        }

    def _wait_principal(self, client: ControlPlaneClient, context: RunContext) -> ResourceState:
        def fetch() -> ResourceState | None:
            current = client.get(self.kind, self.name)
            if current is ABSENT:
                raise ResourceNotFoundError(
                    f"{self.kind.value} '{self.name}' disappeared while waiting for its identity"
                )
            return current if self.postcondition(current) else None

        return wait_until(
            fetch,
            what=f"principal of {self.name}",
            policy=context.principal_poll,
            sleep=context.sleep,
            clock=context.clock,
        )

    def _publish(self, state: ResourceState, context: RunContext) -> None:
        principal_id = state.lookup(self.principal_path)
        context.publish(self.id, principal_id=principal_id)
        logger.info(
            "Identity principal available",
            extra={"node": self.id, "app": self.name, "principal_id": principal_id},
        )


@dataclass(frozen=True, kw_only=True)
class RoleAssignmentNode(ResourceNode):
    """Grants ``role`` to the principal published by ``identity_node``.

    The scope is the resource id observed for ``scope_node`` earlier in the
    run. ``name`` is only the logical label; the assignment is probed by its
    deterministic name.
    """

    kind: ResourceKind = ResourceKind.ROLE_ASSIGNMENT
    role: str
    identity_node: str
    scope_node: str

    def __post_init__(self) -> None:
        super().__post_init__()
        role_definition_id(self.role)
        missing = {self.identity_node, self.scope_node} - set(self.depends_on)
        if missing:
            raise ValueError(f"node '{self.id}' must depend on {sorted(missing)}")

    def principal_id(self, context: RunContext) -> str:
        principal_id = context.output(self.identity_node, "principal_id")
        if not principal_id:
            raise DependencyUnready(
                f"No principal published by '{self.identity_node}'; cannot grant {self.role}"
            )
        return principal_id

    def scope(self, context: RunContext) -> str:
        scope_state = context.states.get(self.scope_node)
        if scope_state is None:
            raise DependencyUnready(f"Scope '{self.scope_node}' has not been observed in this run")
        return resource_ref(scope_state, scope_state.kind, scope_state.name)

    def assignment_name(self, context: RunContext) -> str:
        return role_assignment_name(self.principal_id(context), self.role, self.scope(context))

    def probe(self, client: ControlPlaneClient, context: RunContext) -> Observed:
        return client.get(self.kind, self.assignment_name(context))

    def reconcile(
        self, client: ControlPlaneClient, state: Observed, context: RunContext
    ) -> NodeOutcome:
        if state is not ABSENT:
            return NodeOutcome(Outcome.SKIPPED, "already assigned", state)

        principal_id = self.principal_id(context)
        scope = self.scope(context)
        client.assign_role(principal_id, self.role, scope)
        granted = ResourceState(
            kind=self.kind,
            name=role_assignment_name(principal_id, self.role, scope),
            properties={"principalId": principal_id, "role": self.role, "scope": scope},
        )
        return NodeOutcome(Outcome.CREATED, f"granted {self.role}", granted)
