"""Tests for resource nodes and their helpers."""

from __future__ import annotations

import uuid

import pytest
from control_plane_mock import MockControlPlaneClient
from control_plane_mock.client import MOCK_PRINCIPAL_ID

from provisioner.client import ABSENT, ResourceKind, ResourceState
from provisioner.errors import (
    ConflictError,
    DependencyTimeout,
    DependencyUnready,
    ResourceNotFoundError,
)
from provisioner.nodes import (
    ACA_DELEGATION,
    BUILTIN_ROLES,
    EnvVarsNode,
    IdentityNode,
    Outcome,
    PatchNode,
    ProviderRegistrationNode,
    ResourceNode,
    RoleAssignmentNode,
    RunContext,
    StructuredPatchNode,
    flatten,
    freeze,
    merge_template_fragment,
    role_assignment_name,
    role_definition_id,
    thaw,
)
from provisioner.polling import PollPolicy
from provisioner.topology import ACR_PULL_ROLE, STORAGE_SMB_ROLE

SUBNET = "vnet-notes/snet-aca"

VOLUME_FRAGMENT = {
    "template": {
        "volumes": [{"name": "azure-files", "storageType": "AzureFile", "storageName": "files"}],
        "containers": [
            {
                "name": "notes-api",
                "volumeMounts": [{"volumeName": "azure-files", "mountPath": "/mnt/notes"}],
            }
        ],
    }
}


@pytest.fixture
def context(instant_clock) -> RunContext:
    return RunContext(
        principal_poll=PollPolicy(timeout_seconds=30, interval_seconds=1, max_interval_seconds=4),
        provider_poll=PollPolicy(timeout_seconds=30, interval_seconds=1, max_interval_seconds=4),
        sleep=instant_clock.sleep,
        clock=instant_clock,
    )


def subnet_node() -> ResourceNode:
    return ResourceNode(
        id="ca-subnet",
        kind=ResourceKind.SUBNET,
        name=SUBNET,
        desired_spec={"addressPrefix": "10.20.0.0/23", "delegation": ACA_DELEGATION},
        expected={"delegation": ACA_DELEGATION},
    )


def run_node(node, client, context):
    state = node.probe(client, context)
    return node.reconcile(client, state, context)


class TestHelpers:
    """Tests for document helpers."""

    def test_freeze_is_read_only(self) -> None:
        frozen = freeze({"a": {"b": [1, 2]}})
        with pytest.raises(TypeError):
            frozen["a"] = 1  # type: ignore[index]
        assert frozen["a"]["b"] == (1, 2)

    def test_thaw_inverts_freeze(self) -> None:
        doc = {"a": {"b": [1, {"c": 2}]}, "d": "x"}
        assert thaw(freeze(doc)) == doc

    def test_flatten(self) -> None:
        assert flatten({"registry": {"server": "a", "identity": "system"}, "image": "i"}) == {
            "registry.server": "a",
            "registry.identity": "system",
            "image": "i",
        }

    def test_flatten_keeps_lists_and_empty_mappings(self) -> None:
        assert flatten({"a": [1], "b": {}}) == {"a": [1], "b": {}}


class TestMergeTemplateFragment:
    """Tests for structured patch merging."""

    def test_adds_volume_and_mount(self) -> None:
        base = {"image": "x", "template": {"containers": [{"name": "notes-api", "image": "x"}]}}
        merged = merge_template_fragment(base, VOLUME_FRAGMENT)

        assert merged["template"]["volumes"] == VOLUME_FRAGMENT["template"]["volumes"]
        container = merged["template"]["containers"][0]
        assert container["image"] == "x"
        assert container["volumeMounts"] == [
            {"volumeName": "azure-files", "mountPath": "/mnt/notes"}
        ]

    def test_applying_twice_changes_nothing(self) -> None:
        """No duplicate volume or mount entries on the second application."""
        base = {"template": {"containers": [{"name": "notes-api"}]}}
        once = merge_template_fragment(base, VOLUME_FRAGMENT)
        twice = merge_template_fragment(once, VOLUME_FRAGMENT)

        assert twice == once
        assert len(twice["template"]["volumes"]) == 1
        assert len(twice["template"]["containers"][0]["volumeMounts"]) == 1

    def test_existing_named_entries_preserved(self) -> None:
        base = {"template": {"volumes": [{"name": "scratch", "storageType": "EmptyDir"}]}}
        merged = merge_template_fragment(base, VOLUME_FRAGMENT)
        names = [v["name"] for v in merged["template"]["volumes"]]
        assert names == ["scratch", "azure-files"]

    def test_updates_entry_with_same_key(self) -> None:
        base = {"mounts": [{"volumeName": "azure-files", "mountPath": "/old"}]}
        fragment = {"mounts": [{"volumeName": "azure-files", "mountPath": "/new"}]}
        assert merge_template_fragment(base, fragment) == fragment

    def test_inputs_not_modified(self) -> None:
        base = {"template": {"containers": [{"name": "notes-api"}]}}
        merge_template_fragment(base, VOLUME_FRAGMENT)
        assert base == {"template": {"containers": [{"name": "notes-api"}]}}

    def test_plain_lists_replaced(self) -> None:
        assert merge_template_fragment({"args": ["a", "b"]}, {"args": ["c"]}) == {"args": ["c"]}


class TestRoles:
    """Tests for role resolution and deterministic assignment names."""

    def test_builtin_role(self) -> None:
        assert role_definition_id("AcrPull") == BUILTIN_ROLES["AcrPull"]

    def test_builtin_roles_match_granted_roles(self) -> None:
        assert set(BUILTIN_ROLES) == {ACR_PULL_ROLE, STORAGE_SMB_ROLE}
        assert role_definition_id(STORAGE_SMB_ROLE) == "0c867c2a-1d8c-454a-a3db-ab2ea1bdc8bb"

    def test_custom_guid_role(self) -> None:
        guid = "AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE"
        assert role_definition_id(guid) == guid.lower()

    def test_unknown_role(self) -> None:
        with pytest.raises(ValueError, match="not a recognized built-in role"):
            role_definition_id("Owner-ish")

    def test_assignment_name_deterministic(self) -> None:
        first = role_assignment_name("p1", "AcrPull", "/subscriptions/x/ACR")
        second = role_assignment_name("p1", "AcrPull", "/subscriptions/x/acr")
        assert first == second
        uuid.UUID(first)

    def test_assignment_name_differs_per_role(self) -> None:
        scope = "/subscriptions/x/st"
        assert role_assignment_name("p1", "AcrPull", scope) != role_assignment_name(
            "p1", "Storage File Data SMB Share Contributor", scope
        )


class TestResourceNode:
    """Tests for the create / skip / recreate contract."""

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(ValueError, match="needs a resource name"):
            ResourceNode(id="x", kind=ResourceKind.SUBNET, name="")

    def test_desired_spec_is_frozen(self) -> None:
        node = subnet_node()
        doc = node.spec_document()
        doc["delegation"] = "changed"
        assert node.spec_document()["delegation"] == ACA_DELEGATION

    def test_absent_is_created(self, context: RunContext) -> None:
        client = MockControlPlaneClient()
        outcome = run_node(subnet_node(), client, context)

        assert outcome.outcome == Outcome.CREATED
        assert client.count_calls("create") == 1

    def test_satisfied_is_skipped(self, context: RunContext) -> None:
        client = MockControlPlaneClient()
        client.seed(ResourceKind.SUBNET, SUBNET, {"delegation": ACA_DELEGATION})

        outcome = run_node(subnet_node(), client, context)

        assert outcome.outcome == Outcome.SKIPPED
        assert client.mutating_calls() == []

    def test_degraded_is_recreated(self, context: RunContext) -> None:
        client = MockControlPlaneClient()
        client.seed(ResourceKind.SUBNET, SUBNET, {"delegation": None})

        outcome = run_node(subnet_node(), client, context)

        assert outcome.outcome == Outcome.RECREATED
        assert [c.operation for c in client.mutating_calls()] == ["delete", "create"]
        assert client.state.get(ResourceKind.SUBNET, SUBNET).properties["delegation"] == (
            ACA_DELEGATION
        )

    def test_check_predicate(self) -> None:
        node = ResourceNode(
            id="x",
            kind=ResourceKind.STORAGE_ACCOUNT,
            name="st",
            check=lambda s: s.lookup("sku") == "Standard_LRS",
        )
        good = ResourceState(ResourceKind.STORAGE_ACCOUNT, "st", {"sku": "Standard_LRS"})
        bad = ResourceState(ResourceKind.STORAGE_ACCOUNT, "st", {"sku": "Premium_LRS"})
        assert node.postcondition(good)
        assert not node.postcondition(bad)

    def test_create_not_satisfying_postcondition_fails(self, context: RunContext) -> None:
        node = ResourceNode(
            id="ca-subnet",
            kind=ResourceKind.SUBNET,
            name=SUBNET,
            desired_spec={"addressPrefix": "10.20.0.0/23"},
            expected={"delegation": ACA_DELEGATION},
        )
        with pytest.raises(ConflictError, match="postcondition after create"):
            run_node(node, MockControlPlaneClient(), context)


class TestProviderRegistrationNode:
    """Tests for provider registration."""

    def test_registers_and_waits(self, context: RunContext, instant_clock) -> None:
        client = MockControlPlaneClient(registration_delay_reads=3)
        node = ProviderRegistrationNode(id="provider-microsoft-app", name="Microsoft.App")

        outcome = run_node(node, client, context)

        assert outcome.outcome == Outcome.CREATED
        assert outcome.state.lookup("registrationState") == "Registered"
        assert instant_clock.sleeps

    def test_registered_is_skipped(self, context: RunContext) -> None:
        client = MockControlPlaneClient()
        client.seed(ResourceKind.PROVIDER, "Microsoft.App", {"registrationState": "Registered"})
        node = ProviderRegistrationNode(id="provider-microsoft-app", name="Microsoft.App")

        assert run_node(node, client, context).outcome == Outcome.SKIPPED
        assert client.count_calls("create") == 0

    def test_unregistered_provider_is_updated(self, context: RunContext) -> None:
        client = MockControlPlaneClient()
        client.seed(ResourceKind.PROVIDER, "Microsoft.App", {"registrationState": "NotRegistered"})
        node = ProviderRegistrationNode(id="provider-microsoft-app", name="Microsoft.App")

        assert run_node(node, client, context).outcome == Outcome.UPDATED

    def test_registration_timeout(self, context: RunContext) -> None:
        client = MockControlPlaneClient(registration_delay_reads=10_000)
        node = ProviderRegistrationNode(id="provider-microsoft-app", name="Microsoft.App")

        with pytest.raises(DependencyTimeout, match="Microsoft.App registration"):
            run_node(node, client, context)


class TestPatchNodes:
    """Tests for flat, env var and structured patches."""

    def test_patch_missing_target_fails(self, context: RunContext) -> None:
        node = PatchNode(
            id="app-image", kind=ResourceKind.CONTAINER_APP, name="notes-api",
            desired_spec={"image": "acr/notes:v1"},
        )
        with pytest.raises(ResourceNotFoundError, match="does not exist"):
            node.probe(MockControlPlaneClient(), context)

    def test_patch_applied_then_skipped(self, context: RunContext) -> None:
        client = MockControlPlaneClient()
        client.seed(ResourceKind.CONTAINER_APP, "notes-api", {"image": "public:latest"})
        node = PatchNode(
            id="app-image", kind=ResourceKind.CONTAINER_APP, name="notes-api",
            desired_spec={"image": "acr/notes:v1"},
        )

        assert run_node(node, client, context).outcome == Outcome.UPDATED
        assert run_node(node, client, context).outcome == Outcome.SKIPPED
        assert client.count_calls("update") == 1

    def test_env_vars_merge_existing(self, context: RunContext) -> None:
        client = MockControlPlaneClient()
        client.seed(ResourceKind.CONTAINER_APP, "notes-api", {"envVars": {"KEEP": "1"}})
        node = EnvVarsNode(
            id="app-env-vars", kind=ResourceKind.CONTAINER_APP, name="notes-api",
            desired_spec={"envVars": {"NOTES_DIR": "/mnt/notes/notes"}},
        )

        assert run_node(node, client, context).outcome == Outcome.UPDATED
        env = client.state.get(ResourceKind.CONTAINER_APP, "notes-api").properties["envVars"]
        assert env == {"KEEP": "1", "NOTES_DIR": "/mnt/notes/notes"}

    def test_structured_patch_idempotent(self, context: RunContext) -> None:
        client = MockControlPlaneClient()
        client.seed(
            ResourceKind.CONTAINER_APP, "notes-api",
            {"template": {"containers": [{"name": "notes-api"}]}},
        )
        node = StructuredPatchNode(
            id="volume-mount-patch", kind=ResourceKind.CONTAINER_APP, name="notes-api",
            desired_spec=VOLUME_FRAGMENT,
        )

        assert run_node(node, client, context).outcome == Outcome.UPDATED
        after_first = client.state.snapshot()
        assert run_node(node, client, context).outcome == Outcome.SKIPPED
        assert client.state.snapshot() == after_first
        assert client.count_calls("apply_structured_patch") == 1


class TestIdentityNode:
    """Tests for identity assignment and principal polling."""

    def test_assigns_and_publishes_principal(self, context: RunContext) -> None:
        client = MockControlPlaneClient(principal_delay_reads=2)
        client.seed(ResourceKind.CONTAINER_APP, "notes-api", {"image": "public"})
        node = IdentityNode(id="app-identity", name="notes-api")

        outcome = run_node(node, client, context)

        assert outcome.outcome == Outcome.UPDATED
        assert context.output("app-identity", "principal_id") == MOCK_PRINCIPAL_ID

    def test_existing_identity_skipped(self, context: RunContext) -> None:
        client = MockControlPlaneClient()
        client.seed(
            ResourceKind.CONTAINER_APP, "notes-api",
            {"identity": {"type": "SystemAssigned", "principalId": "p-1"}},
        )
        node = IdentityNode(id="app-identity", name="notes-api")

        assert run_node(node, client, context).outcome == Outcome.SKIPPED
        assert client.count_calls("update") == 0
        assert context.output("app-identity", "principal_id") == "p-1"

    def test_user_assigned_identity_kept(self, context: RunContext) -> None:
        user_identities = {"/subscriptions/s/resourceGroups/rg/providers/id-notes": {}}
        client = MockControlPlaneClient()
        client.seed(
            ResourceKind.CONTAINER_APP, "notes-api",
            {"identity": {"type": "UserAssigned", "userAssignedIdentities": user_identities}},
        )
        node = IdentityNode(id="app-identity", name="notes-api")

        assert run_node(node, client, context).outcome == Outcome.UPDATED

        [update] = [c for c in client.calls if c.operation == "update"]
        assert update.payload == {
            "identity": {
                "type": "SystemAssigned,UserAssigned",
                "userAssignedIdentities": user_identities,
            }
        }
        identity = client.state.get(ResourceKind.CONTAINER_APP, "notes-api").properties["identity"]
        assert identity["userAssignedIdentities"] == user_identities
        assert identity["principalId"] == MOCK_PRINCIPAL_ID

    def test_principal_never_appears(self, context: RunContext) -> None:
        client = MockControlPlaneClient(principal_never=True)
        client.seed(ResourceKind.CONTAINER_APP, "notes-api", {})
        node = IdentityNode(id="app-identity", name="notes-api")

        with pytest.raises(DependencyTimeout, match="principal of notes-api"):
            run_node(node, client, context)
        assert context.output("app-identity", "principal_id") is None


class TestRoleAssignmentNode:
    """Tests for role grants."""

    def make_node(self) -> RoleAssignmentNode:
        return RoleAssignmentNode(
            id="role-acrpull",
            name="notes-api:AcrPull",
            role="AcrPull",
            identity_node="app-identity",
            scope_node="acr",
            depends_on=("app-identity", "acr"),
        )

    def test_requires_dependency_edges(self) -> None:
        with pytest.raises(ValueError, match="must depend on"):
            RoleAssignmentNode(
                id="role-acrpull", name="x", role="AcrPull",
                identity_node="app-identity", scope_node="acr", depends_on=("acr",),
            )

    def test_unknown_role_rejected(self) -> None:
        with pytest.raises(ValueError):
            RoleAssignmentNode(
                id="role", name="x", role="NotARole",
                identity_node="i", scope_node="s", depends_on=("i", "s"),
            )

    def test_without_principal_is_unready(self, context: RunContext) -> None:
        client = MockControlPlaneClient()
        context.states["acr"] = ResourceState(ResourceKind.CONTAINER_REGISTRY, "acr", {}, "/id/acr")

        with pytest.raises(DependencyUnready, match="No principal"):
            run_node(self.make_node(), client, context)
        assert client.count_calls("assign_role") == 0

    def test_grants_then_skips(self, context: RunContext) -> None:
        client = MockControlPlaneClient()
        context.publish("app-identity", principal_id="p-1")
        context.states["acr"] = ResourceState(ResourceKind.CONTAINER_REGISTRY, "acr", {}, "/id/acr")
        node = self.make_node()

        first = run_node(node, client, context)
        second = run_node(node, client, context)

        assert first.outcome == Outcome.CREATED
        assert first.state.name == role_assignment_name("p-1", "AcrPull", "/id/acr")
        assert second.outcome == Outcome.SKIPPED
        assert client.count_calls("assign_role") == 1

    def test_probe_uses_deterministic_name(self, context: RunContext) -> None:
        client = MockControlPlaneClient()
        context.publish("app-identity", principal_id="p-1")
        context.states["acr"] = ResourceState(ResourceKind.CONTAINER_REGISTRY, "acr", {}, "/id/acr")

        assert self.make_node().probe(client, context) is ABSENT
        assert client.calls[-1].name == role_assignment_name("p-1", "AcrPull", "/id/acr")
