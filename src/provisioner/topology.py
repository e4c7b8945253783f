"""Resource graph for a VNet-integrated Container App with a private Azure Files mount.

Declaration order below is the reference sequence; every dependency is also
declared explicitly so the ordering is a checked invariant rather than an
artifact of statement order:

providers/extension -> resource group -> registry -> image import ->
storage account -> file share -> vnet -> subnets -> private endpoint ->
DNS zone -> DNS link -> DNS zone group -> environment -> environment
storage -> app (public image) -> identity -> role assignments -> registry
wiring -> private image -> volume mount -> env vars -> storage hardening
"""

from __future__ import annotations

import logging
from typing import Any

from .client import ResourceKind
from .dependency import ResourceGraph
from .models import DeploymentSpec
from .nodes import (
    ACA_DELEGATION,
    EnvVarsNode,
    IdentityNode,
    PatchNode,
    ProviderRegistrationNode,
    ResourceNode,
    RoleAssignmentNode,
    StructuredPatchNode,
)

logger = logging.getLogger(__name__)

# Node ids
PROVIDER_APP = "provider-microsoft-app"
PROVIDER_INSIGHTS = "provider-operational-insights"
CONTAINERAPP_EXTENSION = "containerapp-extension"
RESOURCE_GROUP = "resource-group"
ACR = "acr"
ACR_IMAGE_IMPORT = "acr-image-import"
STORAGE_ACCOUNT = "storage-account"
FILE_SHARE = "file-share"
VNET = "vnet"
CA_SUBNET = "ca-subnet"
PE_SUBNET = "pe-storage-subnet"
PRIVATE_ENDPOINT = "private-endpoint"
DNS_ZONE = "dns-zone"
DNS_LINK = "dns-link"
DNS_ZONE_GROUP = "dns-zone-group"
CONTAINER_ENV = "container-env"
ENV_STORAGE = "env-storage"
CONTAINER_APP = "container-app"
APP_IDENTITY = "app-identity"
ROLE_ACRPULL = "role-acrpull"
ROLE_STORAGE_SMB = "role-storage-smb"
APP_REGISTRY = "app-registry"
APP_IMAGE = "app-image"
VOLUME_MOUNT_PATCH = "volume-mount-patch"
APP_ENV_VARS = "app-env-vars"
STORAGE_HARDENING = "storage-hardening"

REQUIRED_PROVIDERS: dict[str, str] = {
    PROVIDER_APP: "Microsoft.App",
    PROVIDER_INSIGHTS: "Microsoft.OperationalInsights",
}

ACR_PULL_ROLE = "AcrPull"
STORAGE_SMB_ROLE = "Storage File Data SMB Share Contributor"
PE_GROUP_ID = "file"


def volume_mount_fragment(spec: DeploymentSpec) -> dict[str, Any]:
    """Template fragment attaching the Azure Files volume and mounting it."""
    app = spec.app
    return {
        "template": {
            "volumes": [
                {
                    "name": app.volume_name,
                    "storageType": "AzureFile",
                    "storageName": spec.environment.storage_name,
                }
            ],
            "containers": [
                {
                    "name": app.name,
                    "volumeMounts": [
                        {"volumeName": app.volume_name, "mountPath": app.mount_path}
                    ],
                }
            ],
        }
    }


def build_graph(spec: DeploymentSpec) -> ResourceGraph:
    """Build and validate the resource graph for a deployment.

    Args:
        spec: Validated deployment description.

    Returns:
        ResourceGraph whose topological order matches declaration order.

    Raises:
        DependencyError: If the declared nodes do not form a DAG.
    """
    rg = spec.resource_group
    location = spec.location
    tags = dict(spec.tags)
    registry = spec.registry
    storage = spec.storage
    network = spec.network
    env = spec.environment
    app = spec.app

    vnet_name = network.name
    ca_subnet = f"{vnet_name}/{network.container_apps_subnet.name}"
    pe_subnet = f"{vnet_name}/{network.private_endpoint_subnet.name}"
    pe_name = f"pe-{storage.account_name}-{PE_GROUP_ID}"
    zone = spec.private_dns_zone
    env_storage = f"{env.name}/{env.storage_name}"

    nodes: list[ResourceNode] = [
        ProviderRegistrationNode(id=PROVIDER_APP, name=REQUIRED_PROVIDERS[PROVIDER_APP]),
        ProviderRegistrationNode(
            id=PROVIDER_INSIGHTS, name=REQUIRED_PROVIDERS[PROVIDER_INSIGHTS]
        ),
        ResourceNode(
            id=CONTAINERAPP_EXTENSION,
            kind=ResourceKind.CLI_EXTENSION,
            name="containerapp",
        ),
        ResourceNode(
            id=RESOURCE_GROUP,
            kind=ResourceKind.RESOURCE_GROUP,
            name=rg,
            desired_spec={"location": location, "tags": tags},
        ),
        ResourceNode(
            id=ACR,
            kind=ResourceKind.CONTAINER_REGISTRY,
            name=registry.name,
            depends_on=(RESOURCE_GROUP,),
            desired_spec={
                "resourceGroup": rg,
                "location": location,
                "sku": registry.sku,
                "adminUserEnabled": False,
                "tags": tags,
            },
        ),
        ResourceNode(
            id=ACR_IMAGE_IMPORT,
            kind=ResourceKind.REGISTRY_IMAGE,
            name=f"{registry.name}/{spec.target_repository}",
            depends_on=(ACR,),
            desired_spec={
                "registry": registry.name,
                "source": app.source_image,
                "target": spec.target_repository,
            },
        ),
        ResourceNode(
            id=STORAGE_ACCOUNT,
            kind=ResourceKind.STORAGE_ACCOUNT,
            name=storage.account_name,
            depends_on=(RESOURCE_GROUP,),
            desired_spec={
                "resourceGroup": rg,
                "location": location,
                "sku": storage.sku,
                "kind": "StorageV2",
                "minimumTlsVersion": "TLS1_2",
                "allowBlobPublicAccess": False,
                # Disabled later by storage-hardening, once the private path exists
                "publicNetworkAccess": "Enabled",
                "tags": tags,
            },
        ),
        ResourceNode(
            id=FILE_SHARE,
            kind=ResourceKind.FILE_SHARE,
            name=f"{storage.account_name}/{storage.file_share}",
            depends_on=(STORAGE_ACCOUNT,),
            desired_spec={
                "accountName": storage.account_name,
                "shareName": storage.file_share,
                "quotaGb": storage.share_quota_gb,
                "enabledProtocol": "SMB",
            },
        ),
        ResourceNode(
            id=VNET,
            kind=ResourceKind.VIRTUAL_NETWORK,
            name=vnet_name,
            depends_on=(RESOURCE_GROUP,),
            desired_spec={
                "resourceGroup": rg,
                "location": location,
                "addressPrefixes": [network.address_prefix],
                "tags": tags,
            },
        ),
        ResourceNode(
            id=CA_SUBNET,
            kind=ResourceKind.SUBNET,
            name=ca_subnet,
            depends_on=(VNET,),
            desired_spec={
                "virtualNetwork": vnet_name,
                "addressPrefix": network.container_apps_subnet.prefix,
                "delegation": ACA_DELEGATION,
            },
            expected={"delegation": ACA_DELEGATION},
        ),
        ResourceNode(
            id=PE_SUBNET,
            kind=ResourceKind.SUBNET,
            name=pe_subnet,
            depends_on=(VNET,),
            desired_spec={
                "virtualNetwork": vnet_name,
                "addressPrefix": network.private_endpoint_subnet.prefix,
                "privateEndpointNetworkPolicies": "Disabled",
            },
            expected={"privateEndpointNetworkPolicies": "Disabled"},
        ),
        ResourceNode(
            id=PRIVATE_ENDPOINT,
            kind=ResourceKind.PRIVATE_ENDPOINT,
            name=pe_name,
            depends_on=(STORAGE_ACCOUNT, PE_SUBNET),
            desired_spec={
                "resourceGroup": rg,
                "location": location,
                "subnet": pe_subnet,
                "privateConnectionResource": storage.account_name,
                "groupId": PE_GROUP_ID,
                "connectionName": f"{pe_name}-connection",
            },
            expected={"subnet": pe_subnet, "groupId": PE_GROUP_ID},
        ),
        ResourceNode(
            id=DNS_ZONE,
            kind=ResourceKind.PRIVATE_DNS_ZONE,
            name=zone,
            depends_on=(RESOURCE_GROUP,),
            desired_spec={"resourceGroup": rg},
        ),
        ResourceNode(
            id=DNS_LINK,
            kind=ResourceKind.PRIVATE_DNS_LINK,
            name=f"{zone}/{vnet_name}-link",
            depends_on=(DNS_ZONE, VNET),
            desired_spec={
                "zone": zone,
                "virtualNetwork": vnet_name,
                "registrationEnabled": False,
            },
            expected={"virtualNetwork": vnet_name},
        ),
        ResourceNode(
            id=DNS_ZONE_GROUP,
            kind=ResourceKind.PRIVATE_DNS_ZONE_GROUP,
            name=f"{pe_name}/default",
            depends_on=(PRIVATE_ENDPOINT, DNS_ZONE, DNS_LINK),
            desired_spec={"privateEndpoint": pe_name, "zone": zone},
        ),
        ResourceNode(
            id=CONTAINER_ENV,
            kind=ResourceKind.CONTAINER_APP_ENVIRONMENT,
            name=env.name,
            depends_on=(CA_SUBNET, PROVIDER_APP, PROVIDER_INSIGHTS, CONTAINERAPP_EXTENSION),
            desired_spec={
                "resourceGroup": rg,
                "location": location,
                "infrastructureSubnet": ca_subnet,
                "internalOnly": False,
                "tags": tags,
            },
            expected={"infrastructureSubnet": ca_subnet},
        ),
        ResourceNode(
            id=ENV_STORAGE,
            kind=ResourceKind.ENVIRONMENT_STORAGE,
            name=env_storage,
            depends_on=(CONTAINER_ENV, FILE_SHARE, DNS_ZONE_GROUP),
            desired_spec={
                "environment": env.name,
                "accountName": storage.account_name,
                "shareName": storage.file_share,
                "accessMode": "ReadWrite",
            },
        ),
        # Bootstrap with the public image: no registry credentials needed yet
        ResourceNode(
            id=CONTAINER_APP,
            kind=ResourceKind.CONTAINER_APP,
            name=app.name,
            depends_on=(CONTAINER_ENV,),
            desired_spec={
                "resourceGroup": rg,
                "environment": env.name,
                "image": app.source_image,
                "targetPort": app.target_port,
                "ingress": "external" if app.external_ingress else "internal",
                "cpu": app.cpu,
                "memory": app.memory,
                "minReplicas": app.min_replicas,
                "maxReplicas": app.max_replicas,
                "template": {"containers": [{"name": app.name}]},
                "tags": tags,
            },
        ),
        IdentityNode(id=APP_IDENTITY, name=app.name, depends_on=(CONTAINER_APP,)),
        RoleAssignmentNode(
            id=ROLE_ACRPULL,
            name=f"{app.name}:{ACR_PULL_ROLE}",
            role=ACR_PULL_ROLE,
            identity_node=APP_IDENTITY,
            scope_node=ACR,
            depends_on=(APP_IDENTITY, ACR),
        ),
        RoleAssignmentNode(
            id=ROLE_STORAGE_SMB,
            name=f"{app.name}:{STORAGE_SMB_ROLE}",
            role=STORAGE_SMB_ROLE,
            identity_node=APP_IDENTITY,
            scope_node=STORAGE_ACCOUNT,
            depends_on=(APP_IDENTITY, STORAGE_ACCOUNT),
        ),
        PatchNode(
            id=APP_REGISTRY,
            kind=ResourceKind.CONTAINER_APP,
            name=app.name,
            depends_on=(ROLE_ACRPULL,),
            desired_spec={"registry": {"server": registry.login_server, "identity": "system"}},
        ),
        PatchNode(
            id=APP_IMAGE,
            kind=ResourceKind.CONTAINER_APP,
            name=app.name,
            depends_on=(APP_REGISTRY, ACR_IMAGE_IMPORT),
            desired_spec={"image": spec.target_image_ref},
        ),
        StructuredPatchNode(
            id=VOLUME_MOUNT_PATCH,
            kind=ResourceKind.CONTAINER_APP,
            name=app.name,
            depends_on=(APP_IMAGE, ENV_STORAGE),
            desired_spec=volume_mount_fragment(spec),
        ),
    ]

    if app.env_paths:
        nodes.append(
            EnvVarsNode(
                id=APP_ENV_VARS,
                kind=ResourceKind.CONTAINER_APP,
                name=app.name,
                depends_on=(VOLUME_MOUNT_PATCH,),
                desired_spec={"envVars": app.env_values()},
            )
        )

    nodes.append(
        PatchNode(
            id=STORAGE_HARDENING,
            kind=ResourceKind.STORAGE_ACCOUNT,
            name=storage.account_name,
            depends_on=(DNS_ZONE_GROUP, ENV_STORAGE),
            desired_spec={"publicNetworkAccess": "Disabled"},
        )
    )

    graph = ResourceGraph.from_nodes(nodes)
    logger.debug("Built resource graph", extra={"nodes": len(graph), "app": app.name})
    return graph
